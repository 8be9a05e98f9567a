"""Core data types shared across attio_core."""
