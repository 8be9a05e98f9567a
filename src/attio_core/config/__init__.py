"""Configuration for the Attio client.

Resolve once, freeze, then pass the frozen value around:

- ResolvedConfig: merged values plus the origin of each field
- FrozenConfig: immutable configuration consumed by ``AttioClient``
- SourceMap: field name -> origin (programmatic, env, env_file, default)
"""

from .resolver import ConfigResolver, SourceTracker, resolve_config
from .schema import DEFAULT_BASE_URL, AttioSettings
from .types import ConfigOrigin, FrozenConfig, ResolvedConfig, SourceMap

__all__ = [  # noqa: RUF022
    # Entry point
    "resolve_config",
    # Types
    "ConfigOrigin",
    "FrozenConfig",
    "ResolvedConfig",
    "SourceMap",
    # Building blocks
    "AttioSettings",
    "ConfigResolver",
    "SourceTracker",
    "DEFAULT_BASE_URL",
]
