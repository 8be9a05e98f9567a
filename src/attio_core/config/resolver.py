"""Configuration resolution with precedence handling.

Merges configuration according to the documented precedence order:
Programmatic > Environment > ``.env`` file > Defaults
"""

from collections.abc import Mapping
import logging
import os
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import ValidationError

from attio_core.exceptions import ConfigurationError

from .schema import AttioSettings
from .types import ConfigOrigin, ResolvedConfig, SourceMap

log = logging.getLogger(__name__)

# Environment variable -> settings field. ATTIO_ACCESS_TOKEN is an OAuth
# alias for the key and loses to ATTIO_API_KEY when both are set.
ENV_VARS: Mapping[str, str] = {
    "ATTIO_ACCESS_TOKEN": "api_key",
    "ATTIO_API_KEY": "api_key",
    "ATTIO_BASE_URL": "base_url",
    "ATTIO_TIMEOUT_SECONDS": "timeout_seconds",
    "ATTIO_CORRELATION_IDS": "correlation_ids",
    "ATTIO_MAX_RETRIES": "max_retries",
    "ATTIO_INITIAL_DELAY": "initial_delay",
    "ATTIO_MAX_DELAY": "max_delay",
    "ATTIO_BATCH_CONCURRENCY": "batch_concurrency",
    "ATTIO_PAGE_SIZE": "page_size",
}


class SourceTracker:
    """Records which source supplied each configuration field."""

    def __init__(self) -> None:
        self._origins: dict[str, ConfigOrigin] = {}

    def set_origin(self, field: str, origin: ConfigOrigin) -> None:
        self._origins[field] = origin

    def get_source_map(self) -> SourceMap:
        return dict(self._origins)


def _values_from(source: Mapping[str, str | None]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for env_var, field in ENV_VARS.items():
        value = source.get(env_var)
        if value is not None and value != "":
            values[field] = value
    return values


class ConfigResolver:
    """Resolves configuration from all sources with proper precedence."""

    def resolve(
        self,
        programmatic: Mapping[str, Any] | None = None,
        *,
        env_file: str | Path | None = None,
    ) -> ResolvedConfig:
        """Resolve configuration from all sources.

        Args:
            programmatic: Overrides with the highest precedence. ``None``
                values are ignored.
            env_file: Optional ``.env`` file, read without touching
                ``os.environ``. Real environment variables win over it.

        Returns:
            ResolvedConfig with merged values and source tracking.

        Raises:
            ConfigurationError: If a source is unreadable, an override names an
                unknown field, or the merged values fail validation.
        """
        tracker = SourceTracker()
        fields = AttioSettings.model_fields

        # Step 1: schema defaults, read without consulting the environment
        merged: dict[str, Any] = {}
        for name, info in fields.items():
            merged[name] = info.get_default(call_default_factory=True)
            tracker.set_origin(name, "default")

        # Step 2: .env file
        if env_file is not None:
            path = Path(env_file)
            if not path.is_file():
                raise ConfigurationError(f"Environment file not found: {path}")
            for name, value in _values_from(dotenv_values(path)).items():
                merged[name] = value
                tracker.set_origin(name, "env_file")

        # Step 3: process environment
        for name, value in _values_from(os.environ).items():
            merged[name] = value
            tracker.set_origin(name, "env")

        # Step 4: programmatic overrides
        if programmatic:
            unknown = set(programmatic) - set(fields)
            if unknown:
                raise ConfigurationError(
                    f"Unknown configuration field(s): {', '.join(sorted(unknown))}"
                )
            for name, value in programmatic.items():
                if value is not None:
                    merged[name] = value
                    tracker.set_origin(name, "programmatic")

        # Step 5: validate the merged result
        try:
            settings = AttioSettings(**merged)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed: {e}") from e

        origin = tracker.get_source_map()
        log.debug(
            "Resolved configuration from %s",
            sorted({o for o in origin.values() if o != "default"}) or ["defaults"],
        )
        return ResolvedConfig(**settings.to_dict(), origin=origin)


def resolve_config(
    programmatic: Mapping[str, Any] | None = None,
    *,
    env_file: str | Path | None = None,
    explain: bool = False,
) -> Any:
    """Resolve configuration and freeze it for use by the client.

    Args:
        programmatic: Field overrides with the highest precedence.
        env_file: Optional ``.env`` file path.
        explain: When True, return ``(FrozenConfig, SourceMap)``.

    Returns:
        A ``FrozenConfig``, or ``(FrozenConfig, SourceMap)`` when ``explain``.

    Example:
        config = resolve_config({"max_retries": 5})
        config, origin = resolve_config(explain=True)
        assert origin["max_retries"] == "default"
    """
    resolved = ConfigResolver().resolve(programmatic, env_file=env_file)
    frozen = resolved.to_frozen()
    if explain:
        return frozen, resolved.origin
    return frozen
