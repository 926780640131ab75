"""YAML configuration loading and validation.

Loads engine configuration files, validates them against the pydantic
schema, and returns frozen ``EngineConfig`` objects.  Every failure is
raised as a ``ConfigurationError`` with an actionable message.
"""

from __future__ import annotations

from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from phiguard.config.schema import EngineConfig
from phiguard.errors import ConfigurationError

DEFAULT_CONFIG_RESOURCE = "default_config.yaml"


def load_config(path: Path) -> EngineConfig:
    """Load and validate an engine configuration from a YAML file.

    Args:
        path: Path to the configuration file.

    Returns:
        A validated, frozen EngineConfig.

    Raises:
        ConfigurationError: If the file is missing, malformed, or fails
            schema validation.
    """
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file not found at {path}. "
            f"Run `phiguard validate-config` on an existing file, or omit "
            f"--config to use the built-in Quebec configuration.",
            field="config_path",
        )
    return parse_config(path.read_text(encoding="utf-8"), source=str(path))


def load_default_config() -> EngineConfig:
    """Load the configuration shipped with the package."""
    text = (
        resources.files("phiguard.data")
        .joinpath(DEFAULT_CONFIG_RESOURCE)
        .read_text(encoding="utf-8")
    )
    return parse_config(text, source=f"phiguard.data/{DEFAULT_CONFIG_RESOURCE}")


def parse_config(text: str, *, source: str = "<string>") -> EngineConfig:
    """Parse and validate configuration YAML text.

    Args:
        text: The YAML document.
        source: Where the text came from, for error messages.

    Returns:
        A validated, frozen EngineConfig.

    Raises:
        ConfigurationError: If the YAML is malformed or fails validation.
    """
    try:
        raw_data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Failed to parse YAML in {source}: {e}",
            details=[{"type": "yaml_parse_error", "msg": str(e)}],
        ) from e

    if raw_data is None:
        raise ConfigurationError(
            f"Configuration {source} is empty. It must contain at least "
            f"'version' and 'info_types'.",
            details=[{"type": "empty_file"}],
        )

    if not isinstance(raw_data, dict):
        raise ConfigurationError(
            f"Configuration {source} must contain a YAML mapping at the top "
            f"level, got {type(raw_data).__name__}.",
            details=[{"type": "not_a_mapping", "got": type(raw_data).__name__}],
        )

    return validate_config(raw_data, source=source)


def validate_config(data: dict[str, Any], *, source: str = "<dict>") -> EngineConfig:
    """Validate an already-parsed configuration mapping.

    Raises:
        ConfigurationError: With one line per pydantic error.
    """
    try:
        return EngineConfig.model_validate(data)
    except ValidationError as e:
        error_details = e.errors(include_url=False)
        error_lines = []
        for err in error_details:
            loc = " → ".join(str(part) for part in err["loc"])
            error_lines.append(f"  - {loc}: {err['msg']}")

        summary = "\n".join(error_lines)
        first_field = ".".join(str(p) for p in error_details[0]["loc"]) if error_details else None
        raise ConfigurationError(
            f"Configuration validation failed for {source}:\n{summary}",
            field=first_field,
            details=[_jsonable(err) for err in error_details],
        ) from e


def _jsonable(err: Any) -> dict[str, Any]:
    """Strip non-serializable members (the raw exception in ``ctx``)."""
    return {
        "type": err.get("type"),
        "loc": [str(p) for p in err.get("loc", ())],
        "msg": err.get("msg"),
    }
