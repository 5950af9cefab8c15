"""
cellar_config -- single public entrypoint for ledger configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads settings files
    directly.  Returns a frozen ``CellarSettings``.

Architecture position:
    Configuration -- YAML-driven settings pipeline.  This package sits
    above ``cellar_kernel`` and below ``cellar_services``.  The kernel MUST
    NEVER import from ``cellar_config``; ``CellarSettings.ledger_policy()``
    is the bridge that hands the kernel its ``LedgerPolicy``.

Invariants enforced:
    - Single entrypoint: all runtime config flows through
      ``get_active_config()``.
    - Deterministic: the same YAML always produces the same checksum.

Failure modes:
    - ``FileNotFoundError`` -- the requested settings file does not exist.
    - ``ConfigurationError`` -- a required key is missing or invalid.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``cellar_config_loaded`` log entry with the config id, version and
    checksum, tying ledger activity to the settings that governed it.
"""

from __future__ import annotations

from pathlib import Path

from cellar_config.loader import load_yaml_file, parse_settings
from cellar_config.schema import CellarSettings, ConfigurationError
from cellar_kernel.logging_config import get_logger

_logger = get_logger("config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"

__all__ = [
    "CellarSettings",
    "ConfigurationError",
    "DEFAULT_CONFIG_PATH",
    "get_active_config",
]


def get_active_config(config_path: Path | str | None = None) -> CellarSettings:
    """
    Load and validate the ledger settings.

    Args:
        config_path: Override settings file.  Defaults to the shipped
            ``cellar_config/defaults.yaml``.

    Returns:
        CellarSettings -- the sole runtime artifact.

    Raises:
        FileNotFoundError: If the settings file does not exist.
        ConfigurationError: If validation fails.
    """
    path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH
    settings = parse_settings(load_yaml_file(path))

    _logger.info(
        "cellar_config_loaded",
        extra={
            "config_id": settings.config_id,
            "config_version": settings.version,
            "checksum": settings.checksum,
            "config_path": str(path),
        },
    )
    return settings
