"""
Configuration Loader (``cellar_config.loader``).

Responsibility
--------------
Loads a settings YAML file and parses each section into the frozen
dataclasses of ``cellar_config.schema``.  Runtime callers go through
``cellar_config.get_active_config()``; this module is the parsing step
behind it.

Architecture position
---------------------
**Config layer**.  Depends on the kernel's pure domain enumerations and
unit table only.

Invariants enforced
-------------------
* Missing required keys raise ``ConfigurationError`` naming the dotted key;
  no silent defaults for required fields.
* Numeric settings are parsed into ``Decimal`` from their string form, never
  through ``float``.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the source
  mapping.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing or invalid values  -> ``ConfigurationError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from cellar_config.schema import (
    CellarSettings,
    ConfigurationError,
    LedgerSettings,
    PackagingSettings,
    ReconciliationSettings,
    TaxSettings,
)
from cellar_kernel.domain.lifecycle import RELEASE_STATUSES, VesselStatus
from cellar_kernel.domain.units import Dimension, normalize_unit
from cellar_kernel.exceptions import UnknownUnitError


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _require(data: dict[str, Any], section: str, key: str) -> Any:
    if key not in data or data[key] is None:
        raise ConfigurationError(f"{section}.{key}", "required key is missing")
    return data[key]


def _section(data: dict[str, Any], section: str) -> dict[str, Any]:
    value = data.get(section)
    if not isinstance(value, dict):
        raise ConfigurationError(section, "required section is missing")
    return value


def parse_decimal(value: Any, key: str, *, minimum: Decimal | None = None) -> Decimal:
    """
    Parse a Decimal from YAML.

    YAML floats are converted through ``str`` so 0.01 stays 0.01.
    """
    if isinstance(value, bool):
        raise ConfigurationError(key, f"expected a number, got {value!r}")
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ConfigurationError(key, f"expected a number, got {value!r}") from None
    if not result.is_finite():
        raise ConfigurationError(key, f"expected a finite number, got {value!r}")
    if minimum is not None and result < minimum:
        raise ConfigurationError(key, f"must be >= {minimum}, got {result}")
    return result


def parse_release_status(value: Any, key: str) -> VesselStatus:
    try:
        status = VesselStatus(value)
    except ValueError:
        raise ConfigurationError(key, f"unknown vessel status {value!r}") from None
    if status not in RELEASE_STATUSES:
        raise ConfigurationError(key, f"{status.value!r} is not a release status")
    return status


def parse_kinds(value: Any, key: str) -> frozenset[str]:
    if value is None:
        return frozenset()
    if not isinstance(value, (list, tuple)):
        raise ConfigurationError(key, f"expected a list, got {value!r}")
    return frozenset(str(item).strip().lower() for item in value)


def parse_ledger(data: dict[str, Any]) -> LedgerSettings:
    """Parse the ``ledger`` section."""
    return LedgerSettings(
        volume_epsilon_liters=parse_decimal(
            _require(data, "ledger", "volume_epsilon_liters"),
            "ledger.volume_epsilon_liters",
            minimum=Decimal("0"),
        ),
        drain_threshold_liters=parse_decimal(
            _require(data, "ledger", "drain_threshold_liters"),
            "ledger.drain_threshold_liters",
            minimum=Decimal("0"),
        ),
        post_drain_vessel_status=parse_release_status(
            _require(data, "ledger", "post_drain_vessel_status"),
            "ledger.post_drain_vessel_status",
        ),
        post_racking_vessel_status=parse_release_status(
            data.get("post_racking_vessel_status", VesselStatus.CLEANING.value),
            "ledger.post_racking_vessel_status",
        ),
        abv_gravity_factor=parse_decimal(
            _require(data, "ledger", "abv_gravity_factor"),
            "ledger.abv_gravity_factor",
            minimum=Decimal("0"),
        ),
        blend_product_kinds=parse_kinds(
            data.get("blend_product_kinds"), "ledger.blend_product_kinds"
        ),
        fortifying_source_kinds=parse_kinds(
            data.get("fortifying_source_kinds"), "ledger.fortifying_source_kinds"
        ),
    )


def parse_packaging(data: dict[str, Any]) -> PackagingSettings:
    """Parse the ``packaging`` section."""
    days = _require(data, "packaging", "shelf_life_days")
    if isinstance(days, bool) or not isinstance(days, int) or days < 0:
        raise ConfigurationError("packaging.shelf_life_days", f"expected a non-negative integer, got {days!r}")
    return PackagingSettings(
        shelf_life_days=days,
        keg_min_unit_size_liters=parse_decimal(
            _require(data, "packaging", "keg_min_unit_size_liters"),
            "packaging.keg_min_unit_size_liters",
            minimum=Decimal("0"),
        ),
    )


def parse_reconciliation(data: dict[str, Any]) -> ReconciliationSettings:
    """Parse the ``reconciliation`` section."""
    unit = _require(data, "reconciliation", "unit")
    try:
        token = normalize_unit(str(unit), Dimension.VOLUME)
    except UnknownUnitError:
        raise ConfigurationError("reconciliation.unit", f"unknown volume unit {unit!r}") from None
    return ReconciliationSettings(
        unit=token,
        tolerance=parse_decimal(
            _require(data, "reconciliation", "tolerance"),
            "reconciliation.tolerance",
            minimum=Decimal("0"),
        ),
        initial_opening_balance=parse_decimal(
            data.get("initial_opening_balance", "0"),
            "reconciliation.initial_opening_balance",
            minimum=Decimal("0"),
        ),
    )


def parse_tax(data: dict[str, Any]) -> TaxSettings:
    """Parse the ``tax`` section."""
    return TaxSettings(
        hard_cider_rate_per_gallon=parse_decimal(
            _require(data, "tax", "hard_cider_rate_per_gallon"),
            "tax.hard_cider_rate_per_gallon",
            minimum=Decimal("0"),
        ),
        small_producer_credit_per_gallon=parse_decimal(
            _require(data, "tax", "small_producer_credit_per_gallon"),
            "tax.small_producer_credit_per_gallon",
            minimum=Decimal("0"),
        ),
        small_producer_credit_limit_gallons=parse_decimal(
            _require(data, "tax", "small_producer_credit_limit_gallons"),
            "tax.small_producer_credit_limit_gallons",
            minimum=Decimal("0"),
        ),
    )


def parse_settings(data: dict[str, Any]) -> CellarSettings:
    """
    Parse a whole settings mapping.

    Postconditions:
        - Returns a frozen ``CellarSettings`` whose checksum is
          ``compute_checksum(data)``.
    Raises:
        ConfigurationError: on any missing section, key or invalid value.
    """
    version = data.get("version", 1)
    if isinstance(version, bool) or not isinstance(version, int):
        raise ConfigurationError("version", f"expected an integer, got {version!r}")
    return CellarSettings(
        config_id=str(data.get("config_id", "CELLAR-DEFAULT")),
        version=version,
        ledger=parse_ledger(_section(data, "ledger")),
        packaging=parse_packaging(_section(data, "packaging")),
        reconciliation=parse_reconciliation(_section(data, "reconciliation")),
        tax=parse_tax(_section(data, "tax")),
        checksum=compute_checksum(data),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Postconditions:
        - Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
