"""
CellarSettings schema.

Frozen dataclasses the loader parses ``defaults.yaml`` (or an operator's
override file) into.  ``CellarSettings`` is the only runtime artifact;
``ledger_policy()`` bridges it into the kernel's ``LedgerPolicy`` so the
kernel never imports this package.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from cellar_kernel.domain.lifecycle import VesselStatus
from cellar_kernel.domain.policy import LedgerPolicy


class ConfigurationError(ValueError):
    """A settings file is missing a required key or holds an invalid value."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid configuration at {key!r}: {reason}")


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LedgerSettings:
    volume_epsilon_liters: Decimal
    drain_threshold_liters: Decimal
    post_drain_vessel_status: VesselStatus
    post_racking_vessel_status: VesselStatus
    abv_gravity_factor: Decimal
    blend_product_kinds: frozenset[str] = field(default_factory=frozenset)
    fortifying_source_kinds: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class PackagingSettings:
    shelf_life_days: int
    keg_min_unit_size_liters: Decimal


@dataclass(frozen=True)
class ReconciliationSettings:
    unit: str  # regulatory unit token, US wine gallons by default
    tolerance: Decimal
    initial_opening_balance: Decimal


@dataclass(frozen=True)
class TaxSettings:
    hard_cider_rate_per_gallon: Decimal
    small_producer_credit_per_gallon: Decimal
    small_producer_credit_limit_gallons: Decimal


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CellarSettings:
    """
    Validated, immutable ledger settings.

    Guarantees:
        - ``checksum`` is the SHA-256 of the canonical source mapping, so
          the same file always yields the same checksum.
    """

    config_id: str
    version: int
    ledger: LedgerSettings
    packaging: PackagingSettings
    reconciliation: ReconciliationSettings
    tax: TaxSettings
    checksum: str = ""

    def ledger_policy(self) -> LedgerPolicy:
        return LedgerPolicy(
            volume_epsilon_liters=self.ledger.volume_epsilon_liters,
            drain_threshold_liters=self.ledger.drain_threshold_liters,
            post_drain_vessel_status=self.ledger.post_drain_vessel_status,
            post_racking_vessel_status=self.ledger.post_racking_vessel_status,
            abv_gravity_factor=self.ledger.abv_gravity_factor,
            blend_product_kinds=self.ledger.blend_product_kinds,
            fortifying_source_kinds=self.ledger.fortifying_source_kinds,
            shelf_life_days=self.packaging.shelf_life_days,
            keg_min_unit_size_liters=self.packaging.keg_min_unit_size_liters,
        )
