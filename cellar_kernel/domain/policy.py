"""
Policy -- Tunable ledger rules as an immutable value object.

Responsibility:
    Carries the thresholds and classification sets the kernel services
    consult (drain threshold, ABV gravity factor, blend / fortifying kinds,
    shelf life, keg threshold).  cellar_config builds one from YAML; the
    defaults below match the shipped defaults.yaml.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  Keeps the kernel free of any
    dependency on the configuration package.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from cellar_kernel.domain.lifecycle import VesselStatus


@dataclass(frozen=True)
class LedgerPolicy:
    volume_epsilon_liters: Decimal = Decimal("0.01")
    drain_threshold_liters: Decimal = Decimal("0.1")
    post_drain_vessel_status: VesselStatus = VesselStatus.AVAILABLE
    post_racking_vessel_status: VesselStatus = VesselStatus.CLEANING
    abv_gravity_factor: Decimal = Decimal("131.25")
    blend_product_kinds: frozenset[str] = field(default_factory=lambda: frozenset({"pommeau"}))
    fortifying_source_kinds: frozenset[str] = field(default_factory=lambda: frozenset({"brandy"}))
    shelf_life_days: int = 365
    keg_min_unit_size_liters: Decimal = Decimal("5")
