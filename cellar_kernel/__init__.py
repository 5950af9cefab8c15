"""
Cellar Kernel - batch volume & provenance ledger.

An append-only production ledger for cider, perry, brandy and pommeau with:
- Canonical unit normalization (liters / kilograms)
- Volume-weighted ABV blending with gravity precedence
- Immutable operation journal with before/after snapshots
- Packaging draw-down with traceable lot codes
- Hash-chained audit trail
"""

__version__ = "0.1.0"
