"""
Tests for the ABV precedence rules.

Covers:
- Volume-weighted blend, zero-volume edge case
- Gravity rule: OG + FG gives estimated and actual ABV
- Fortified and blend-product batches ignore gravity
- OG-only estimate
- ABV and gravity range validation
"""

from decimal import Decimal

import pytest

from cellar_kernel.domain.abv import (
    AbvInputs,
    AbvRule,
    BlendComponent,
    blend_abv,
    effective_abv,
    gravity_abv,
    potential_abv,
    resolve_abv,
    validate_abv,
    validate_gravities,
)
from cellar_kernel.exceptions import InvalidAbvError, InvalidGravityError


def inputs(components=(), sources=("base_fruit",), product="cider", og=None, fg=None):
    return AbvInputs(
        components=tuple(BlendComponent(Decimal(v), Decimal(a)) for v, a in components),
        source_kinds=frozenset(sources),
        product_kind=product,
        original_gravity=Decimal(og) if og is not None else None,
        final_gravity=Decimal(fg) if fg is not None else None,
    )


class TestBlend:
    def test_pommeau_style_blend(self):
        """80 L of juice at 0% with 20 L of brandy at 70% is 14%."""
        result = blend_abv(
            [BlendComponent(Decimal("80"), Decimal("0")), BlendComponent(Decimal("20"), Decimal("70"))]
        )
        assert result == Decimal("14")

    def test_single_component(self):
        assert blend_abv([BlendComponent(Decimal("50"), Decimal("6.5"))]) == Decimal("6.5")

    def test_zero_volume_is_none(self):
        assert blend_abv([]) is None
        assert blend_abv([BlendComponent(Decimal("0"), Decimal("40"))]) is None

    def test_result_is_rounded_to_four_places(self):
        result = blend_abv(
            [BlendComponent(Decimal("1"), Decimal("0")), BlendComponent(Decimal("2"), Decimal("10"))]
        )
        assert result == Decimal("6.6667")


class TestGravity:
    def test_potential_abv(self):
        assert potential_abv(Decimal("1.050")) == Decimal("6.5625")

    def test_gravity_abv(self):
        assert gravity_abv(Decimal("1.060"), Decimal("1.010")) == Decimal("6.5625")

    def test_custom_factor(self):
        assert potential_abv(Decimal("1.050"), Decimal("100")) == Decimal("5")


class TestResolveAbv:
    def test_gravity_rule_with_og_and_fg(self):
        result = resolve_abv(inputs([("100", "0")], og="1.060", fg="1.000"))
        assert result.rule == AbvRule.GRAVITY
        assert result.actual_abv == Decimal("7.875")
        assert result.estimated_abv == Decimal("7.875")

    def test_og_only_gives_estimate(self):
        result = resolve_abv(inputs([("100", "0")], og="1.050"))
        assert result.rule == AbvRule.ORIGINAL
        assert result.estimated_abv == Decimal("6.5625")
        assert result.actual_abv is None

    def test_plain_blend_without_gravity(self):
        result = resolve_abv(inputs([("60", "6"), ("40", "8")]))
        assert result.rule == AbvRule.BLEND
        assert result.estimated_abv == Decimal("6.8")

    def test_brandy_source_ignores_gravity(self):
        """A fortified batch's gravity says nothing about its alcohol."""
        result = resolve_abv(
            inputs(
                [("80", "0"), ("20", "70")],
                sources=("juice_purchase", "brandy"),
                og="1.060",
                fg="1.000",
            )
        )
        assert result.rule == AbvRule.BLEND
        assert result.estimated_abv == Decimal("14")
        assert result.actual_abv is None

    def test_pommeau_product_uses_blend(self):
        result = resolve_abv(inputs([("90", "0"), ("10", "60")], product="pommeau", og="1.050"))
        assert result.rule == AbvRule.BLEND
        assert result.estimated_abv == Decimal("6")

    def test_nothing_to_go_on(self):
        result = resolve_abv(inputs([]))
        assert result.rule == AbvRule.NONE
        assert result.estimated_abv is None

    def test_effective_prefers_actual(self):
        assert effective_abv(Decimal("7"), Decimal("6")) == Decimal("7")
        assert effective_abv(None, Decimal("6")) == Decimal("6")
        assert effective_abv(None, None) is None


class TestValidation:
    @pytest.mark.parametrize("value", ["0", "12.5", 100, 40.0])
    def test_valid_abv(self, value):
        assert validate_abv(value) == Decimal(str(value))

    @pytest.mark.parametrize("value", ["-0.1", "100.01", "abc", True, None])
    def test_invalid_abv(self, value):
        with pytest.raises(InvalidAbvError):
            validate_abv(value)

    def test_gravity_ranges(self):
        validate_gravities(Decimal("1.050"), Decimal("0.998"))
        validate_gravities(None, Decimal("1.000"))

    @pytest.mark.parametrize(
        "og, fg",
        [("0.990", None), ("1.250", None), (None, "0.970"), ("1.040", "1.050")],
    )
    def test_gravity_out_of_range(self, og, fg):
        with pytest.raises(InvalidGravityError):
            validate_gravities(
                Decimal(og) if og else None,
                Decimal(fg) if fg else None,
            )
