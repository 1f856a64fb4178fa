"""
Tests for the equity waterfall.
"""

import pytest

from underwriting.calculations.cashflow import project_cash_flows
from underwriting.calculations.waterfall import (
    WATERFALL_TEMPLATES,
    BoundedHurdle,
    OpenEndedHurdle,
    PromoteTier,
    ShareClass,
    WaterfallStructure,
    calculate_waterfall,
    catch_up_required,
    create_default_structure,
    parse_hurdle,
    structure_from_template,
)
from underwriting.errors import UndefinedReason, ValidationError

OPEN_80_20 = (PromoteTier(OpenEndedHurdle(), 0.80, 0.20),)


def assert_cash_conserved(result, cash_flows):
    distributed = sum(y.lp_share + y.gp_share for y in result.yearly_distributions)
    assert distributed == pytest.approx(sum(cash_flows), abs=1e-6)
    for year, cash in zip(result.yearly_distributions, cash_flows):
        assert year.lp_share + year.gp_share == pytest.approx(cash, abs=1e-6)


class TestHurdles:
    """Test the hurdle variant."""

    def test_parse_open_ended(self):
        for value in (None, "open", "inf", float("inf")):
            assert parse_hurdle(value) == OpenEndedHurdle()

    def test_parse_bounded(self):
        assert parse_hurdle(0.12) == BoundedHurdle(0.12)
        assert parse_hurdle("0.15") == BoundedHurdle(0.15)

    def test_tier_serialization(self):
        tier = PromoteTier.from_dict({"hurdle": None, "lp_split": 0.5, "gp_split": 0.5})
        assert tier.hurdle.is_open_ended
        assert tier.to_dict() == {"hurdle": None, "lp_split": 0.5, "gp_split": 0.5}


class TestStructureValidation:
    """Malformed structures are rejected before any cash is distributed."""

    def test_unsorted_hurdles(self):
        tiers = [
            {"hurdle": 0.12, "lp_split": 0.8, "gp_split": 0.2},
            {"hurdle": 0.10, "lp_split": 0.7, "gp_split": 0.3},
            {"hurdle": None, "lp_split": 0.5, "gp_split": 0.5},
        ]
        with pytest.raises(ValidationError) as exc:
            WaterfallStructure(lp_equity=100, promote_tiers=tiers)
        assert exc.value.field == "promote_tiers"

    def test_splits_must_sum_to_one(self):
        with pytest.raises(ValidationError):
            PromoteTier(BoundedHurdle(0.12), 0.8, 0.3)

    def test_open_ended_must_be_last(self):
        tiers = (
            PromoteTier(OpenEndedHurdle(), 0.5, 0.5),
            PromoteTier(BoundedHurdle(0.12), 0.8, 0.2),
        )
        with pytest.raises(ValidationError):
            WaterfallStructure(lp_equity=100, promote_tiers=tiers)

    def test_exactly_one_open_ended(self):
        with pytest.raises(ValidationError):
            WaterfallStructure(
                lp_equity=100, promote_tiers=(PromoteTier(BoundedHurdle(0.12), 0.8, 0.2),)
            )

    def test_catch_up_must_exceed_first_split(self):
        with pytest.raises(ValidationError) as exc:
            WaterfallStructure(lp_equity=100, catch_up_percent=0.2)
        assert exc.value.field == "catch_up_percent"

    def test_lp_equity_required(self):
        with pytest.raises(ValidationError):
            WaterfallStructure(lp_equity=0)

    def test_per_class_requires_classes(self):
        with pytest.raises(ValidationError):
            WaterfallStructure(lp_equity=100, use_per_class_waterfall=True)

    def test_per_class_equity_must_match(self):
        with pytest.raises(ValidationError):
            WaterfallStructure(
                lp_equity=100,
                use_per_class_waterfall=True,
                share_classes=(ShareClass("A", 1, 60), ShareClass("B", 2, 30)),
            )

    def test_per_class_with_lookback_rejected(self):
        with pytest.raises(ValidationError) as exc:
            WaterfallStructure(
                lp_equity=100,
                lookback=True,
                use_per_class_waterfall=True,
                share_classes=(ShareClass("A", 1, 100),),
            )
        assert exc.value.field == "lookback"

    def test_duplicate_priorities_rejected(self):
        with pytest.raises(ValidationError):
            WaterfallStructure(
                lp_equity=100,
                use_per_class_waterfall=True,
                share_classes=(ShareClass("A", 1, 50), ShareClass("B", 1, 50)),
            )

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            WaterfallStructure.from_dict({"lp_equity": 100, "promote": 0.2})

    def test_empty_cash_flows(self, value_add_structure):
        with pytest.raises(ValidationError):
            calculate_waterfall([], value_add_structure)

    def test_dict_round_trip(self, value_add_structure):
        assert WaterfallStructure.from_dict(value_add_structure.to_dict()) == value_add_structure


class TestTemplates:
    """Test waterfall templates."""

    def test_every_template_is_valid(self):
        for key in WATERFALL_TEMPLATES:
            structure = structure_from_template(key, 9000000, 1000000)
            assert structure.total_equity == pytest.approx(10000000)

    def test_template_terms(self):
        structure = structure_from_template("value_add", 9000000, 1000000)
        assert structure.preferred_return == 0.08
        assert structure.gp_catch_up
        assert len(structure.promote_tiers) == 4

    def test_template_overrides(self):
        structure = structure_from_template("CORE", 100, lookback=True)
        assert structure.lookback

    def test_unknown_template(self):
        with pytest.raises(ValidationError):
            structure_from_template("MEZZ", 100)

    def test_default_structure(self):
        structure = create_default_structure(10000000)
        assert structure.lp_equity == pytest.approx(9000000)
        assert structure.gp_equity == pytest.approx(1000000)


class TestDistributionPhases:
    """Hand-checked distributions for small structures."""

    def test_capital_then_pref_then_split(self):
        """Pref compounds on unreturned capital plus unpaid pref."""
        structure = WaterfallStructure(
            lp_equity=100, gp_catch_up=False, promote_tiers=OPEN_80_20
        )
        result = calculate_waterfall([50, 100], structure)
        year1, year2 = result.yearly_distributions

        assert year1.capital_returned == pytest.approx(50)
        assert year1.pref_paid == pytest.approx(0)
        assert year1.gp_share == pytest.approx(0)

        # (50 unreturned + 8 unpaid pref) * 8% on top of the 8 owed
        assert year2.pref_paid == pytest.approx(12.64)
        assert year2.capital_returned == pytest.approx(50)
        assert year2.gp_share == pytest.approx(37.36 * 0.20)
        assert year2.lp_share == pytest.approx(100 - 37.36 * 0.20)

    def test_full_catch_up(self):
        """With a 100% catch-up the GP ends at its split of all profit."""
        structure = WaterfallStructure(lp_equity=100, promote_tiers=OPEN_80_20)
        result = calculate_waterfall([200], structure)
        year = result.yearly_distributions[0]

        assert year.pref_paid == pytest.approx(8)
        assert year.gp_catch_up == pytest.approx(2)
        assert year.gp_share == pytest.approx(0.20 * 100)
        assert result.total_promote == pytest.approx(20)

    def test_partial_catch_up(self):
        structure = WaterfallStructure(
            lp_equity=100, catch_up_percent=0.5, promote_tiers=OPEN_80_20
        )
        result = calculate_waterfall([200], structure)
        year = result.yearly_distributions[0]

        catch_up_cash = catch_up_required(8, 0, 0, 0.20, 0.5)
        assert year.gp_catch_up == pytest.approx(catch_up_cash * 0.5)
        assert year.lp_catch_up == pytest.approx(catch_up_cash * 0.5)
        assert year.gp_share == pytest.approx(0.20 * 100)

    def test_single_event_spans_tiers(self):
        """A tier takes exactly the cash that brings investors to its hurdle."""
        tiers = (
            PromoteTier(BoundedHurdle(0.10), 0.90, 0.10),
            PromoteTier(OpenEndedHurdle(), 0.50, 0.50),
        )
        structure = WaterfallStructure(lp_equity=100, gp_catch_up=False, promote_tiers=tiers)
        result = calculate_waterfall([150], structure)
        year = result.yearly_distributions[0]

        # LP needs 110 to reach 10%: 108 from capital and pref, 2 from the first tier
        tier_one_cash = 2 / 0.90
        expected_gp = tier_one_cash * 0.10 + (42 - tier_one_cash) * 0.50
        assert year.gp_promote == pytest.approx(expected_gp)
        assert year.active_tier == 1

    def test_below_pref_no_promote(self, value_add_structure):
        result = calculate_waterfall([500000, 500000, 9500000], value_add_structure)
        assert result.total_promote == pytest.approx(0)
        assert all(y.active_tier is None for y in result.yearly_distributions)

    def test_capital_call_funded_pro_rata(self):
        structure = WaterfallStructure(lp_equity=90, gp_equity=10, promote_tiers=OPEN_80_20)
        cash_flows = [-50, 300]
        result = calculate_waterfall(cash_flows, structure)
        year1 = result.yearly_distributions[0]

        assert year1.lp_share == pytest.approx(-45)
        assert year1.gp_share == pytest.approx(-5)
        assert_cash_conserved(result, cash_flows)


class TestConservation:
    """Distributed cash always equals input cash."""

    @pytest.mark.parametrize("template", sorted(WATERFALL_TEMPLATES))
    def test_templates_conserve_cash(self, template, stabilized_assumptions):
        cash_flows = project_cash_flows(stabilized_assumptions).distributable_cash_flows()
        structure = structure_from_template(template, 3600000, 400000)
        result = calculate_waterfall(cash_flows, structure)

        assert_cash_conserved(result, cash_flows)
        assert result.total_distributed == pytest.approx(sum(cash_flows))

    def test_mixed_signs_conserve_cash(self, value_add_structure):
        cash_flows = [400000, -1500000, 0, 2500000, 16000000]
        result = calculate_waterfall(cash_flows, value_add_structure)
        assert_cash_conserved(result, cash_flows)

    def test_cumulative_totals(self, value_add_structure):
        result = calculate_waterfall([800000, 900000, 15000000], value_add_structure)
        last = result.yearly_distributions[-1]
        assert last.cumulative_lp == pytest.approx(result.lp_total_return)
        assert last.cumulative_gp == pytest.approx(result.gp_total_return)


class TestReturns:
    """Test LP and GP return metrics."""

    def test_gp_promote_lifts_gp_multiple(self, value_add_structure):
        result = calculate_waterfall([800000, 900000, 15000000], value_add_structure)
        assert result.lp_irr is not None
        assert result.gp_irr is not None
        assert result.gp_equity_multiple > result.lp_equity_multiple
        assert result.gp_irr > result.lp_irr

    def test_no_gp_capital(self):
        structure = WaterfallStructure(lp_equity=100, promote_tiers=OPEN_80_20)
        result = calculate_waterfall([20, 150], structure)
        assert result.gp_irr is None
        assert result.undefined["gp_irr"] == UndefinedReason.NO_GP_CAPITAL
        assert result.lp_irr is not None

    def test_to_dict(self, value_add_structure):
        data = calculate_waterfall([800000, 15000000], value_add_structure).to_dict()
        assert len(data["yearly_distributions"]) == 2
        assert data["by_class"] is None
        assert data["summary"]["lookback_adjustment"] is None
        assert data["structure"]["promote_tiers"][-1]["hurdle"] is None


class TestLookback:
    """Test the terminal true-up."""

    TIERS = (
        PromoteTier(BoundedHurdle(0.10), 1.0, 0.0),
        PromoteTier(OpenEndedHurdle(), 0.50, 0.50),
    )

    def test_clawback_after_capital_call(self):
        """Promote paid early is returned once a later call drags returns below the hurdle."""
        structure = WaterfallStructure(
            lp_equity=100, gp_catch_up=False, promote_tiers=self.TIERS, lookback=True
        )
        cash_flows = [200, -100]
        result = calculate_waterfall(cash_flows, structure)

        assert result.yearly_distributions[0].gp_share == pytest.approx(45)
        assert result.lookback_adjustment == pytest.approx(-45)
        assert result.yearly_distributions[-1].lookback_adjustment == pytest.approx(-45)
        assert result.total_promote == pytest.approx(0)
        assert result.gp_total_return == pytest.approx(0)
        assert_cash_conserved(result, cash_flows)

    def test_without_lookback_promote_is_kept(self):
        structure = WaterfallStructure(
            lp_equity=100, gp_catch_up=False, promote_tiers=self.TIERS
        )
        result = calculate_waterfall([200, -100], structure)
        assert result.lookback_adjustment is None
        assert result.total_promote == pytest.approx(45)

    @pytest.mark.parametrize(
        "cash_flows,hurdle",
        [
            ([40, 40, 40, 140], 0.10),
            ([30] * 9 + [130], 0.12),
        ],
    )
    def test_no_clawback_when_returns_clear_every_hurdle(self, cash_flows, hurdle):
        tiers = (
            PromoteTier(BoundedHurdle(hurdle), 1.0, 0.0),
            PromoteTier(OpenEndedHurdle(), 0.50, 0.50),
        )
        plain = calculate_waterfall(
            cash_flows, WaterfallStructure(lp_equity=100, gp_catch_up=False, promote_tiers=tiers)
        )
        assert plain.lp_irr > hurdle + 0.05

        result = calculate_waterfall(
            cash_flows,
            WaterfallStructure(lp_equity=100, gp_catch_up=False, promote_tiers=tiers, lookback=True),
        )
        assert result.lookback_adjustment >= -1e-6
        assert result.total_promote >= plain.total_promote - 1e-6
        assert_cash_conserved(result, cash_flows)

    def test_residual_resplit_at_its_own_date(self):
        """Year-one residual is re-measured against the later call and capital return."""
        structure = WaterfallStructure(
            lp_equity=100,
            preferred_return=0.0,
            gp_catch_up=False,
            promote_tiers=self.TIERS,
            lookback=True,
        )
        cash_flows = [150, -50, 50]
        result = calculate_waterfall(cash_flows, structure)

        # Tier one needs 10 in year one; whole-life it needs 14.13
        assert result.yearly_distributions[0].gp_promote == pytest.approx(20)
        assert result.total_promote == pytest.approx((50 - 14.132231) / 2, abs=1e-4)
        assert result.lookback_adjustment == pytest.approx(-2.066116, abs=1e-4)
        assert_cash_conserved(result, cash_flows)

    def test_lookback_conserves_cash(self, value_add_structure):
        structure = structure_from_template("JOINT_VENTURE", 9000000, 1000000, lookback=True)
        cash_flows = [3000000, 200000, -800000, 400000, 14000000]
        result = calculate_waterfall(cash_flows, structure)
        assert_cash_conserved(result, cash_flows)
        assert result.total_promote == pytest.approx(
            sum(y.gp_catch_up + y.gp_promote for y in result.yearly_distributions)
            + result.lookback_adjustment
        )


class TestPerClass:
    """Test the per-class waterfall."""

    @pytest.fixture
    def structure(self):
        return WaterfallStructure(
            lp_equity=90,
            gp_equity=10,
            use_per_class_waterfall=True,
            share_classes=(
                ShareClass("B", 2, 40),
                ShareClass("A", 1, 60, preferred_return=0.06),
            ),
        )

    def test_priority_order(self, structure):
        result = calculate_waterfall([50, 50, 100], structure)
        year1 = result.yearly_distributions[0]
        assert year1.by_class == pytest.approx({"A": 50, "B": 0})

    def test_priority_one_repaid_first(self, structure):
        result = calculate_waterfall([50, 50, 100], structure)
        cumulative = {"A": 0.0, "B": 0.0}
        for year in result.yearly_distributions:
            for code in cumulative:
                cumulative[code] += year.by_class[code]
            if cumulative["B"] > 0:
                assert cumulative["A"] >= 60

    def test_class_totals(self, structure):
        cash_flows = [50, 50, 100]
        result = calculate_waterfall(cash_flows, structure)

        class_total = sum(c.total_distributed for c in result.by_class.values())
        assert class_total == pytest.approx(result.lp_total_return)
        assert result.by_class["A"].capital_returned == pytest.approx(60)
        assert result.by_class["B"].capital_returned == pytest.approx(40)
        assert result.by_class["A"].preferred_return == 0.06
        assert_cash_conserved(result, cash_flows)

    def test_gp_side_is_carry_only(self, structure):
        result = calculate_waterfall([50, 50, 100], structure)
        assert result.gp_total_return == pytest.approx(result.total_promote)
        assert result.undefined["gp_irr"] == UndefinedReason.NO_GP_CAPITAL
