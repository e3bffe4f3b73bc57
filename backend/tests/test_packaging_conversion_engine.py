# backend/tests/test_packaging_conversion_engine.py

"""
Unit tests for the Packaging Conversion Engine

Tests cover:
- 100 kg loose → 4 × 25kg bags (exact)
- 37 kg loose → 25kg bags → None (fractional, never rounded)
- Round trip A → B → A
- Minimal integer step, including decimal factors
- Incompatible base units, invalid factors, invalid quantities
- Id-based wrappers returning typed results
"""

import pytest

from packaging_conversion_engine import (
    ConversionCalculator,
    IncompatibleUnitsError,
    InvalidConversionFactorError,
    InvalidQuantityError,
    PackagingNotFoundError,
    PackagingType,
    ResultStatus,
    gcd,
    lcm,
    is_whole_number,
)


@pytest.fixture
def calculator(catalog):
    return ConversionCalculator(catalog)


class TestIntegerHelpers:
    def test_gcd_with_zero(self):
        assert gcd(12, 0) == 12

    def test_lcm(self):
        assert lcm(4, 6) == 12
        assert lcm(10000, 250000) == 250000

    def test_lcm_rejects_zero(self):
        with pytest.raises(ValueError):
            lcm(0, 5)

    def test_whole_number_tolerance(self):
        assert is_whole_number(4.0000000000001)
        assert not is_whole_number(1.48)
        assert not is_whole_number(float("nan"))


class TestEquivalentQuantity:
    """Exact packaging → packaging conversion"""

    def test_loose_kg_to_bags(self, calculator, catalog):
        """100 kg → 4 bags of 25 kg"""
        result = calculator.equivalent_quantity(100, catalog.require("LOOSE_KG"), catalog.require("BAG_25"))
        assert result == 4

    def test_fractional_returns_none(self, calculator, catalog):
        """37 kg → 1.48 bags is rejected, not rounded"""
        result = calculator.equivalent_quantity(37, catalog.require("LOOSE_KG"), catalog.require("BAG_25"))
        assert result is None

    def test_round_trip(self, calculator, catalog):
        bag, loose = catalog.require("BAG_25"), catalog.require("LOOSE_KG")
        kilos = calculator.equivalent_quantity(4, bag, loose)
        assert kilos == 100
        assert calculator.equivalent_quantity(kilos, loose, bag) == 4

    def test_decimal_factor(self, calculator, catalog):
        """Half-kg pouches: even counts make whole kilograms, odd counts do not"""
        pouch, loose = catalog.require("POUCH_HALF"), catalog.require("LOOSE_KG")
        assert calculator.equivalent_quantity(6, pouch, loose) == 3
        assert calculator.equivalent_quantity(3, pouch, loose) is None

    def test_large_quantities_with_decimal_factors(self, calculator):
        """Every multiple of the minimal step converts exactly, however large"""
        tenth = PackagingType(id="TENTH", name="0.1kg Sachet", compatible_base_unit_id="KG",
                              default_conversion_factor=0.1)
        three_tenths = PackagingType(id="THREE_TENTHS", name="0.3kg Sachet", compatible_base_unit_id="KG",
                                     default_conversion_factor=0.3)
        step = calculator.minimal_integer_step(tenth, three_tenths)
        assert step == 3

        assert calculator.equivalent_quantity(26999544, tenth, three_tenths) == 8999848
        assert calculator.equivalent_quantity(29999493, tenth, three_tenths) == 9999831
        assert calculator.equivalent_quantity(29999494, tenth, three_tenths) is None
        for multiple in range(9999000, 9999100):
            assert calculator.equivalent_quantity(multiple * step, tenth, three_tenths) == multiple

    def test_incompatible_units(self, calculator, catalog):
        with pytest.raises(IncompatibleUnitsError) as exc_info:
            calculator.equivalent_quantity(1, catalog.require("BAG_25"), catalog.require("DRUM_200"))
        assert exc_info.value.error_code == "INCOMPATIBLE_UNITS"
        assert exc_info.value.context["source_base_unit_id"] == "KG"
        assert exc_info.value.context["target_base_unit_id"] == "LTR"

    @pytest.mark.parametrize("quantity", [0, -5, True, float("inf"), "10", None])
    def test_invalid_quantity(self, calculator, catalog, quantity):
        with pytest.raises(InvalidQuantityError) as exc_info:
            calculator.equivalent_quantity(quantity, catalog.require("LOOSE_KG"), catalog.require("BAG_25"))
        assert exc_info.value.error_code == "INVALID_QUANTITY"

    def test_zero_factor_is_data_quality_error(self, calculator, catalog, caplog):
        with pytest.raises(InvalidConversionFactorError) as exc_info:
            calculator.equivalent_quantity(10, catalog.require("LOOSE_KG"), catalog.require("BROKEN"))
        assert exc_info.value.severity == "DATA_QUALITY"
        assert "invalid conversion factor" in caplog.text

    def test_non_finite_factor(self, calculator):
        nan_type = PackagingType(id="NAN", name="NaN", compatible_base_unit_id="KG",
                                 default_conversion_factor=float("nan"))
        with pytest.raises(InvalidConversionFactorError):
            calculator.check_factor(nan_type)

    def test_missing_factor(self, calculator):
        unset = PackagingType(id="UNSET", name="Unset", compatible_base_unit_id="KG")
        with pytest.raises(InvalidConversionFactorError):
            calculator.check_factor(unset)


class TestMinimalIntegerStep:
    """Smallest source quantity that always converts to whole target units"""

    @pytest.mark.parametrize("source_id,target_id,expected", [
        ("LOOSE_KG", "BAG_25", 25),
        ("BAG_25", "BAG_50", 2),
        ("BAG_50", "BAG_25", 1),
        ("BOX_10", "BAG_25", 5),
        ("POUCH_HALF", "LOOSE_KG", 2),
        ("LOOSE_KG", "POUCH_HALF", 1),
    ])
    def test_step_values(self, calculator, catalog, source_id, target_id, expected):
        assert calculator.minimal_integer_step(catalog.require(source_id), catalog.require(target_id)) == expected

    @pytest.mark.parametrize("source_id,target_id", [
        ("LOOSE_KG", "BAG_25"),
        ("BOX_10", "BAG_25"),
        ("BAG_25", "BAG_50"),
        ("POUCH_HALF", "BOX_10"),
    ])
    def test_step_is_minimal(self, calculator, catalog, source_id, target_id):
        """The step converts exactly and no smaller positive integer does"""
        source, target = catalog.require(source_id), catalog.require(target_id)
        step = calculator.minimal_integer_step(source, target)
        assert step >= 1
        assert calculator.equivalent_quantity(step, source, target) is not None
        for smaller in range(1, step):
            assert calculator.equivalent_quantity(smaller, source, target) is None

    def test_step_is_deterministic(self, calculator, catalog):
        source, target = catalog.require("BOX_10"), catalog.require("BAG_25")
        assert calculator.minimal_integer_step(source, target) == calculator.minimal_integer_step(source, target)

    def test_zero_factor(self, calculator, catalog):
        with pytest.raises(InvalidConversionFactorError):
            calculator.minimal_integer_step(catalog.require("BROKEN"), catalog.require("LOOSE_KG"))

    def test_factor_too_small_to_scale(self, calculator, catalog):
        tiny = PackagingType(id="TINY", name="Tiny", compatible_base_unit_id="KG", default_conversion_factor=0.00001)
        with pytest.raises(InvalidConversionFactorError):
            calculator.minimal_integer_step(tiny, catalog.require("LOOSE_KG"))


class TestIdBasedWrappers:
    def test_step_for(self, calculator):
        result = calculator.step_for("LOOSE_KG", "BAG_25")
        assert result.status == ResultStatus.SUCCESS
        assert result.step == 25

    def test_step_for_unknown_packaging(self, calculator):
        result = calculator.step_for("LOOSE_KG", "NOPE")
        assert result.status == ResultStatus.ERROR
        assert result.errors[0]["error_code"] == "PACKAGING_NOT_FOUND"

    def test_convert(self, calculator):
        result = calculator.convert(100, "LOOSE_KG", "BAG_25")
        assert result.status == ResultStatus.SUCCESS
        assert result.equivalent_quantity == 4
        assert result.quantity_in_base_units == 100

    def test_convert_fractional_is_success_with_none(self, calculator):
        result = calculator.convert(37, "LOOSE_KG", "BAG_25")
        assert result.status == ResultStatus.SUCCESS
        assert result.equivalent_quantity is None

    def test_convert_incompatible(self, calculator):
        result = calculator.convert(1, "BAG_25", "DRUM_200")
        assert result.status == ResultStatus.ERROR
        assert result.errors[0]["error_code"] == "INCOMPATIBLE_UNITS"

    def test_require_without_catalog(self):
        with pytest.raises(RuntimeError):
            ConversionCalculator().step_for("A", "B")


class TestCatalog:
    def test_compatible_with_excludes_self_and_other_units(self, catalog):
        ids = [pt.id for pt in catalog.compatible_with(catalog.require("BAG_25"))]
        assert "BAG_25" not in ids
        assert "DRUM_200" not in ids
        assert ids == ["LOOSE_KG", "BAG_50", "BOX_10", "POUCH_HALF", "BROKEN"]

    def test_require_unknown(self, catalog):
        with pytest.raises(PackagingNotFoundError):
            catalog.require("MISSING")

    def test_base_unit_of(self, catalog):
        assert catalog.base_unit_of(catalog.require("DRUM_200")).name == "Liter"
