# backend/packaging_conversion_engine.py

"""
Packaging Conversion Engine - Stock-Critical Component

This engine is responsible for:
- Base unit and packaging type lookups
- Packaging compatibility checks (shared base unit)
- Exact packaging ↔ packaging quantity conversion
- Minimal integer step computation for repack controls
- Validation and error signaling

This engine MUST NOT:
- Read or write storage
- Round fractional conversions silently
- Read thresholds or settings from process state

GLOBAL INVARIANTS (ENFORCED):
1) Conversion only between packaging types sharing compatible_base_unit_id
2) "1 unit of packaging == default_conversion_factor base units"
3) A conversion that needs fractional target units is REJECTED (None), never rounded
4) Factors that are zero, negative or non-finite are catalog faults → HARD ERROR
5) Integrality is decided on FACTOR_SCALE integers when quantity and factors fit
   four decimals, otherwise with an explicit tolerance; never float ==
"""

from enum import Enum
from typing import Optional, List, Dict, Any, Iterable
import logging
import math

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

# ==================== CONSTANTS ====================

# Factors are scaled to integers before GCD/LCM so decimal factors (0.5, 2.25) work
FACTOR_SCALE = 10000

# Tolerance used for every "is this a whole number" check
INTEGER_TOLERANCE = 1e-9

# Relative slack when snapping a float onto the FACTOR_SCALE grid
SCALE_RELATIVE_TOLERANCE = 1e-12

# ==================== ENUMS ====================

class ResultStatus(str, Enum):
    """Engine result status"""
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


class Severity(str, Enum):
    HARD_ERROR = "HARD_ERROR"
    DATA_QUALITY = "DATA_QUALITY"
    CONFLICT = "CONFLICT"

# ==================== ERROR CLASSES ====================

class EngineError(Exception):
    """Base engine error"""
    def __init__(
        self,
        error_code: str,
        message: str,
        field: Optional[str] = None,
        severity: str = Severity.HARD_ERROR.value,
        context: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.field = field
        self.severity = severity
        self.context = context or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "field": self.field,
            "severity": self.severity,
            "context": self.context
        }


class InvalidQuantityError(EngineError):
    """Quantity must be a positive number"""
    def __init__(self, quantity: Any, field: str = "quantity", **context):
        super().__init__(
            "INVALID_QUANTITY",
            f"Quantity must be a positive number. Received: {quantity}",
            field=field,
            context={"quantity": quantity, **context}
        )


class IncompatibleUnitsError(EngineError):
    """Packaging types do not share a base unit"""
    def __init__(self, source: "PackagingType", target: "PackagingType"):
        super().__init__(
            "INCOMPATIBLE_UNITS",
            f"Cannot convert from '{source.name}' to '{target.name}'. "
            f"Base units differ ({source.compatible_base_unit_id} vs {target.compatible_base_unit_id}).",
            field="target_packaging_type_id",
            context={
                "source_packaging_type_id": source.id,
                "target_packaging_type_id": target.id,
                "source_base_unit_id": source.compatible_base_unit_id,
                "target_base_unit_id": target.compatible_base_unit_id
            }
        )


class InvalidConversionFactorError(EngineError):
    """Catalog fault: factor is zero, negative or non-finite"""
    def __init__(self, packaging: "PackagingType"):
        super().__init__(
            "INVALID_CONVERSION_FACTOR",
            f"Packaging type '{packaging.name}' has an invalid conversion factor: "
            f"{packaging.default_conversion_factor}. Fix the packaging type master data.",
            field="default_conversion_factor",
            severity=Severity.DATA_QUALITY.value,
            context={
                "packaging_type_id": packaging.id,
                "default_conversion_factor": packaging.default_conversion_factor
            }
        )


class SamePackagingTypeError(EngineError):
    """Repack into the identical packaging type"""
    def __init__(self, packaging_type_id: str):
        super().__init__(
            "SAME_PACKAGING_TYPE",
            f"Cannot repack into the same packaging type '{packaging_type_id}'.",
            field="target_packaging_type_id",
            context={"packaging_type_id": packaging_type_id}
        )


class InsufficientQuantityError(EngineError):
    """Requested amount exceeds lot quantity"""
    def __init__(self, inventory_id: str, requested: float, available: float, **context):
        super().__init__(
            "INSUFFICIENT_QUANTITY",
            f"Requested quantity ({requested}) exceeds available quantity ({available}) "
            f"in lot '{inventory_id}'.",
            field="quantity",
            context={"inventory_id": inventory_id, "requested": requested, "available": available, **context}
        )


class FractionalConversionRejectedError(EngineError):
    """Exact conversion would need a non-integer target quantity"""
    def __init__(self, quantity: float, source: "PackagingType", target: "PackagingType", step: Optional[int] = None):
        super().__init__(
            "FRACTIONAL_CONVERSION_REJECTED",
            f"{quantity} × '{source.name}' cannot be converted into a whole number of '{target.name}'.",
            field="quantity",
            context={
                "quantity": quantity,
                "source_packaging_type_id": source.id,
                "target_packaging_type_id": target.id,
                "minimal_step": step
            }
        )


class PackagingNotFoundError(EngineError):
    """Packaging type not in catalog"""
    def __init__(self, packaging_type_id: Any):
        super().__init__(
            "PACKAGING_NOT_FOUND",
            f"Packaging type '{packaging_type_id}' not found in master data.",
            field="packaging_type_id",
            context={"packaging_type_id": packaging_type_id}
        )


class BaseUnitNotFoundError(EngineError):
    """Base unit not in catalog"""
    def __init__(self, base_unit_id: Any):
        super().__init__(
            "BASE_UNIT_NOT_FOUND",
            f"Base unit '{base_unit_id}' not found in master data.",
            field="base_unit_id",
            context={"base_unit_id": base_unit_id}
        )


class ConcurrentModificationError(EngineError):
    """Raised by the store when an optimistic update loses the race"""
    def __init__(self, record_id: str, expected: Any, field: str = "inventory_id"):
        super().__init__(
            "CONCURRENT_MODIFICATION_CONFLICT",
            f"Record '{record_id}' was modified by another operation (expected {expected}). "
            f"Reload and retry.",
            field=field,
            severity=Severity.CONFLICT.value,
            context={field: record_id, "expected": expected}
        )

# ==================== DATA MODELS ====================

class BaseUnit(BaseModel):
    """Canonical measurement unit (kilogram, liter, piece)"""
    model_config = ConfigDict(extra="ignore", frozen=True)
    id: str
    name: str


class PackagingType(BaseModel):
    """
    Named container with a fixed factor to one base unit.

    default_conversion_factor is NOT constrained here: a bad factor must reach
    the calculator so it is reported as INVALID_CONVERSION_FACTOR instead of
    failing the whole catalog load.
    """
    model_config = ConfigDict(extra="ignore", frozen=True)
    id: str
    name: str
    compatible_base_unit_id: str
    default_conversion_factor: Optional[float] = None

    def is_compatible_with(self, other: "PackagingType") -> bool:
        return self.compatible_base_unit_id == other.compatible_base_unit_id


class StepResult(BaseModel):
    """Minimal step output for the API layer"""
    status: ResultStatus
    step: Optional[int] = None
    source_packaging_type_id: str
    target_packaging_type_id: str
    errors: List[Dict[str, Any]] = []


class EquivalentQuantityResult(BaseModel):
    """Equivalent quantity output for the API layer (None = not a whole number)"""
    status: ResultStatus
    quantity: float
    equivalent_quantity: Optional[float] = None
    quantity_in_base_units: Optional[float] = None
    errors: List[Dict[str, Any]] = []

# ==================== CATALOGS ====================

class BaseUnitCatalog:
    """Identity lookup over base units"""

    def __init__(self, units: Iterable[BaseUnit] = ()):
        self._units: Dict[str, BaseUnit] = {u.id: u for u in units}

    def __contains__(self, base_unit_id: str) -> bool:
        return base_unit_id in self._units

    def __len__(self) -> int:
        return len(self._units)

    def get(self, base_unit_id: str) -> Optional[BaseUnit]:
        return self._units.get(base_unit_id)

    def require(self, base_unit_id: str) -> BaseUnit:
        unit = self._units.get(base_unit_id)
        if unit is None:
            raise BaseUnitNotFoundError(base_unit_id)
        return unit

    def all(self) -> List[BaseUnit]:
        return list(self._units.values())


class PackagingTypeCatalog:
    """Packaging types keyed by id, each bound to one base unit"""

    def __init__(self, packaging_types: Iterable[PackagingType] = (), base_units: Optional[BaseUnitCatalog] = None):
        self._types: Dict[str, PackagingType] = {}
        self.base_units = base_units
        for packaging in packaging_types:
            if base_units is not None and packaging.compatible_base_unit_id not in base_units:
                logger.warning(
                    f"Packaging type {packaging.id} ({packaging.name}) references unknown base unit "
                    f"{packaging.compatible_base_unit_id}"
                )
            self._types[packaging.id] = packaging

    def __contains__(self, packaging_type_id: str) -> bool:
        return packaging_type_id in self._types

    def __len__(self) -> int:
        return len(self._types)

    def get(self, packaging_type_id: str) -> Optional[PackagingType]:
        return self._types.get(packaging_type_id)

    def require(self, packaging_type_id: str) -> PackagingType:
        packaging = self._types.get(packaging_type_id)
        if packaging is None:
            raise PackagingNotFoundError(packaging_type_id)
        return packaging

    def all(self) -> List[PackagingType]:
        return list(self._types.values())

    def compatible_with(self, packaging: PackagingType, include_self: bool = False) -> List[PackagingType]:
        """Packaging types sharing the base unit of `packaging`, in catalog order"""
        return [
            pt for pt in self._types.values()
            if pt.is_compatible_with(packaging) and (include_self or pt.id != packaging.id)
        ]

    def base_unit_of(self, packaging: PackagingType) -> Optional[BaseUnit]:
        if self.base_units is None:
            return None
        return self.base_units.get(packaging.compatible_base_unit_id)

# ==================== INTEGER HELPERS ====================

def gcd(a: int, b: int) -> int:
    """Greatest common divisor; gcd(a, 0) == a"""
    return math.gcd(a, b)


def lcm(a: int, b: int) -> int:
    """Least common multiple; zero operands are rejected upstream"""
    if a == 0 or b == 0:
        raise ValueError("lcm is undefined for zero operands")
    return abs(a * b) // gcd(a, b)


def is_whole_number(value: float, tolerance: float = INTEGER_TOLERANCE) -> bool:
    return math.isfinite(value) and abs(value - round(value)) <= tolerance


def to_scaled_integer(value: float) -> Optional[int]:
    """value * FACTOR_SCALE as an exact int, or None when value has more than four decimals"""
    scaled_value = value * FACTOR_SCALE
    if not math.isfinite(scaled_value):
        return None
    scaled = round(scaled_value)
    if abs(scaled_value - scaled) > max(INTEGER_TOLERANCE, abs(scaled_value) * SCALE_RELATIVE_TOLERANCE):
        return None
    return scaled

# ==================== CONVERSION CALCULATOR ====================

class ConversionCalculator:
    """
    Stateless packaging conversion calculator.

    Same inputs always give the same outputs. The catalog is only used by
    the id-based helpers; the core methods take PackagingType objects.
    """

    def __init__(self, catalog: Optional[PackagingTypeCatalog] = None):
        self.catalog = catalog

    def check_factor(self, packaging: PackagingType) -> float:
        """
        Return the factor or raise InvalidConversionFactorError.

        Bad factors are logged as data-quality warnings: they are catalog
        faults, not user input.
        """
        factor = packaging.default_conversion_factor
        if factor is None or not isinstance(factor, (int, float)) or not math.isfinite(factor) or factor <= 0:
            logger.warning(
                f"Data quality: packaging type {packaging.id} ({packaging.name}) "
                f"has invalid conversion factor {factor}"
            )
            raise InvalidConversionFactorError(packaging)
        return float(factor)

    def check_compatible(self, source: PackagingType, target: PackagingType) -> None:
        if not source.is_compatible_with(target):
            raise IncompatibleUnitsError(source, target)

    def to_base_units(self, quantity: float, packaging: PackagingType) -> float:
        return quantity * self.check_factor(packaging)

    def equivalent_quantity(
        self,
        quantity: float,
        source: PackagingType,
        target: PackagingType
    ) -> Optional[float]:
        """
        Convert `quantity` of `source` packaging into `target` packaging.

        Returns:
            Whole-number target quantity, or None when the exact result is
            fractional (callers must block the operation, not round).

        Raises:
            InvalidQuantityError: quantity is not a positive number
            IncompatibleUnitsError: base units differ
            InvalidConversionFactorError: catalog fault
        """
        if isinstance(quantity, bool) or not isinstance(quantity, (int, float)) \
                or not math.isfinite(quantity) or quantity <= 0:
            raise InvalidQuantityError(quantity)

        self.check_compatible(source, target)
        source_factor = self.check_factor(source)
        target_factor = self.check_factor(target)

        scaled_quantity = to_scaled_integer(quantity)
        scaled_source = to_scaled_integer(source_factor)
        scaled_target = to_scaled_integer(target_factor)
        if scaled_quantity and scaled_source and scaled_target:
            # quantity * source / target == (sq * ss) / (st * FACTOR_SCALE), exactly
            numerator = scaled_quantity * scaled_source
            denominator = scaled_target * FACTOR_SCALE
            if numerator % denominator:
                return None
            return float(numerator // denominator)

        target_quantity = quantity * source_factor / target_factor
        if not is_whole_number(target_quantity):
            return None
        return float(round(target_quantity))

    def minimal_integer_step(self, source: PackagingType, target: PackagingType) -> int:
        """
        Smallest whole number of source units that always converts into a
        whole number of target units.

        Factors are scaled by FACTOR_SCALE to integers, then
        step = lcm(scaled_source, scaled_target) / scaled_source, min 1.
        """
        self.check_compatible(source, target)
        scaled_source = round(self.check_factor(source) * FACTOR_SCALE)
        scaled_target = round(self.check_factor(target) * FACTOR_SCALE)

        # Factors below 1 / FACTOR_SCALE vanish after scaling
        if scaled_source == 0:
            raise InvalidConversionFactorError(source)
        if scaled_target == 0:
            raise InvalidConversionFactorError(target)

        common_multiple = lcm(scaled_source, scaled_target)
        step = common_multiple // scaled_source
        return max(1, step)

    # ---------- id-based wrappers returning typed results ----------

    def step_for(self, source_packaging_type_id: str, target_packaging_type_id: str) -> StepResult:
        try:
            source = self._require(source_packaging_type_id)
            target = self._require(target_packaging_type_id)
            step = self.minimal_integer_step(source, target)
            return StepResult(
                status=ResultStatus.SUCCESS,
                step=step,
                source_packaging_type_id=source_packaging_type_id,
                target_packaging_type_id=target_packaging_type_id
            )
        except EngineError as e:
            return StepResult(
                status=ResultStatus.ERROR,
                source_packaging_type_id=source_packaging_type_id,
                target_packaging_type_id=target_packaging_type_id,
                errors=[e.to_dict()]
            )

    def convert(
        self,
        quantity: float,
        source_packaging_type_id: str,
        target_packaging_type_id: str
    ) -> EquivalentQuantityResult:
        try:
            source = self._require(source_packaging_type_id)
            target = self._require(target_packaging_type_id)
            equivalent = self.equivalent_quantity(quantity, source, target)
            return EquivalentQuantityResult(
                status=ResultStatus.SUCCESS,
                quantity=quantity,
                equivalent_quantity=equivalent,
                quantity_in_base_units=self.to_base_units(quantity, source)
            )
        except EngineError as e:
            return EquivalentQuantityResult(
                status=ResultStatus.ERROR,
                quantity=quantity,
                errors=[e.to_dict()]
            )

    def _require(self, packaging_type_id: str) -> PackagingType:
        if self.catalog is None:
            raise RuntimeError("Packaging catalog required for id-based lookups")
        return self.catalog.require(packaging_type_id)
