# backend/repack_service.py

"""
Repack: convert part of a lot from its packaging type into another
compatible packaging type.

Per-invocation state machine (nothing persisted):
    CONFIGURING → VALIDATED → COMMITTED
    CONFIGURING → REJECTED

validate() checks, failing fast on the first violation:
    0) source lot is live                      → LOT_NOT_AVAILABLE
    1) quantity_to_convert > 0                 → INVALID_QUANTITY
    2) target != source packaging              → SAME_PACKAGING_TYPE
    3) target shares the source base unit      → INCOMPATIBLE_UNITS
    4) quantity_to_convert <= lot quantity     → INSUFFICIENT_QUANTITY
    5) whole-number equivalent quantity exists → FRACTIONAL_CONVERSION_REJECTED

commit() produces immutable results plus the LotChangeSet the store applies:
the source lot loses quantity_to_convert and the equivalent quantity is
merged into a live lot with the same (variant, warehouse, target packaging,
production date), or a new lot is created.
"""

from enum import Enum
from typing import Optional, List, Dict, Any, Callable, Iterable
import logging
import math
import uuid

from pydantic import BaseModel

from packaging_conversion_engine import (
    ConversionCalculator,
    EngineError,
    FractionalConversionRejectedError,
    IncompatibleUnitsError,
    InsufficientQuantityError,
    InvalidQuantityError,
    PackagingType,
    PackagingTypeCatalog,
    ResultStatus,
    SamePackagingTypeError,
)
from inventory_lots import (
    InventoryLot,
    LotChange,
    LotChangeSet,
    LotNotAvailableError,
    LotSelector,
    fits_within,
    subtract_quantity,
)

logger = logging.getLogger(__name__)

# ==================== ENUMS / ERRORS ====================

class RepackState(str, Enum):
    CONFIGURING = "CONFIGURING"
    VALIDATED = "VALIDATED"
    COMMITTED = "COMMITTED"
    REJECTED = "REJECTED"


class InvalidOperationStateError(EngineError):
    """commit() called without a matching successful validate()"""
    def __init__(self, state: str, expected: str):
        super().__init__(
            "INVALID_OPERATION_STATE",
            f"Repack operation is in state {state}; {expected} required.",
            context={"state": state, "expected_state": expected}
        )

# ==================== DATA MODELS ====================

class RepackResult(BaseModel):
    """Repack output contract"""
    status: ResultStatus
    state: RepackState
    inventory_id: str
    source_packaging_type_id: Optional[str] = None
    target_packaging_type_id: Optional[str] = None
    quantity_to_convert: Any = None
    equivalent_quantity: Optional[float] = None
    minimal_step: Optional[int] = None

    # Filled on commit only
    updated_source_lot: Optional[InventoryLot] = None
    target_lot: Optional[InventoryLot] = None
    target_lot_created: bool = False
    lot_changes: Optional[LotChangeSet] = None

    errors: List[Dict[str, Any]] = []


class QuantityAdjustment(BaseModel):
    """Outcome of one +/- click on the repack quantity control"""
    quantity: float
    changed: bool
    error: Optional[Dict[str, Any]] = None

# ==================== REPACK OPERATION ====================

class RepackOperation:
    """
    One repack invocation. Create a new instance per attempt; after a
    CONCURRENT_MODIFICATION_CONFLICT reload the lots and start over.
    """

    def __init__(
        self,
        catalog: PackagingTypeCatalog,
        selector: LotSelector,
        calculator: Optional[ConversionCalculator] = None,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4())
    ):
        self.catalog = catalog
        self.selector = selector
        self.calculator = calculator or ConversionCalculator(catalog)
        self.id_factory = id_factory
        self.state = RepackState.CONFIGURING
        self._validated_key = None
        self._equivalent: Optional[float] = None

    def _check(self, source_lot: InventoryLot, target: PackagingType, quantity_to_convert: Any) -> float:
        """Run checks 0-5 in order; returns the equivalent target quantity"""
        if source_lot.is_removed:
            raise LotNotAvailableError(source_lot.inventory_id)

        if isinstance(quantity_to_convert, bool) or not isinstance(quantity_to_convert, (int, float)) \
                or not math.isfinite(quantity_to_convert) or quantity_to_convert <= 0:
            raise InvalidQuantityError(quantity_to_convert, field="quantity_to_convert",
                                       inventory_id=source_lot.inventory_id)

        if target.id == source_lot.packaging_type_id:
            raise SamePackagingTypeError(target.id)

        source = self.catalog.require(source_lot.packaging_type_id)
        if not source.is_compatible_with(target):
            raise IncompatibleUnitsError(source, target)

        if not fits_within(quantity_to_convert, source_lot.quantity):
            raise InsufficientQuantityError(
                source_lot.inventory_id,
                quantity_to_convert,
                source_lot.quantity,
                variant_id=source_lot.variant_key,
                packaging_type_id=source_lot.packaging_type_id,
                warehouse_id=source_lot.warehouse_id
            )

        equivalent = self.calculator.equivalent_quantity(quantity_to_convert, source, target)
        if equivalent is None:
            raise FractionalConversionRejectedError(
                quantity_to_convert, source, target, step=self._step_or_none(source, target)
            )
        return equivalent

    def _step_or_none(self, source: PackagingType, target: PackagingType) -> Optional[int]:
        try:
            return self.calculator.minimal_integer_step(source, target)
        except EngineError:
            return None

    def validate(self, source_lot: InventoryLot, target: PackagingType, quantity_to_convert: Any) -> RepackResult:
        try:
            equivalent = self._check(source_lot, target, quantity_to_convert)
        except EngineError as e:
            self.state = RepackState.REJECTED
            self._validated_key = None
            return RepackResult(
                status=ResultStatus.ERROR,
                state=self.state,
                inventory_id=source_lot.inventory_id,
                source_packaging_type_id=source_lot.packaging_type_id,
                target_packaging_type_id=target.id,
                quantity_to_convert=quantity_to_convert,
                errors=[e.to_dict()]
            )

        self.state = RepackState.VALIDATED
        self._validated_key = (source_lot.inventory_id, source_lot.version, target.id, quantity_to_convert)
        self._equivalent = equivalent
        source = self.catalog.require(source_lot.packaging_type_id)
        return RepackResult(
            status=ResultStatus.SUCCESS,
            state=self.state,
            inventory_id=source_lot.inventory_id,
            source_packaging_type_id=source_lot.packaging_type_id,
            target_packaging_type_id=target.id,
            quantity_to_convert=quantity_to_convert,
            equivalent_quantity=equivalent,
            minimal_step=self._step_or_none(source, target)
        )

    def commit(self, source_lot: InventoryLot, target: PackagingType, quantity_to_convert: float) -> RepackResult:
        key = (source_lot.inventory_id, source_lot.version, target.id, quantity_to_convert)
        if self.state != RepackState.VALIDATED or key != self._validated_key:
            error = InvalidOperationStateError(self.state.value, RepackState.VALIDATED.value)
            return RepackResult(
                status=ResultStatus.ERROR,
                state=self.state,
                inventory_id=source_lot.inventory_id,
                quantity_to_convert=quantity_to_convert,
                errors=[error.to_dict()]
            )

        equivalent = self._equivalent
        remaining = subtract_quantity(source_lot, quantity_to_convert)
        updated_source = source_lot.model_copy(update={"quantity": remaining, "version": source_lot.version + 1})
        changes = [LotChange(
            inventory_id=source_lot.inventory_id,
            new_quantity=remaining,
            expected_version=source_lot.version
        )]
        new_lots: List[InventoryLot] = []

        existing = self.selector.matching_lot(
            source_lot.variant_key, source_lot.warehouse_id, target.id, source_lot.production_date
        )
        if existing is not None:
            target_lot = existing.model_copy(update={
                "quantity": existing.quantity + equivalent,
                "version": existing.version + 1
            })
            changes.append(LotChange(
                inventory_id=existing.inventory_id,
                new_quantity=target_lot.quantity,
                expected_version=existing.version
            ))
            created = False
        else:
            target_lot = InventoryLot(
                inventory_id=self.id_factory(),
                variant_id=source_lot.variant_id,
                product_id=source_lot.product_id,
                warehouse_id=source_lot.warehouse_id,
                packaging_type_id=target.id,
                quantity=equivalent,
                production_date=source_lot.production_date
            )
            new_lots.append(target_lot)
            created = True

        self.state = RepackState.COMMITTED
        logger.info(
            f"Repack committed: lot {source_lot.inventory_id} -{quantity_to_convert} "
            f"{source_lot.packaging_type_id} → lot {target_lot.inventory_id} +{equivalent} {target.id}"
        )
        return RepackResult(
            status=ResultStatus.SUCCESS,
            state=self.state,
            inventory_id=source_lot.inventory_id,
            source_packaging_type_id=source_lot.packaging_type_id,
            target_packaging_type_id=target.id,
            quantity_to_convert=quantity_to_convert,
            equivalent_quantity=equivalent,
            updated_source_lot=updated_source,
            target_lot=target_lot,
            target_lot_created=created,
            lot_changes=LotChangeSet(changes=changes, new_lots=new_lots)
        )

    def execute(self, source_lot: InventoryLot, target: PackagingType, quantity_to_convert: Any) -> RepackResult:
        """validate() then commit() in one call"""
        result = self.validate(source_lot, target, quantity_to_convert)
        if result.status != ResultStatus.SUCCESS:
            return result
        return self.commit(source_lot, target, quantity_to_convert)

# ==================== REPACK FORM HELPERS ====================

def compatible_target_types(
    catalog: PackagingTypeCatalog,
    source_lot: InventoryLot,
    allowed_target_ids: Optional[Iterable[str]] = None
) -> List[PackagingType]:
    """Repack targets: same base unit, not the current type, optionally allow-listed"""
    source = catalog.get(source_lot.packaging_type_id)
    if source is None:
        return []
    targets = catalog.compatible_with(source)
    allowed = set(allowed_target_ids) if allowed_target_ids else None
    if allowed:
        targets = [pt for pt in targets if pt.id in allowed]
    return targets


def increment_quantity(current: float, step: int, available: float, inventory_id: str = "") -> QuantityAdjustment:
    """Add one step; refuse to go above the available lot quantity"""
    proposed = current + step
    if not fits_within(proposed, available):
        error = InsufficientQuantityError(inventory_id, proposed, available)
        error.message = f"Quantity cannot exceed the available quantity ({available})."
        return QuantityAdjustment(quantity=current, changed=False, error=error.to_dict())
    return QuantityAdjustment(quantity=proposed, changed=True)


def decrement_quantity(current: float, step: int) -> QuantityAdjustment:
    """Remove one step; refuse to go below zero"""
    proposed = current - step
    if proposed < 0:
        error = InvalidQuantityError(proposed)
        error.message = "Quantity cannot be less than zero."
        return QuantityAdjustment(quantity=current, changed=False, error=error.to_dict())
    return QuantityAdjustment(quantity=proposed, changed=True)
