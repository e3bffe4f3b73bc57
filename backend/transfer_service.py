# backend/transfer_service.py

"""
Inter-warehouse transfers: validation, status transitions and stock movement.

Validation ACCUMULATES errors (the form shows every problem at once):
- SAME_WAREHOUSE / EMPTY_TRANSFER for structurally invalid transfers
- INVALID_QUANTITY per line with a non-positive quantity
- duplicate lines for one inventory_id are summed BEFORE the availability check
- LOT_NOT_AVAILABLE / LOT_NOT_IN_SOURCE_WAREHOUSE / LINE_EXCEEDS_AVAILABLE per lot

Status machine:
    Pending → InTransit → Completed
    Pending → Completed
    Pending | InTransit → Cancelled
Completed and Cancelled are terminal.

Stock moves ONCE, on the first transition out of Pending into InTransit or
Completed. A Pending transfer reserves nothing, so Cancelled reverses nothing.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, Callable, Iterable, Tuple
import logging
import math
import uuid

from pydantic import BaseModel, ConfigDict, Field

from packaging_conversion_engine import EngineError, InvalidQuantityError, ResultStatus
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

# ==================== ENUMS ====================

class TransferStatus(str, Enum):
    PENDING = "Pending"
    IN_TRANSIT = "InTransit"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


ALLOWED_TRANSITIONS: Dict[TransferStatus, set] = {
    TransferStatus.PENDING: {TransferStatus.IN_TRANSIT, TransferStatus.COMPLETED, TransferStatus.CANCELLED},
    TransferStatus.IN_TRANSIT: {TransferStatus.COMPLETED, TransferStatus.CANCELLED},
    TransferStatus.COMPLETED: set(),
    TransferStatus.CANCELLED: set(),
}

# Entering one of these moves stock (once)
STOCK_MOVING_STATUSES = {TransferStatus.IN_TRANSIT, TransferStatus.COMPLETED}

# ==================== ERROR CLASSES ====================

class SameWarehouseError(EngineError):
    def __init__(self, warehouse_id: str):
        super().__init__(
            "SAME_WAREHOUSE",
            f"Source and destination warehouse must differ (both are '{warehouse_id}').",
            field="destination_warehouse_id",
            context={"warehouse_id": warehouse_id}
        )


class EmptyTransferError(EngineError):
    def __init__(self):
        super().__init__(
            "EMPTY_TRANSFER",
            "Transfer must contain at least one line.",
            field="lines"
        )


class LineExceedsAvailableError(EngineError):
    """Requested (summed) quantity for a lot exceeds what the lot holds"""
    def __init__(
        self,
        inventory_id: str,
        requested: float,
        available: float,
        line_indexes: List[int],
        variant_id: Optional[str] = None,
        packaging_type_id: Optional[str] = None,
        **context
    ):
        super().__init__(
            "LINE_EXCEEDS_AVAILABLE",
            f"Requested quantity ({requested}) exceeds available ({available}) for lot '{inventory_id}'.",
            field="quantity",
            context={
                "inventory_id": inventory_id,
                "requested": requested,
                "available": available,
                "line_indexes": line_indexes,
                "variant_id": variant_id,
                "packaging_type_id": packaging_type_id,
                **context
            }
        )


class LotNotInSourceWarehouseError(EngineError):
    def __init__(self, inventory_id: str, lot_warehouse_id: str, source_warehouse_id: str, line_indexes: List[int]):
        super().__init__(
            "LOT_NOT_IN_SOURCE_WAREHOUSE",
            f"Lot '{inventory_id}' is stored in warehouse '{lot_warehouse_id}', "
            f"not in source warehouse '{source_warehouse_id}'.",
            field="inventory_id",
            context={
                "inventory_id": inventory_id,
                "lot_warehouse_id": lot_warehouse_id,
                "source_warehouse_id": source_warehouse_id,
                "line_indexes": line_indexes
            }
        )


class InvalidStatusTransitionError(EngineError):
    def __init__(self, current: str, requested: str):
        super().__init__(
            "INVALID_STATUS_TRANSITION",
            f"Transfer cannot move from {current} to {requested}.",
            field="status",
            context={"current_status": current, "requested_status": requested}
        )


class LotMismatchError(EngineError):
    """Chosen batch is not of the requested variant and packaging"""
    def __init__(self, inventory_id: str, lot: InventoryLot, item: "TransferRequestItem"):
        super().__init__(
            "LOT_DOES_NOT_MATCH_REQUEST",
            f"Lot '{inventory_id}' holds {lot.variant_key} in {lot.packaging_type_id}, but request item "
            f"'{item.request_item_id}' asks for {item.variant_id} in {item.packaging_type_id}.",
            field="inventory_id",
            context={
                "inventory_id": inventory_id,
                "request_item_id": item.request_item_id,
                "lot_variant_id": lot.variant_key,
                "lot_packaging_type_id": lot.packaging_type_id,
                "requested_variant_id": item.variant_id,
                "requested_packaging_type_id": item.packaging_type_id
            }
        )


class TransferNotFoundError(EngineError):
    def __init__(self, transfer_id: str):
        super().__init__(
            "TRANSFER_NOT_FOUND",
            f"Transfer '{transfer_id}' not found.",
            field="transfer_id",
            context={"transfer_id": transfer_id}
        )

# ==================== DATA MODELS ====================

class TransferLine(BaseModel):
    # quantity is checked by the planner so bad lines are reported, not rejected at parse time
    inventory_id: str
    quantity: float


class Transfer(BaseModel):
    model_config = ConfigDict(extra="ignore")
    transfer_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source_warehouse_id: str
    destination_warehouse_id: str
    status: TransferStatus = TransferStatus.PENDING
    lines: List[TransferLine] = []
    notes: Optional[str] = None
    stock_moved: bool = False
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    updated_at: Optional[str] = None


class AggregatedLine(BaseModel):
    inventory_id: str
    quantity: float
    line_indexes: List[int]


class PackagingBreakdownItem(BaseModel):
    variant_id: str
    packaging_type_id: str
    quantity: float


class TransferPlanResult(BaseModel):
    """Validation output: all problems, or the confirmation summary"""
    status: ResultStatus
    transfer_id: str
    aggregated_lines: List[AggregatedLine] = []
    packaging_breakdown: List[PackagingBreakdownItem] = []
    total_quantity: float = 0.0
    line_count: int = 0
    errors: List[Dict[str, Any]] = []


class TransferCommitResult(BaseModel):
    status: ResultStatus
    transfer: Optional[Transfer] = None
    stock_moved: bool = False
    lot_changes: Optional[LotChangeSet] = None
    updated_source_lots: List[InventoryLot] = []
    destination_lots: List[InventoryLot] = []
    errors: List[Dict[str, Any]] = []


class TransferRequestItem(BaseModel):
    request_item_id: str
    variant_id: str
    packaging_type_id: str
    requested_quantity: float


class AllocationLine(BaseModel):
    request_item_id: str
    inventory_id: Optional[str] = None
    requested_quantity: float
    available_quantity: float


class AllocationResult(BaseModel):
    status: ResultStatus
    source_warehouse_id: str
    allocations: List[AllocationLine] = []
    lines: List[TransferLine] = []
    errors: List[Dict[str, Any]] = []


def _is_positive_number(value: Any) -> bool:
    return (
        not isinstance(value, bool)
        and isinstance(value, (int, float))
        and math.isfinite(value)
        and value > 0
    )

# ==================== TRANSFER PLANNER ====================

class TransferPlanner:
    """Validates and commits transfers against a snapshot of live lots"""

    def __init__(self, selector: LotSelector, id_factory: Callable[[], str] = lambda: str(uuid.uuid4())):
        self.selector = selector
        self.id_factory = id_factory

    def aggregate_lines(self, lines: Iterable[TransferLine]) -> Tuple[List[AggregatedLine], List[EngineError]]:
        """Sum lines per inventory_id in first-seen order; bad quantities become errors"""
        totals: Dict[str, AggregatedLine] = {}
        errors: List[EngineError] = []
        for index, line in enumerate(lines):
            if not _is_positive_number(line.quantity):
                errors.append(InvalidQuantityError(line.quantity, inventory_id=line.inventory_id, line_index=index))
                continue
            if line.inventory_id in totals:
                entry = totals[line.inventory_id]
                entry.quantity += line.quantity
                entry.line_indexes.append(index)
            else:
                totals[line.inventory_id] = AggregatedLine(
                    inventory_id=line.inventory_id,
                    quantity=line.quantity,
                    line_indexes=[index]
                )
        return list(totals.values()), errors

    def validate(self, transfer: Transfer) -> TransferPlanResult:
        errors: List[EngineError] = []

        if transfer.source_warehouse_id == transfer.destination_warehouse_id:
            errors.append(SameWarehouseError(transfer.source_warehouse_id))

        if not transfer.lines:
            errors.append(EmptyTransferError())

        aggregated, line_errors = self.aggregate_lines(transfer.lines)
        errors.extend(line_errors)

        breakdown: Dict[Tuple[str, str], float] = {}
        for entry in aggregated:
            lot = self.selector.get_live(entry.inventory_id)
            if lot is None:
                errors.append(LotNotAvailableError(entry.inventory_id, line_indexes=entry.line_indexes))
                continue
            if lot.warehouse_id != transfer.source_warehouse_id:
                errors.append(LotNotInSourceWarehouseError(
                    lot.inventory_id, lot.warehouse_id, transfer.source_warehouse_id, entry.line_indexes
                ))
                continue
            if not fits_within(entry.quantity, lot.quantity):
                errors.append(LineExceedsAvailableError(
                    lot.inventory_id,
                    entry.quantity,
                    lot.quantity,
                    entry.line_indexes,
                    variant_id=lot.variant_key,
                    packaging_type_id=lot.packaging_type_id,
                    warehouse_id=lot.warehouse_id
                ))
                continue
            key = (lot.variant_key, lot.packaging_type_id)
            breakdown[key] = breakdown.get(key, 0.0) + entry.quantity

        if errors:
            return TransferPlanResult(
                status=ResultStatus.ERROR,
                transfer_id=transfer.transfer_id,
                aggregated_lines=aggregated,
                line_count=len(transfer.lines),
                errors=[e.to_dict() for e in errors]
            )

        return TransferPlanResult(
            status=ResultStatus.SUCCESS,
            transfer_id=transfer.transfer_id,
            aggregated_lines=aggregated,
            packaging_breakdown=[
                PackagingBreakdownItem(variant_id=variant_id, packaging_type_id=pt_id, quantity=qty)
                for (variant_id, pt_id), qty in breakdown.items()
            ],
            total_quantity=sum(entry.quantity for entry in aggregated),
            line_count=len(transfer.lines)
        )

    def build_lot_changes(self, transfer: Transfer, aggregated: List[AggregatedLine]) -> Tuple[LotChangeSet, List[InventoryLot], List[InventoryLot]]:
        """
        Decrement source lots and merge-or-create destination lots matching
        (variant, packaging, production date). Call only with a validated plan.
        """
        changes: List[LotChange] = []
        updated_sources: List[InventoryLot] = []
        destination: Dict[tuple, InventoryLot] = {}
        original_versions: Dict[str, int] = {}

        for entry in aggregated:
            lot = self.selector.get_live(entry.inventory_id)
            if lot is None:
                raise LotNotAvailableError(entry.inventory_id)
            remaining = subtract_quantity(lot, entry.quantity)
            changes.append(LotChange(
                inventory_id=lot.inventory_id,
                new_quantity=remaining,
                expected_version=lot.version
            ))
            updated_sources.append(lot.model_copy(update={"quantity": remaining, "version": lot.version + 1}))

            key = lot.batch_key
            if key in destination:
                current = destination[key]
                destination[key] = current.model_copy(update={"quantity": current.quantity + entry.quantity})
                continue

            existing = self.selector.matching_lot(
                lot.variant_key, transfer.destination_warehouse_id, lot.packaging_type_id, lot.production_date
            )
            if existing is not None:
                original_versions[existing.inventory_id] = existing.version
                destination[key] = existing.model_copy(update={
                    "quantity": existing.quantity + entry.quantity,
                    "version": existing.version + 1
                })
            else:
                destination[key] = InventoryLot(
                    inventory_id=self.id_factory(),
                    variant_id=lot.variant_id,
                    product_id=lot.product_id,
                    warehouse_id=transfer.destination_warehouse_id,
                    packaging_type_id=lot.packaging_type_id,
                    quantity=entry.quantity,
                    production_date=lot.production_date
                )

        new_lots: List[InventoryLot] = []
        for dest_lot in destination.values():
            if dest_lot.inventory_id in original_versions:
                changes.append(LotChange(
                    inventory_id=dest_lot.inventory_id,
                    new_quantity=dest_lot.quantity,
                    expected_version=original_versions[dest_lot.inventory_id]
                ))
            else:
                new_lots.append(dest_lot)

        return LotChangeSet(changes=changes, new_lots=new_lots), updated_sources, list(destination.values())

    def transition(self, transfer: Transfer, new_status: TransferStatus) -> TransferCommitResult:
        """
        Move a transfer to `new_status`. Leaving Pending for InTransit or
        Completed re-validates against the current lots and moves the stock.
        """
        new_status = TransferStatus(new_status)
        if new_status not in ALLOWED_TRANSITIONS[transfer.status]:
            error = InvalidStatusTransitionError(transfer.status.value, new_status.value)
            return TransferCommitResult(status=ResultStatus.ERROR, transfer=transfer, errors=[error.to_dict()])

        return self._move_to(transfer, new_status)

    def commit_new(self, transfer: Transfer) -> TransferCommitResult:
        """Validate a new transfer; one created directly as InTransit/Completed moves stock now"""
        plan = self.validate(transfer)
        if plan.status != ResultStatus.SUCCESS:
            return TransferCommitResult(status=ResultStatus.ERROR, transfer=transfer, errors=plan.errors)
        if transfer.status not in STOCK_MOVING_STATUSES:
            return TransferCommitResult(status=ResultStatus.SUCCESS, transfer=transfer)
        return self._move_to(transfer.model_copy(update={"stock_moved": False}), transfer.status, plan)

    def _move_to(
        self,
        transfer: Transfer,
        new_status: TransferStatus,
        plan: Optional[TransferPlanResult] = None
    ) -> TransferCommitResult:
        now = datetime.now(timezone.utc).isoformat()
        moves_stock = new_status in STOCK_MOVING_STATUSES and not transfer.stock_moved

        if not moves_stock:
            updated = transfer.model_copy(update={"status": new_status, "updated_at": now})
            logger.info(f"Transfer {transfer.transfer_id}: {transfer.status.value} → {new_status.value} (no stock movement)")
            return TransferCommitResult(status=ResultStatus.SUCCESS, transfer=updated)

        if plan is None:
            plan = self.validate(transfer)
        if plan.status != ResultStatus.SUCCESS:
            return TransferCommitResult(status=ResultStatus.ERROR, transfer=transfer, errors=plan.errors)

        lot_changes, updated_sources, destination_lots = self.build_lot_changes(transfer, plan.aggregated_lines)
        updated = transfer.model_copy(update={"status": new_status, "stock_moved": True, "updated_at": now})
        logger.info(
            f"Transfer {transfer.transfer_id}: {transfer.status.value} → {new_status.value}, moving "
            f"{plan.total_quantity} units from {transfer.source_warehouse_id} to {transfer.destination_warehouse_id}"
        )
        return TransferCommitResult(
            status=ResultStatus.SUCCESS,
            transfer=updated,
            stock_moved=True,
            lot_changes=lot_changes,
            updated_source_lots=updated_sources,
            destination_lots=destination_lots
        )

    # ---------- transfer requests ----------

    def allocate_request(
        self,
        items: Iterable[TransferRequestItem],
        source_warehouse_id: str,
        overrides: Optional[Dict[str, str]] = None
    ) -> AllocationResult:
        """
        Pick a batch for every requested item: the override inventory_id when
        given, else the largest matching batch. Every short item is reported.
        """
        overrides = overrides or {}
        allocations: List[AllocationLine] = []
        errors: List[EngineError] = []
        per_lot: Dict[str, List[AllocationLine]] = {}

        for item in items:
            if not _is_positive_number(item.requested_quantity):
                errors.append(InvalidQuantityError(item.requested_quantity, request_item_id=item.request_item_id))
                continue

            chosen_id = overrides.get(item.request_item_id)
            if chosen_id is not None:
                lot = self.selector.get_live(chosen_id)
                if lot is None:
                    errors.append(LotNotAvailableError(chosen_id, request_item_id=item.request_item_id))
                    continue
                if lot.warehouse_id != source_warehouse_id:
                    errors.append(LotNotInSourceWarehouseError(chosen_id, lot.warehouse_id, source_warehouse_id, []))
                    continue
                if lot.variant_key != item.variant_id or lot.packaging_type_id != item.packaging_type_id:
                    errors.append(LotMismatchError(chosen_id, lot, item))
                    continue
            else:
                lot = self.selector.default_lot(item.variant_id, source_warehouse_id, item.packaging_type_id)

            allocation = AllocationLine(
                request_item_id=item.request_item_id,
                inventory_id=lot.inventory_id if lot else None,
                requested_quantity=item.requested_quantity,
                available_quantity=lot.quantity if lot else 0.0
            )
            allocations.append(allocation)
            if lot is None or not fits_within(item.requested_quantity, lot.quantity):
                errors.append(LineExceedsAvailableError(
                    allocation.inventory_id or "",
                    item.requested_quantity,
                    allocation.available_quantity,
                    [],
                    variant_id=item.variant_id,
                    packaging_type_id=item.packaging_type_id,
                    request_item_id=item.request_item_id
                ))
                continue
            per_lot.setdefault(lot.inventory_id, []).append(allocation)

        # Several items drawing on one batch must fit together
        for inventory_id, lot_allocations in per_lot.items():
            if len(lot_allocations) < 2:
                continue
            total = sum(a.requested_quantity for a in lot_allocations)
            available = lot_allocations[0].available_quantity
            if not fits_within(total, available):
                errors.append(LineExceedsAvailableError(
                    inventory_id,
                    total,
                    available,
                    [],
                    request_item_ids=[a.request_item_id for a in lot_allocations]
                ))

        if errors:
            return AllocationResult(
                status=ResultStatus.ERROR,
                source_warehouse_id=source_warehouse_id,
                allocations=allocations,
                errors=[e.to_dict() for e in errors]
            )

        return AllocationResult(
            status=ResultStatus.SUCCESS,
            source_warehouse_id=source_warehouse_id,
            allocations=allocations,
            lines=[TransferLine(inventory_id=a.inventory_id, quantity=a.requested_quantity) for a in allocations]
        )
