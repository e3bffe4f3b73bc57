# backend/inventory_service.py

"""
Async orchestration: load a snapshot from the store, run the pure engine
components, persist the resulting LotChangeSet.

Every stock-mutating operation runs read → validate → commit → apply as one
attempt. A CONCURRENT_MODIFICATION_CONFLICT from the store restarts the
attempt on fresh data, up to `max_retries` attempts in total.
"""

from typing import Optional, List, Dict, Any, Callable
import logging
import uuid

from packaging_conversion_engine import (
    ConcurrentModificationError,
    ConversionCalculator,
    EngineError,
    EquivalentQuantityResult,
    PackagingNotFoundError,
    PackagingType,
    ResultStatus,
    StepResult,
)
from inventory_lots import LotNotAvailableError, LotSelector
from inventory_store import InventoryStore
from repack_service import RepackOperation, RepackResult, RepackState, compatible_target_types
from stock_status import ProductInventorySummary, summarize_product_inventory
from transfer_service import (
    AllocationResult,
    Transfer,
    TransferCommitResult,
    TransferNotFoundError,
    TransferPlanResult,
    TransferPlanner,
    TransferRequestItem,
    TransferStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3


class InventoryService:
    def __init__(
        self,
        store: InventoryStore,
        max_retries: int = DEFAULT_MAX_RETRIES,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4())
    ):
        self.store = store
        self.max_retries = max(1, max_retries)
        self.id_factory = id_factory

    # ==================== CONVERSION ====================

    async def step(self, source_packaging_type_id: str, target_packaging_type_id: str) -> StepResult:
        catalog = await self.store.load_packaging_catalog()
        return ConversionCalculator(catalog).step_for(source_packaging_type_id, target_packaging_type_id)

    async def convert(
        self,
        quantity: float,
        source_packaging_type_id: str,
        target_packaging_type_id: str
    ) -> EquivalentQuantityResult:
        catalog = await self.store.load_packaging_catalog()
        return ConversionCalculator(catalog).convert(quantity, source_packaging_type_id, target_packaging_type_id)

    # ==================== REPACK ====================

    async def repack_targets(
        self,
        inventory_id: str,
        allowed_target_ids: Optional[List[str]] = None
    ) -> List[PackagingType]:
        lot = await self.store.get_lot(inventory_id)
        if lot is None or lot.is_removed:
            raise LotNotAvailableError(inventory_id)
        catalog = await self.store.load_packaging_catalog()
        return compatible_target_types(catalog, lot, allowed_target_ids)

    async def repack(self, inventory_id: str, target_packaging_type_id: str, quantity_to_convert: Any) -> RepackResult:
        conflict: Optional[EngineError] = None
        for attempt in range(1, self.max_retries + 1):
            catalog = await self.store.load_packaging_catalog()
            source_lot = await self.store.get_lot(inventory_id)
            if source_lot is None:
                return self._repack_rejected(inventory_id, target_packaging_type_id, quantity_to_convert,
                                             LotNotAvailableError(inventory_id))
            target = catalog.get(target_packaging_type_id)
            if target is None:
                return self._repack_rejected(inventory_id, target_packaging_type_id, quantity_to_convert,
                                             PackagingNotFoundError(target_packaging_type_id))

            lots = await self.store.load_lots(warehouse_ids=[source_lot.warehouse_id])
            operation = RepackOperation(catalog, LotSelector(lots), id_factory=self.id_factory)
            result = operation.execute(source_lot, target, quantity_to_convert)
            if result.status != ResultStatus.SUCCESS:
                return result

            try:
                await self.store.apply_lot_changes(result.lot_changes)
                return result
            except ConcurrentModificationError as e:
                conflict = e
                logger.warning(f"Repack of lot {inventory_id} hit a conflict (attempt {attempt}/{self.max_retries})")

        return self._repack_rejected(inventory_id, target_packaging_type_id, quantity_to_convert, conflict)

    @staticmethod
    def _repack_rejected(inventory_id: str, target_id: str, quantity: Any, error: EngineError) -> RepackResult:
        return RepackResult(
            status=ResultStatus.ERROR,
            state=RepackState.REJECTED,
            inventory_id=inventory_id,
            target_packaging_type_id=target_id,
            quantity_to_convert=quantity,
            errors=[error.to_dict()]
        )

    async def remove_lot(self, inventory_id: str) -> bool:
        return await self.store.remove_lot(inventory_id)

    # ==================== TRANSFERS ====================

    async def _planner_for(self, transfer: Transfer) -> TransferPlanner:
        lots = await self.store.load_lots(
            warehouse_ids=[transfer.source_warehouse_id, transfer.destination_warehouse_id],
            inventory_ids=[line.inventory_id for line in transfer.lines],
            include_removed=True
        )
        return TransferPlanner(LotSelector(lots), id_factory=self.id_factory)

    async def validate_transfer(self, transfer: Transfer) -> TransferPlanResult:
        """Dry run: every problem, or the confirmation summary"""
        planner = await self._planner_for(transfer)
        return planner.validate(transfer)

    async def create_transfer(self, transfer: Transfer) -> TransferCommitResult:
        conflict: Optional[EngineError] = None
        for attempt in range(1, self.max_retries + 1):
            planner = await self._planner_for(transfer)
            result = planner.commit_new(transfer)
            if result.status != ResultStatus.SUCCESS:
                return result
            try:
                applied = await self.store.apply_lot_changes(result.lot_changes)
            except ConcurrentModificationError as e:
                conflict = e
                logger.warning(f"Transfer {transfer.transfer_id} hit a conflict (attempt {attempt}/{self.max_retries})")
                continue
            try:
                await self.store.insert_transfer(result.transfer)
            except Exception:
                logger.error(f"Failed to store transfer {transfer.transfer_id}; reverting stock movement", exc_info=True)
                await self.store.revert_lot_changes(applied)
                raise
            logger.info(f"Transfer {transfer.transfer_id} created with status {result.transfer.status.value}")
            return result

        return TransferCommitResult(status=ResultStatus.ERROR, transfer=transfer, errors=[conflict.to_dict()])

    async def update_transfer_status(self, transfer_id: str, new_status: TransferStatus) -> TransferCommitResult:
        conflict: Optional[EngineError] = None
        for attempt in range(1, self.max_retries + 1):
            transfer = await self.store.get_transfer(transfer_id)
            if transfer is None:
                return TransferCommitResult(
                    status=ResultStatus.ERROR,
                    errors=[TransferNotFoundError(transfer_id).to_dict()]
                )

            planner = await self._planner_for(transfer)
            result = planner.transition(transfer, new_status)
            if result.status != ResultStatus.SUCCESS:
                return result

            try:
                applied = await self.store.apply_lot_changes(result.lot_changes)
            except ConcurrentModificationError as e:
                conflict = e
                logger.warning(f"Transfer {transfer_id} status change hit a conflict (attempt {attempt}/{self.max_retries})")
                continue
            try:
                await self.store.update_transfer(result.transfer, expected_status=transfer.status)
            except ConcurrentModificationError as e:
                # Someone else moved the transfer first; undo our stock movement
                await self.store.revert_lot_changes(applied)
                conflict = e
                logger.warning(f"Transfer {transfer_id} changed status concurrently (attempt {attempt}/{self.max_retries})")
                continue
            except Exception:
                logger.error(f"Failed to store transfer {transfer_id}; reverting stock movement", exc_info=True)
                await self.store.revert_lot_changes(applied)
                raise
            return result

        return TransferCommitResult(status=ResultStatus.ERROR, errors=[conflict.to_dict()])

    async def allocate_request(
        self,
        items: List[TransferRequestItem],
        source_warehouse_id: str,
        overrides: Optional[Dict[str, str]] = None
    ) -> AllocationResult:
        inventory_ids = list(overrides.values()) if overrides else []
        lots = await self.store.load_lots(warehouse_ids=[source_warehouse_id], inventory_ids=inventory_ids)
        planner = TransferPlanner(LotSelector(lots), id_factory=self.id_factory)
        return planner.allocate_request(items, source_warehouse_id, overrides)

    # ==================== STATUS ====================

    async def product_summary(self, product_id: str, variant_id: Optional[str] = None) -> ProductInventorySummary:
        catalog = await self.store.load_packaging_catalog()
        thresholds = await self.store.load_thresholds()
        variants = await self.store.load_variants(product_id)
        lots = await self.store.load_lots(product_id=product_id)
        return summarize_product_inventory(
            product_id, lots, catalog, thresholds, variants=variants, variant_id=variant_id
        )
