# backend/inventory_store.py

"""
MongoDB persistence for the packaging engine (motor).

Collections:
- base_units          {id, name}
- packaging_types     {id, name, compatible_base_unit_id, default_conversion_factor}
- product_variants    {variant_id, product_id, name, base_unit_id}
- inventory           InventoryLot documents (+ version, updated_at)
- transfers           Transfer documents
- settings            {category, settings_key, settings_value}

Lot updates are optimistic: every update matches on (inventory_id, version)
and bumps the version. If any update of a change set loses the race, the
updates already applied are rolled back and ConcurrentModificationError is
raised so the caller can reload and retry.
"""

from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Iterable, Tuple
import logging

from pydantic import BaseModel, ValidationError
from pymongo import ReturnDocument

from packaging_conversion_engine import (
    BaseUnit,
    BaseUnitCatalog,
    ConcurrentModificationError,
    PackagingType,
    PackagingTypeCatalog,
)
from inventory_lots import InventoryLot, LotChangeSet, ProductVariant
from stock_status import INVENTORY_SETTINGS_CATEGORY, ThresholdConfig
from transfer_service import Transfer, TransferStatus

logger = logging.getLogger(__name__)

MAX_DOCUMENTS = 10000


class AppliedLotChanges(BaseModel):
    """Receipt of an applied change set, enough to undo it"""
    # (inventory_id, quantity before, version after)
    updated: List[Tuple[str, float, int]] = []
    inserted_ids: List[str] = []


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class InventoryStore:
    def __init__(self, db):
        self.db = db

    # ---------- master data ----------

    async def load_base_units(self) -> BaseUnitCatalog:
        docs = await self.db.base_units.find({}, {"_id": 0}).to_list(MAX_DOCUMENTS)
        return BaseUnitCatalog(BaseUnit(**doc) for doc in docs)

    async def load_packaging_catalog(self) -> PackagingTypeCatalog:
        base_units = await self.load_base_units()
        docs = await self.db.packaging_types.find({}, {"_id": 0}).to_list(MAX_DOCUMENTS)
        return PackagingTypeCatalog((PackagingType(**doc) for doc in docs), base_units)

    async def load_variants(self, product_id: Optional[str] = None) -> List[ProductVariant]:
        query = {"product_id": product_id} if product_id else {}
        docs = await self.db.product_variants.find(query, {"_id": 0}).to_list(MAX_DOCUMENTS)
        return [ProductVariant(**doc) for doc in docs]

    async def load_thresholds(self) -> ThresholdConfig:
        """Read fresh on every call; settings may change between operations"""
        rows = await self.db.settings.find(
            {"category": INVENTORY_SETTINGS_CATEGORY}, {"_id": 0}
        ).to_list(MAX_DOCUMENTS)
        return ThresholdConfig.from_settings(rows)

    # ---------- lots ----------

    def _to_lot(self, doc: Dict[str, Any]) -> Optional[InventoryLot]:
        try:
            return InventoryLot(**doc)
        except ValidationError as e:
            logger.error(f"Skipping invalid inventory document {doc.get('inventory_id')}: {e}")
            return None

    async def load_lots(
        self,
        warehouse_ids: Optional[Iterable[str]] = None,
        inventory_ids: Optional[Iterable[str]] = None,
        product_id: Optional[str] = None,
        include_removed: bool = False
    ) -> List[InventoryLot]:
        """
        Lots in any of `warehouse_ids` OR with any of `inventory_ids`
        (both None means all lots), optionally one product only.
        """
        clauses = []
        if warehouse_ids is not None:
            clauses.append({"warehouse_id": {"$in": list(warehouse_ids)}})
        if inventory_ids is not None:
            clauses.append({"inventory_id": {"$in": list(inventory_ids)}})

        query: Dict[str, Any] = {}
        if len(clauses) == 1:
            query.update(clauses[0])
        elif clauses:
            query["$or"] = clauses
        if product_id is not None:
            query["product_id"] = product_id
        if not include_removed:
            query["is_removed"] = {"$ne": True}

        docs = await self.db.inventory.find(query, {"_id": 0}).to_list(MAX_DOCUMENTS)
        return [lot for lot in (self._to_lot(doc) for doc in docs) if lot is not None]

    async def get_lot(self, inventory_id: str) -> Optional[InventoryLot]:
        doc = await self.db.inventory.find_one({"inventory_id": inventory_id}, {"_id": 0})
        return self._to_lot(doc) if doc else None

    async def apply_lot_changes(self, change_set: Optional[LotChangeSet]) -> AppliedLotChanges:
        """
        Apply every version-guarded update, then insert new lots.
        All or nothing: a lost race undoes the applied updates and raises.
        """
        applied = AppliedLotChanges()
        if change_set is None or change_set.is_empty():
            return applied

        for change in change_set.changes:
            before = await self.db.inventory.find_one_and_update(
                {
                    "inventory_id": change.inventory_id,
                    "version": change.expected_version,
                    "is_removed": {"$ne": True}
                },
                {
                    "$set": {"quantity": change.new_quantity, "updated_at": _now()},
                    "$inc": {"version": 1}
                },
                projection={"_id": 0},
                return_document=ReturnDocument.BEFORE
            )
            if before is None:
                logger.warning(
                    f"Version conflict on lot {change.inventory_id} "
                    f"(expected version {change.expected_version}); rolling back {len(applied.updated)} update(s)"
                )
                await self.revert_lot_changes(applied)
                raise ConcurrentModificationError(change.inventory_id, change.expected_version)
            applied.updated.append((change.inventory_id, before["quantity"], change.expected_version + 1))

        if change_set.new_lots:
            docs = []
            for lot in change_set.new_lots:
                doc = lot.model_dump(mode="json")
                doc["created_at"] = _now()
                docs.append(doc)
            try:
                await self.db.inventory.insert_many(docs)
            except Exception:
                logger.error(
                    f"Inserting {len(docs)} new lot(s) failed; rolling back {len(applied.updated)} update(s)",
                    exc_info=True
                )
                await self.revert_lot_changes(applied)
                raise
            applied.inserted_ids = [lot.inventory_id for lot in change_set.new_lots]

        return applied

    async def revert_lot_changes(self, applied: AppliedLotChanges) -> None:
        """Compensate an applied change set, newest update first"""
        if applied.inserted_ids:
            await self.db.inventory.delete_many({"inventory_id": {"$in": applied.inserted_ids}})
        for inventory_id, previous_quantity, version in reversed(applied.updated):
            result = await self.db.inventory.update_one(
                {"inventory_id": inventory_id, "version": version},
                {"$set": {"quantity": previous_quantity, "updated_at": _now()}, "$inc": {"version": 1}}
            )
            if result.matched_count == 0:
                logger.error(f"Rollback of lot {inventory_id} skipped: lot changed again after version {version}")

    async def remove_lot(self, inventory_id: str) -> bool:
        """Soft delete: flag the lot and clear its production date"""
        result = await self.db.inventory.update_one(
            {"inventory_id": inventory_id, "is_removed": {"$ne": True}},
            {
                "$set": {"is_removed": True, "production_date": None, "updated_at": _now()},
                "$inc": {"version": 1}
            }
        )
        if result.matched_count:
            logger.info(f"Lot {inventory_id} removed")
        return result.matched_count > 0

    # ---------- transfers ----------

    async def get_transfer(self, transfer_id: str) -> Optional[Transfer]:
        doc = await self.db.transfers.find_one({"transfer_id": transfer_id}, {"_id": 0})
        return Transfer(**doc) if doc else None

    async def insert_transfer(self, transfer: Transfer) -> None:
        await self.db.transfers.insert_one(transfer.model_dump(mode="json"))

    async def update_transfer(self, transfer: Transfer, expected_status: TransferStatus) -> None:
        """Replace the transfer only if its stored status is still `expected_status`"""
        doc = transfer.model_dump(mode="json")
        result = await self.db.transfers.update_one(
            {"transfer_id": transfer.transfer_id, "status": TransferStatus(expected_status).value},
            {"$set": doc}
        )
        if result.matched_count == 0:
            raise ConcurrentModificationError(
                transfer.transfer_id, TransferStatus(expected_status).value, field="transfer_id"
            )
