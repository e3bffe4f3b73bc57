# backend/inventory_lots.py

"""
Inventory lots (stock batches) and the lot selection policy.

A lot is one quantity of one variant, in one packaging type, at one
warehouse, tied to one production date. Several lots may share all four
dimensions; they are distinct batches identified by inventory_id.

Removed lots are soft-deleted (is_removed + production date cleared) and
never take part in availability.

Default allocation policy: LARGEST QUANTITY FIRST, ties kept in input
order (stable sort). Every "pick the best batch" call site goes through
LotSelector.lots_for / default_lot.
"""

from datetime import date, datetime
from typing import Optional, List, Dict, Any, Iterable, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from packaging_conversion_engine import INTEGER_TOLERANCE, EngineError, InsufficientQuantityError

NO_PRODUCTION_DATE = "No Production Date"


class LotNotAvailableError(EngineError):
    """Lot does not exist or was removed"""
    def __init__(self, inventory_id: str, **context):
        super().__init__(
            "LOT_NOT_AVAILABLE",
            f"Inventory lot '{inventory_id}' does not exist or has been removed.",
            field="inventory_id",
            context={"inventory_id": inventory_id, **context}
        )

# ==================== DATA MODELS ====================

class ProductVariant(BaseModel):
    """Sellable variant; a product without variants is one implicit variant keyed by product_id"""
    model_config = ConfigDict(extra="ignore", frozen=True)
    variant_id: Optional[str] = None
    product_id: str
    name: str
    base_unit_id: str

    @property
    def variant_key(self) -> str:
        return self.variant_id if self.variant_id is not None else self.product_id


def implicit_variant(product_id: str, name: str, base_unit_id: str) -> ProductVariant:
    return ProductVariant(variant_id=None, product_id=product_id, name=name, base_unit_id=base_unit_id)


class InventoryLot(BaseModel):
    """One stock batch"""
    model_config = ConfigDict(extra="ignore", frozen=True)
    inventory_id: str
    variant_id: Optional[str] = None
    product_id: str
    warehouse_id: str
    packaging_type_id: str
    quantity: float = Field(ge=0)
    production_date: Optional[date] = None
    is_removed: bool = False
    version: int = 0

    @field_validator("production_date", mode="before")
    @classmethod
    def parse_production_date(cls, value: Any) -> Any:
        # Store documents carry ISO strings, sometimes with a time part
        if value in (None, ""):
            return None
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, str):
            return value.split("T")[0]
        return value

    @property
    def variant_key(self) -> str:
        return self.variant_id if self.variant_id is not None else self.product_id

    @property
    def batch_key(self) -> Tuple[str, str, Optional[date]]:
        """(variant, packaging, production date): the merge key within one warehouse"""
        return (self.variant_key, self.packaging_type_id, self.production_date)


class LotChange(BaseModel):
    """Quantity update for an existing lot, guarded by the version it was read at"""
    inventory_id: str
    new_quantity: float = Field(ge=0)
    expected_version: int


class LotChangeSet(BaseModel):
    """Everything one committed operation pushes back to the inventory store"""
    changes: List[LotChange] = []
    new_lots: List[InventoryLot] = []

    def is_empty(self) -> bool:
        return not self.changes and not self.new_lots

# ==================== QUANTITY HELPERS ====================

def fits_within(requested: float, available: float) -> bool:
    """requested <= available, tolerant to float noise"""
    return requested <= available + INTEGER_TOLERANCE


def subtract_quantity(lot: InventoryLot, amount: float) -> float:
    """
    Lot quantity after removing `amount`.

    Never returns a negative number: noise below the tolerance is clamped
    to zero, anything larger is an InsufficientQuantityError.
    """
    remaining = lot.quantity - amount
    if remaining < 0:
        if remaining < -INTEGER_TOLERANCE:
            raise InsufficientQuantityError(lot.inventory_id, amount, lot.quantity)
        remaining = 0.0
    return remaining

# ==================== SELECTION ====================

class PackagingOption(BaseModel):
    packaging_type_id: str
    total_quantity: float
    lot_count: int


class PackagingGroup(BaseModel):
    packaging_type_id: str
    lots: List[InventoryLot]
    total_quantity: float


class ProductionDateGroup(BaseModel):
    production_date: Optional[date] = None
    label: str
    packaging_groups: List[PackagingGroup]


class LotSelector:
    """Filters and orders the live lot set"""

    def __init__(self, lots: Iterable[InventoryLot]):
        self._all: List[InventoryLot] = list(lots)
        self._live: List[InventoryLot] = [lot for lot in self._all if not lot.is_removed]
        self._by_id: Dict[str, InventoryLot] = {lot.inventory_id: lot for lot in self._all}

    @property
    def live_lots(self) -> List[InventoryLot]:
        return list(self._live)

    def get(self, inventory_id: str) -> Optional[InventoryLot]:
        """Lookup by id, including removed lots (callers check is_removed)"""
        return self._by_id.get(inventory_id)

    def get_live(self, inventory_id: str) -> Optional[InventoryLot]:
        lot = self._by_id.get(inventory_id)
        if lot is None or lot.is_removed:
            return None
        return lot

    @staticmethod
    def largest_first(lots: Iterable[InventoryLot]) -> List[InventoryLot]:
        # sorted() is stable: equal quantities keep input order
        return sorted(lots, key=lambda lot: lot.quantity, reverse=True)

    def lots_for(
        self,
        variant_id: str,
        warehouse_id: str,
        packaging_type_id: Optional[str] = None
    ) -> List[InventoryLot]:
        """Live lots of a variant at a warehouse, optionally one packaging type, largest first"""
        matching = [
            lot for lot in self._live
            if lot.variant_key == variant_id
            and lot.warehouse_id == warehouse_id
            and (packaging_type_id is None or lot.packaging_type_id == packaging_type_id)
        ]
        return self.largest_first(matching)

    def default_lot(
        self,
        variant_id: str,
        warehouse_id: str,
        packaging_type_id: Optional[str] = None
    ) -> Optional[InventoryLot]:
        """Implicit batch choice when the caller does not pick one"""
        lots = self.lots_for(variant_id, warehouse_id, packaging_type_id)
        return lots[0] if lots else None

    def lots_in_warehouse(self, warehouse_id: str, in_stock_only: bool = False) -> List[InventoryLot]:
        return [
            lot for lot in self._live
            if lot.warehouse_id == warehouse_id and (not in_stock_only or lot.quantity > 0)
        ]

    def available_quantity(
        self,
        variant_id: str,
        warehouse_id: str,
        packaging_type_id: str,
        inventory_id: Optional[str] = None
    ) -> float:
        """Quantity of the chosen lot, or the sum of all matching lots when none is chosen"""
        if inventory_id is not None:
            lot = self.get_live(inventory_id)
            return lot.quantity if lot else 0.0
        return sum(lot.quantity for lot in self.lots_for(variant_id, warehouse_id, packaging_type_id))

    def packaging_options(self, variant_id: str, warehouse_id: str) -> List[PackagingOption]:
        """Packaging types stocked for a variant at a warehouse, largest total first"""
        totals: Dict[str, float] = {}
        counts: Dict[str, int] = {}
        for lot in self._live:
            if lot.variant_key != variant_id or lot.warehouse_id != warehouse_id:
                continue
            totals[lot.packaging_type_id] = totals.get(lot.packaging_type_id, 0.0) + lot.quantity
            counts[lot.packaging_type_id] = counts.get(lot.packaging_type_id, 0) + 1
        options = [
            PackagingOption(packaging_type_id=pt_id, total_quantity=total, lot_count=counts[pt_id])
            for pt_id, total in totals.items()
        ]
        return sorted(options, key=lambda o: o.total_quantity, reverse=True)

    def matching_lot(
        self,
        variant_id: str,
        warehouse_id: str,
        packaging_type_id: str,
        production_date: Optional[date]
    ) -> Optional[InventoryLot]:
        """First live lot a merge-or-create commit should add into"""
        for lot in self._live:
            if (
                lot.variant_key == variant_id
                and lot.warehouse_id == warehouse_id
                and lot.packaging_type_id == packaging_type_id
                and lot.production_date == production_date
            ):
                return lot
        return None

    @staticmethod
    def group_by_production_date_then_packaging(lots: Iterable[InventoryLot]) -> List[ProductionDateGroup]:
        """
        Presentation grouping: production date ascending (undated bucket last),
        then packaging type in order of first appearance.
        """
        by_date: Dict[Optional[date], Dict[str, List[InventoryLot]]] = {}
        for lot in lots:
            if lot.is_removed:
                continue
            packaging_map = by_date.setdefault(lot.production_date, {})
            packaging_map.setdefault(lot.packaging_type_id, []).append(lot)

        dated = sorted(d for d in by_date if d is not None)
        ordered_dates: List[Optional[date]] = dated + ([None] if None in by_date else [])

        groups = []
        for production_date in ordered_dates:
            packaging_groups = [
                PackagingGroup(
                    packaging_type_id=pt_id,
                    lots=pt_lots,
                    total_quantity=sum(lot.quantity for lot in pt_lots)
                )
                for pt_id, pt_lots in by_date[production_date].items()
            ]
            groups.append(ProductionDateGroup(
                production_date=production_date,
                label=production_date.isoformat() if production_date else NO_PRODUCTION_DATE,
                packaging_groups=packaging_groups
            ))
        return groups
