# backend/stock_status.py

"""
Stock status derivation (In Stock / Low Stock / Out of Stock).

Quantities are converted to BASE UNITS before comparing against the
thresholds: a bag and a box are never compared in raw packaging units.

Thresholds are passed in by the caller as a ThresholdConfig on every call
and nothing is cached, since settings can change at any time.
"""

from datetime import date
from enum import Enum
from typing import Optional, List, Dict, Any, Iterable
import logging

from pydantic import BaseModel, ConfigDict

from packaging_conversion_engine import ConversionCalculator, EngineError, PackagingType, PackagingTypeCatalog
from inventory_lots import InventoryLot, LotSelector, ProductVariant

logger = logging.getLogger(__name__)

INVENTORY_SETTINGS_CATEGORY = "inventory"
LOW_STOCK_KEY = "low_stock_threshold"
OUT_OF_STOCK_KEY = "out_of_stock_threshold"


class StockStatus(str, Enum):
    IN_STOCK = "In Stock"
    LOW_STOCK = "Low Stock"
    OUT_OF_STOCK = "Out of Stock"

# ==================== THRESHOLDS ====================

class ThresholdConfig(BaseModel):
    """Thresholds in base units; no low threshold means no Low Stock tier"""
    model_config = ConfigDict(frozen=True)
    out_of_stock_threshold: float = 0.0
    low_stock_threshold: Optional[float] = None

    @classmethod
    def from_settings(cls, settings: Iterable[Dict[str, Any]]) -> "ThresholdConfig":
        """
        Build from `{settings_key, settings_value}` rows of the inventory
        settings category. Unparseable values fall back to the defaults.
        """
        values: Dict[str, Any] = {}
        for row in settings:
            key = row.get("settings_key")
            if key in (LOW_STOCK_KEY, OUT_OF_STOCK_KEY):
                values[key] = row.get("settings_value")

        def parse(key: str) -> Optional[float]:
            raw = values.get(key)
            if raw is None or raw == "":
                return None
            try:
                return float(raw)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring non-numeric inventory setting {key}={raw!r}")
                return None

        out_threshold = parse(OUT_OF_STOCK_KEY)
        return cls(
            out_of_stock_threshold=out_threshold if out_threshold is not None else 0.0,
            low_stock_threshold=parse(LOW_STOCK_KEY)
        )

# ==================== STATUS DERIVER ====================

class StatusDeriver:
    """Tri-state status; severity never decreases as quantity decreases"""

    def __init__(self, calculator: Optional[ConversionCalculator] = None):
        self.calculator = calculator or ConversionCalculator()

    @staticmethod
    def status_for_base_quantity(
        base_quantity: float,
        low_threshold: Optional[float] = None,
        out_threshold: float = 0.0
    ) -> StockStatus:
        if base_quantity <= out_threshold:
            return StockStatus.OUT_OF_STOCK
        if low_threshold is not None and base_quantity <= low_threshold:
            return StockStatus.LOW_STOCK
        return StockStatus.IN_STOCK

    def derive_status(
        self,
        quantity: float,
        packaging: PackagingType,
        low_threshold: Optional[float] = None,
        out_threshold: float = 0.0
    ) -> StockStatus:
        """Convert to base units, then compare against the thresholds"""
        base_quantity = self.calculator.to_base_units(quantity, packaging)
        return self.status_for_base_quantity(base_quantity, low_threshold, out_threshold)

    def derive(self, quantity: float, packaging: PackagingType, thresholds: ThresholdConfig) -> StockStatus:
        return self.derive_status(
            quantity, packaging, thresholds.low_stock_threshold, thresholds.out_of_stock_threshold
        )

    def lot_status(self, lot: InventoryLot, catalog: PackagingTypeCatalog, thresholds: ThresholdConfig) -> StockStatus:
        return self.derive(lot.quantity, catalog.require(lot.packaging_type_id), thresholds)

# ==================== PRODUCT BREAKDOWN ====================

class InventoryRow(BaseModel):
    inventory_id: str
    warehouse_id: str
    packaging_type_id: str
    quantity: float
    factor: Optional[float] = None
    total_base: Optional[float] = None
    status: Optional[StockStatus] = None
    error: Optional[Dict[str, Any]] = None


class DateBlock(BaseModel):
    production_date: Optional[date] = None
    label: str
    rows: List[InventoryRow]


class VariantSummary(BaseModel):
    variant_id: str
    variant_name: str
    total_base: float
    status: StockStatus
    date_blocks: List[DateBlock]


class ProductInventorySummary(BaseModel):
    product_id: str
    variants: List[VariantSummary]
    total_base: float


def summarize_product_inventory(
    product_id: str,
    lots: Iterable[InventoryLot],
    catalog: PackagingTypeCatalog,
    thresholds: ThresholdConfig,
    variants: Iterable[ProductVariant] = (),
    variant_id: Optional[str] = None,
    deriver: Optional[StatusDeriver] = None
) -> ProductInventorySummary:
    """
    Per-variant, per-production-date breakdown of one product's live lots,
    with base-unit totals and status per row and per variant.

    Rows whose packaging is unknown or has a bad factor carry the error and
    are left out of the totals.
    """
    deriver = deriver or StatusDeriver(ConversionCalculator(catalog))
    names = {v.variant_key: v.name for v in variants}

    by_variant: Dict[str, List[InventoryLot]] = {}
    for lot in lots:
        if lot.is_removed or lot.product_id != product_id:
            continue
        if variant_id is not None and lot.variant_key != variant_id:
            continue
        by_variant.setdefault(lot.variant_key, []).append(lot)

    summaries: List[VariantSummary] = []
    grand_total = 0.0
    for key, variant_lots in by_variant.items():
        variant_total = 0.0
        blocks: List[DateBlock] = []
        for group in LotSelector.group_by_production_date_then_packaging(variant_lots):
            rows: List[InventoryRow] = []
            for packaging_group in group.packaging_groups:
                for lot in packaging_group.lots:
                    row = _inventory_row(lot, catalog, deriver, thresholds)
                    if row.total_base is not None:
                        variant_total += row.total_base
                    rows.append(row)
            blocks.append(DateBlock(production_date=group.production_date, label=group.label, rows=rows))

        grand_total += variant_total
        summaries.append(VariantSummary(
            variant_id=key,
            variant_name=names.get(key, key),
            total_base=variant_total,
            status=deriver.status_for_base_quantity(
                variant_total, thresholds.low_stock_threshold, thresholds.out_of_stock_threshold
            ),
            date_blocks=blocks
        ))

    return ProductInventorySummary(product_id=product_id, variants=summaries, total_base=grand_total)


def _inventory_row(
    lot: InventoryLot,
    catalog: PackagingTypeCatalog,
    deriver: StatusDeriver,
    thresholds: ThresholdConfig
) -> InventoryRow:
    row = InventoryRow(
        inventory_id=lot.inventory_id,
        warehouse_id=lot.warehouse_id,
        packaging_type_id=lot.packaging_type_id,
        quantity=lot.quantity
    )
    try:
        packaging = catalog.require(lot.packaging_type_id)
        row.total_base = deriver.calculator.to_base_units(lot.quantity, packaging)
        row.factor = packaging.default_conversion_factor
        row.status = deriver.status_for_base_quantity(
            row.total_base, thresholds.low_stock_threshold, thresholds.out_of_stock_threshold
        )
    except EngineError as e:
        row.error = e.to_dict()
    return row
