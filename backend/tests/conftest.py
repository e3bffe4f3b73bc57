# backend/tests/conftest.py

"""
Shared fixtures: an in-memory stand-in for the motor collections used by
InventoryStore, plus a small packaging catalog.
"""

import copy
import sys
from pathlib import Path

import pytest
from pymongo import ReturnDocument

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from packaging_conversion_engine import BaseUnit, BaseUnitCatalog, PackagingType, PackagingTypeCatalog


def _matches(doc, query):
    for key, condition in query.items():
        if key == "$or":
            if not any(_matches(doc, clause) for clause in condition):
                return False
            continue
        value = doc.get(key)
        if isinstance(condition, dict):
            if "$in" in condition and value not in condition["$in"]:
                return False
            if "$ne" in condition and value == condition["$ne"]:
                return False
        elif value != condition:
            return False
    return True


def _apply_update(doc, update):
    for key, value in update.get("$set", {}).items():
        doc[key] = value
    for key, value in update.get("$inc", {}).items():
        doc[key] = doc.get(key, 0) + value


class MockUpdateResult:
    def __init__(self, matched_count):
        self.matched_count = matched_count
        self.modified_count = matched_count


class MockCursor:
    def __init__(self, docs):
        self.docs = docs

    async def to_list(self, length=None):
        return self.docs[:length] if length else self.docs


class MockCollection:
    """Mock MongoDB collection (equality, $in, $ne and $or filters)"""
    def __init__(self, docs=None):
        self.docs = [copy.deepcopy(d) for d in (docs or [])]

    def find(self, query=None, projection=None):
        return MockCursor([copy.deepcopy(d) for d in self.docs if _matches(d, query or {})])

    async def find_one(self, query, projection=None):
        for doc in self.docs:
            if _matches(doc, query):
                return copy.deepcopy(doc)
        return None

    async def find_one_and_update(self, query, update, projection=None, return_document=ReturnDocument.BEFORE):
        for doc in self.docs:
            if _matches(doc, query):
                before = copy.deepcopy(doc)
                _apply_update(doc, update)
                return copy.deepcopy(doc) if return_document == ReturnDocument.AFTER else before
        return None

    async def update_one(self, query, update):
        for doc in self.docs:
            if _matches(doc, query):
                _apply_update(doc, update)
                return MockUpdateResult(1)
        return MockUpdateResult(0)

    async def insert_one(self, doc):
        self.docs.append(copy.deepcopy(doc))

    async def insert_many(self, docs):
        self.docs.extend(copy.deepcopy(d) for d in docs)

    async def delete_many(self, query):
        self.docs = [d for d in self.docs if not _matches(d, query)]

    def by_id(self, inventory_id):
        """Test helper: raw lot document"""
        return next((d for d in self.docs if d.get("inventory_id") == inventory_id), None)


class MockDB:
    """Mock MongoDB database"""
    def __init__(self):
        self.base_units = MockCollection([
            {"id": "KG", "name": "Kilogram"},
            {"id": "LTR", "name": "Liter"},
        ])
        self.packaging_types = MockCollection([
            {"id": "LOOSE_KG", "name": "Loose kg", "compatible_base_unit_id": "KG", "default_conversion_factor": 1},
            {"id": "BAG_25", "name": "25kg Bag", "compatible_base_unit_id": "KG", "default_conversion_factor": 25},
            {"id": "BAG_50", "name": "50kg Bag", "compatible_base_unit_id": "KG", "default_conversion_factor": 50},
            {"id": "DRUM_200", "name": "200L Drum", "compatible_base_unit_id": "LTR", "default_conversion_factor": 200},
        ])
        self.product_variants = MockCollection([
            {"variant_id": "V1", "product_id": "P1", "name": "Rice Basmati", "base_unit_id": "KG"},
        ])
        self.inventory = MockCollection([])
        self.transfers = MockCollection([])
        self.settings = MockCollection([
            {"category": "inventory", "settings_key": "low_stock_threshold", "settings_value": "100"},
            {"category": "inventory", "settings_key": "out_of_stock_threshold", "settings_value": "0"},
        ])


def lot_doc(inventory_id, quantity, packaging_type_id="LOOSE_KG", warehouse_id="WH1",
            production_date="2024-01-10", variant_id="V1", version=0, **extra):
    doc = {
        "inventory_id": inventory_id,
        "variant_id": variant_id,
        "product_id": "P1",
        "warehouse_id": warehouse_id,
        "packaging_type_id": packaging_type_id,
        "quantity": quantity,
        "production_date": production_date,
        "is_removed": False,
        "version": version,
    }
    doc.update(extra)
    return doc


@pytest.fixture
def mock_db():
    """Mock MongoDB database"""
    return MockDB()


@pytest.fixture
def catalog():
    """KG family (loose, 25kg bag, 50kg bag, 10kg box, half-kg pouch) plus one liter drum"""
    base_units = BaseUnitCatalog([BaseUnit(id="KG", name="Kilogram"), BaseUnit(id="LTR", name="Liter")])
    return PackagingTypeCatalog([
        PackagingType(id="LOOSE_KG", name="Loose kg", compatible_base_unit_id="KG", default_conversion_factor=1),
        PackagingType(id="BAG_25", name="25kg Bag", compatible_base_unit_id="KG", default_conversion_factor=25),
        PackagingType(id="BAG_50", name="50kg Bag", compatible_base_unit_id="KG", default_conversion_factor=50),
        PackagingType(id="BOX_10", name="10kg Box", compatible_base_unit_id="KG", default_conversion_factor=10),
        PackagingType(id="POUCH_HALF", name="0.5kg Pouch", compatible_base_unit_id="KG", default_conversion_factor=0.5),
        PackagingType(id="DRUM_200", name="200L Drum", compatible_base_unit_id="LTR", default_conversion_factor=200),
        PackagingType(id="BROKEN", name="Broken", compatible_base_unit_id="KG", default_conversion_factor=0),
    ], base_units)
