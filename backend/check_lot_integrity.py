#!/usr/bin/env python3
"""
Report inventory lots and packaging types that break the stock invariants.

Checks:
- lots with a negative quantity
- lots whose quantity is not a finite number
- packaging types with a zero, negative or non-finite conversion factor
- live lots referencing a packaging type that does not exist

With --execute, negative lots are clamped to 0 (version bumped).

Usage: python check_lot_integrity.py [--execute]
"""

import asyncio
from motor.motor_asyncio import AsyncIOMotorClient
import os
from dotenv import load_dotenv
from pathlib import Path
import argparse
import math
from datetime import datetime, timezone
from typing import List, Dict, Any

from pydantic import ValidationError

from packaging_conversion_engine import ConversionCalculator, EngineError, PackagingType, Severity

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def find_integrity_issues(lot_docs: List[Dict[str, Any]], packaging_docs: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    """Works on raw documents so invalid records are reported instead of failing to load"""
    calculator = ConversionCalculator()
    invalid_factors = []
    known_ids = set()
    for doc in packaging_docs:
        known_ids.add(doc.get("id"))
        try:
            packaging = PackagingType(**doc)
        except ValidationError as e:
            invalid_factors.append({
                "error_code": "INVALID_PACKAGING_TYPE",
                "message": f"Packaging type document failed validation: {e.errors()[0]['msg']}",
                "field": None,
                "severity": Severity.DATA_QUALITY.value,
                "context": {
                    "packaging_type_id": doc.get("id"),
                    "default_conversion_factor": doc.get("default_conversion_factor")
                }
            })
            continue
        try:
            calculator.check_factor(packaging)
        except EngineError as e:
            invalid_factors.append(e.to_dict())

    negative_lots = []
    invalid_quantities = []
    unknown_packaging = []
    for doc in lot_docs:
        if doc.get("is_removed"):
            continue
        quantity = doc.get("quantity")
        if quantity is None:
            quantity = 0
        if isinstance(quantity, bool) or not isinstance(quantity, (int, float)) or not math.isfinite(quantity):
            invalid_quantities.append(doc)
        elif quantity < 0:
            negative_lots.append(doc)
        if doc.get("packaging_type_id") not in known_ids:
            unknown_packaging.append(doc)

    return {
        "negative_lots": negative_lots,
        "invalid_quantities": invalid_quantities,
        "invalid_factors": invalid_factors,
        "unknown_packaging": unknown_packaging,
    }


async def check_lot_integrity(db, dry_run: bool = True) -> Dict[str, List[Dict[str, Any]]]:
    print("=" * 80)
    print(f"{'DRY RUN: ' if dry_run else ''}CHECKING INVENTORY LOT INTEGRITY")
    print("=" * 80)
    print()

    lot_docs = await db.inventory.find({}, {"_id": 0}).to_list(100000)
    packaging_docs = await db.packaging_types.find({}, {"_id": 0}).to_list(10000)
    issues = find_integrity_issues(lot_docs, packaging_docs)

    print(f"Scanned {len(lot_docs)} lot(s) and {len(packaging_docs)} packaging type(s)")
    print()

    if issues["invalid_factors"]:
        print(f"❌ {len(issues['invalid_factors'])} packaging type(s) with invalid conversion factor:")
        for error in issues["invalid_factors"]:
            print(f"  - {error['context']['packaging_type_id']}: {error['context']['default_conversion_factor']}")
        print()

    if issues["unknown_packaging"]:
        print(f"❌ {len(issues['unknown_packaging'])} lot(s) referencing unknown packaging types:")
        for doc in issues["unknown_packaging"]:
            print(f"  - lot {doc.get('inventory_id')}: packaging_type_id={doc.get('packaging_type_id')}")
        print()

    if issues["invalid_quantities"]:
        print(f"❌ {len(issues['invalid_quantities'])} lot(s) with a non-numeric quantity (fix by hand):")
        for doc in issues["invalid_quantities"]:
            print(f"  - lot {doc.get('inventory_id')}: quantity={doc.get('quantity')!r}")
        print()

    if issues["negative_lots"]:
        print(f"❌ {len(issues['negative_lots'])} lot(s) with negative quantity:")
        for doc in issues["negative_lots"]:
            print(f"  - lot {doc.get('inventory_id')}: quantity={doc.get('quantity')}")
            if not dry_run:
                await db.inventory.update_one(
                    {"inventory_id": doc.get("inventory_id")},
                    {
                        "$set": {"quantity": 0, "updated_at": datetime.now(timezone.utc).isoformat()},
                        "$inc": {"version": 1}
                    }
                )
                print(f"    ✓ Clamped to 0")
        if dry_run:
            print()
            print("⚠️  Dry run: re-run with --execute to clamp negative lots to 0")
        print()

    if not any(issues.values()):
        print("✓ No integrity issues found")

    return issues


async def main():
    parser = argparse.ArgumentParser(description='Check inventory lots for stock invariant violations')
    parser.add_argument('--execute', action='store_true', help='Clamp negative lots to 0 (default is dry-run)')

    args = parser.parse_args()
    dry_run = not args.execute

    client = AsyncIOMotorClient(os.environ.get('MONGO_URL', 'mongodb://localhost:27017'))
    db = client[os.environ.get('DB_NAME', 'warehouse_erp')]
    try:
        await check_lot_integrity(db, dry_run=dry_run)
    except Exception as e:
        print(f"❌ ERROR: {str(e)}")
        import traceback
        traceback.print_exc()
    finally:
        client.close()

if __name__ == "__main__":
    asyncio.run(main())
