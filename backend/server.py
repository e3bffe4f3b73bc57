from fastapi import FastAPI, APIRouter, HTTPException, Depends, Query
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from pydantic import BaseModel
from typing import List, Optional, Dict, Any

from packaging_conversion_engine import EngineError, ResultStatus
from inventory_store import InventoryStore
from inventory_service import DEFAULT_MAX_RETRIES, InventoryService
from transfer_service import Transfer, TransferLine, TransferRequestItem, TransferStatus

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB connection
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'warehouse_erp')
client = AsyncIOMotorClient(mongo_url)
db = client[db_name]

LOT_CHANGE_MAX_RETRIES = int(os.environ.get('LOT_CHANGE_MAX_RETRIES', DEFAULT_MAX_RETRIES))

app = FastAPI(title="Warehouse Packaging Conversion API")
api_router = APIRouter(prefix="/api")

cors_origins = [o.strip() for o in os.environ.get('CORS_ORIGINS', '*').split(',') if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=cors_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"PACKAGING_NOT_FOUND", "BASE_UNIT_NOT_FOUND", "LOT_NOT_AVAILABLE", "TRANSFER_NOT_FOUND"}


def get_inventory_service() -> InventoryService:
    return InventoryService(InventoryStore(db), max_retries=LOT_CHANGE_MAX_RETRIES)


def raise_for_errors(errors: List[Dict[str, Any]]):
    """ERROR result → HTTPException: 409 on conflict, 404 when only not-found kinds, else 400"""
    codes = {e.get("error_code") for e in errors}
    if "CONCURRENT_MODIFICATION_CONFLICT" in codes:
        status_code = 409
    elif codes and codes <= NOT_FOUND_CODES:
        status_code = 404
    else:
        status_code = 400
    raise HTTPException(status_code=status_code, detail=errors)

# ==================== REQUEST MODELS ====================

class RepackRequest(BaseModel):
    inventory_id: str
    target_packaging_type_id: str
    # Not coerced: a non-numeric value is reported as INVALID_QUANTITY
    quantity_to_convert: Any


class TransferCreate(BaseModel):
    source_warehouse_id: str
    destination_warehouse_id: str
    status: TransferStatus = TransferStatus.PENDING
    lines: List[TransferLine] = []
    notes: Optional[str] = None

    def to_transfer(self) -> Transfer:
        return Transfer(**self.model_dump())


class TransferStatusUpdate(BaseModel):
    status: TransferStatus


class AllocationRequest(BaseModel):
    source_warehouse_id: str
    items: List[TransferRequestItem]
    overrides: Dict[str, str] = {}

# ==================== ROUTES ====================

@api_router.get("/health")
async def health():
    return {"status": "ok", "database": db_name}


@api_router.get("/packaging-types/{source_id}/step/{target_id}")
async def get_minimal_step(source_id: str, target_id: str, service: InventoryService = Depends(get_inventory_service)):
    result = await service.step(source_id, target_id)
    if result.status != ResultStatus.SUCCESS:
        raise_for_errors(result.errors)
    return result


@api_router.get("/packaging-types/{source_id}/convert/{target_id}")
async def convert_quantity(
    source_id: str,
    target_id: str,
    quantity: float = Query(...),
    service: InventoryService = Depends(get_inventory_service)
):
    result = await service.convert(quantity, source_id, target_id)
    if result.status != ResultStatus.SUCCESS:
        raise_for_errors(result.errors)
    return result


@api_router.get("/inventory/{inventory_id}/repack-targets")
async def get_repack_targets(
    inventory_id: str,
    allowed: Optional[List[str]] = Query(None),
    service: InventoryService = Depends(get_inventory_service)
):
    try:
        targets = await service.repack_targets(inventory_id, allowed)
    except EngineError as e:
        raise_for_errors([e.to_dict()])
    return [t.model_dump() for t in targets]


@api_router.post("/inventory/repack")
async def repack_inventory(data: RepackRequest, service: InventoryService = Depends(get_inventory_service)):
    result = await service.repack(data.inventory_id, data.target_packaging_type_id, data.quantity_to_convert)
    if result.status != ResultStatus.SUCCESS:
        raise_for_errors(result.errors)
    return result


@api_router.delete("/inventory/{inventory_id}")
async def remove_inventory_lot(inventory_id: str, service: InventoryService = Depends(get_inventory_service)):
    removed = await service.remove_lot(inventory_id)
    if not removed:
        raise HTTPException(status_code=404, detail=f"Inventory lot '{inventory_id}' not found or already removed")
    return {"inventory_id": inventory_id, "is_removed": True}


@api_router.get("/inventory/products/{product_id}/summary")
async def get_product_inventory_summary(
    product_id: str,
    variant_id: Optional[str] = None,
    service: InventoryService = Depends(get_inventory_service)
):
    return await service.product_summary(product_id, variant_id)


@api_router.post("/transfers/validate")
async def validate_transfer(data: TransferCreate, service: InventoryService = Depends(get_inventory_service)):
    """Preview only: errors are returned in the body, nothing is written"""
    return await service.validate_transfer(data.to_transfer())


@api_router.post("/transfers")
async def create_transfer(data: TransferCreate, service: InventoryService = Depends(get_inventory_service)):
    result = await service.create_transfer(data.to_transfer())
    if result.status != ResultStatus.SUCCESS:
        raise_for_errors(result.errors)
    return result


@api_router.put("/transfers/{transfer_id}/status")
async def update_transfer_status(
    transfer_id: str,
    data: TransferStatusUpdate,
    service: InventoryService = Depends(get_inventory_service)
):
    result = await service.update_transfer_status(transfer_id, data.status)
    if result.status != ResultStatus.SUCCESS:
        raise_for_errors(result.errors)
    return result


@api_router.post("/transfer-requests/allocate")
async def allocate_transfer_request(data: AllocationRequest, service: InventoryService = Depends(get_inventory_service)):
    """Preview only: shortfalls are returned in the body"""
    return await service.allocate_request(data.items, data.source_warehouse_id, data.overrides or None)


app.include_router(api_router)


@app.on_event("shutdown")
async def shutdown_db_client():
    logger.info("Closing MongoDB client")
    client.close()
