# backend/tests/test_server.py

"""HTTP layer: routing, request parsing and the error → status code mapping"""

import pytest
from fastapi.testclient import TestClient

from conftest import lot_doc
from inventory_service import InventoryService
from inventory_store import InventoryStore
import server


@pytest.fixture
def client(mock_db):
    mock_db.inventory.docs = [
        lot_doc("A", 100),
        lot_doc("B", 30, packaging_type_id="BAG_25"),
    ]
    server.app.dependency_overrides[server.get_inventory_service] = lambda: InventoryService(InventoryStore(mock_db))
    yield TestClient(server.app)
    server.app.dependency_overrides.clear()


class TestConversionRoutes:
    def test_health(self, client):
        assert client.get("/api/health").json()["status"] == "ok"

    def test_step(self, client):
        response = client.get("/api/packaging-types/LOOSE_KG/step/BAG_25")
        assert response.status_code == 200
        assert response.json()["step"] == 25

    def test_step_incompatible(self, client):
        response = client.get("/api/packaging-types/BAG_25/step/DRUM_200")
        assert response.status_code == 400
        assert response.json()["detail"][0]["error_code"] == "INCOMPATIBLE_UNITS"

    def test_convert_fractional_returns_null(self, client):
        response = client.get("/api/packaging-types/LOOSE_KG/convert/BAG_25", params={"quantity": 37})
        assert response.status_code == 200
        assert response.json()["equivalent_quantity"] is None

    def test_convert_unknown_packaging(self, client):
        response = client.get("/api/packaging-types/LOOSE_KG/convert/NOPE", params={"quantity": 1})
        assert response.status_code == 404


class TestInventoryRoutes:
    def test_repack(self, client, mock_db):
        response = client.post("/api/inventory/repack", json={
            "inventory_id": "A", "target_packaging_type_id": "BAG_25", "quantity_to_convert": 100
        })
        assert response.status_code == 200
        assert response.json()["equivalent_quantity"] == 4
        assert mock_db.inventory.by_id("A")["quantity"] == 0

    def test_repack_invalid_quantity_string(self, client):
        response = client.post("/api/inventory/repack", json={
            "inventory_id": "A", "target_packaging_type_id": "BAG_25", "quantity_to_convert": "lots"
        })
        assert response.status_code == 400
        assert response.json()["detail"][0]["error_code"] == "INVALID_QUANTITY"

    def test_repack_unknown_lot(self, client):
        response = client.post("/api/inventory/repack", json={
            "inventory_id": "NOPE", "target_packaging_type_id": "BAG_25", "quantity_to_convert": 25
        })
        assert response.status_code == 404

    def test_repack_targets(self, client):
        response = client.get("/api/inventory/A/repack-targets", params={"allowed": ["BAG_50"]})
        assert response.status_code == 200
        assert [t["id"] for t in response.json()] == ["BAG_50"]

    def test_delete_lot(self, client):
        assert client.delete("/api/inventory/A").status_code == 200
        assert client.delete("/api/inventory/A").status_code == 404
        assert client.get("/api/inventory/A/repack-targets").status_code == 404

    def test_product_summary(self, client):
        response = client.get("/api/inventory/products/P1/summary")
        assert response.status_code == 200
        assert response.json()["total_base"] == 850


class TestTransferRoutes:
    def test_validate_reports_all_errors(self, client):
        response = client.post("/api/transfers/validate", json={
            "source_warehouse_id": "WH1",
            "destination_warehouse_id": "WH1",
            "lines": [{"inventory_id": "B", "quantity": 50}]
        })
        assert response.status_code == 200
        codes = [e["error_code"] for e in response.json()["errors"]]
        assert codes == ["SAME_WAREHOUSE", "LINE_EXCEEDS_AVAILABLE"]

    def test_create_and_complete(self, client, mock_db):
        response = client.post("/api/transfers", json={
            "source_warehouse_id": "WH1",
            "destination_warehouse_id": "WH2",
            "lines": [{"inventory_id": "B", "quantity": 10}]
        })
        assert response.status_code == 200
        transfer_id = response.json()["transfer"]["transfer_id"]

        response = client.put(f"/api/transfers/{transfer_id}/status", json={"status": "Completed"})
        assert response.status_code == 200
        assert response.json()["stock_moved"] is True
        assert mock_db.inventory.by_id("B")["quantity"] == 20

        response = client.put(f"/api/transfers/{transfer_id}/status", json={"status": "Pending"})
        assert response.status_code == 400
        assert response.json()["detail"][0]["error_code"] == "INVALID_STATUS_TRANSITION"

    def test_unknown_status_value(self, client):
        response = client.put("/api/transfers/T1/status", json={"status": "Lost"})
        assert response.status_code == 422

    def test_status_of_missing_transfer(self, client):
        response = client.put("/api/transfers/NOPE/status", json={"status": "Completed"})
        assert response.status_code == 404

    def test_allocate_preview(self, client):
        response = client.post("/api/transfer-requests/allocate", json={
            "source_warehouse_id": "WH1",
            "items": [{"request_item_id": "R1", "variant_id": "V1", "packaging_type_id": "BAG_25",
                       "requested_quantity": 40}]
        })
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ERROR"
        assert body["errors"][0]["context"]["available"] == 30


class TestErrorMapping:
    def test_conflict_is_409(self):
        with pytest.raises(server.HTTPException) as exc_info:
            server.raise_for_errors([{"error_code": "CONCURRENT_MODIFICATION_CONFLICT"}, {"error_code": "X"}])
        assert exc_info.value.status_code == 409

    def test_mixed_not_found_is_400(self):
        with pytest.raises(server.HTTPException) as exc_info:
            server.raise_for_errors([{"error_code": "LOT_NOT_AVAILABLE"}, {"error_code": "SAME_WAREHOUSE"}])
        assert exc_info.value.status_code == 400
