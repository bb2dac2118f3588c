"""
HTTP layer: bearer auth, JSON envelopes and error mapping
"""
from datetime import timedelta

import httpx
import pytest

from adogalo.auth import create_access_token
from adogalo.notification_service import NotificationService
from adogalo.server import create_app

PROJECT_BODY = {
    "judul": "Rumah Tinggal Type 45",
    "clientName": "Budi",
    "clientEmail": "client@example.com",
    "vendorName": "CV Bangun Jaya",
    "vendorEmail": "vendor@example.com",
    "budget": 10_000_000,
    "milestones": [{"judul": "Pekerjaan Utama", "persentase": 100}],
}


def _auth(email, role="user"):
    return {"Authorization": f"Bearer {create_access_token({'email': email, 'role': role})}"}


ADMIN = _auth("admin@adogalo.example.com", "admin")
CLIENT = _auth("client@example.com")
VENDOR = _auth("vendor@example.com")


@pytest.fixture
def notifications():
    return NotificationService()


@pytest.fixture
async def api(db, clock, notifications):
    app = create_app(db=db, use_transactions=False, notifications=notifications, clock=clock)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def _create_project(api):
    response = await api.post("/api/projects", json=PROJECT_BODY, headers=ADMIN)
    assert response.status_code == 201
    return response.json()["project"]["id"]


class TestAuth:
    async def test_health_is_public(self, api):
        response = await api.get("/api/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["transactions"] is False
        assert body["notifications"] == "log-only"

    async def test_missing_token(self, api):
        response = await api.get("/api/projects")
        assert response.status_code in (401, 403)
        assert response.json()["success"] is False

    async def test_expired_token(self, api):
        token = create_access_token({"email": "client@example.com", "role": "user"},
                                    expires_delta=timedelta(minutes=-1))
        response = await api.get("/api/projects", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json()["message"] == "Sesi telah berakhir, silakan login kembali"

    async def test_unregistered_manager(self, api):
        response = await api.get("/api/projects", headers=_auth("ghost@adogalo.example.com", "manager"))
        assert response.status_code == 403

    async def test_admin_routes(self, api):
        response = await api.get("/api/managers", headers=CLIENT)
        assert response.status_code == 403
        assert response.json() == {"success": False, "message": "Hanya admin yang bisa melakukan aksi ini"}

        response = await api.post("/api/managers", json={"nama": "Sari", "email": "sari@adogalo.example.com"},
                                  headers=ADMIN)
        assert response.status_code == 201


class TestProjects:
    async def test_create_and_read(self, api):
        project_id = await _create_project(api)

        response = await api.get(f"/api/projects/{project_id}", headers=VENDOR)
        body = response.json()
        assert body["success"] is True
        assert body["user_role"] == "vendor"
        assert body["project"]["milestones"][0]["display_amount"] == 9_800_000

        listed = (await api.get("/api/projects", headers=CLIENT)).json()
        assert [p["id"] for p in listed["projects"]] == [project_id]

    async def test_client_cannot_create(self, api):
        response = await api.post("/api/projects", json=PROJECT_BODY, headers=CLIENT)
        assert response.status_code == 403
        assert response.json()["reason"] == "forbidden"

    async def test_malformed_body(self, api):
        response = await api.post("/api/projects", json={"judul": "X"}, headers=ADMIN)
        assert response.status_code == 400
        body = response.json()
        assert body["reason"] == "validation_failed"
        assert body["errors"]

    async def test_percentages_error_shape(self, api):
        body = dict(PROJECT_BODY, milestones=[{"judul": "A", "persentase": 40}])
        response = await api.post("/api/projects", json=body, headers=ADMIN)
        assert response.status_code == 400
        assert response.json()["total_persentase"] == 40

    async def test_unknown_project(self, api):
        response = await api.get("/api/projects/not-an-id", headers=ADMIN)
        assert response.status_code == 404
        assert response.json()["reason"] == "not_found"


class TestEscrowFlow:
    async def test_funds_gate_error_body(self, api):
        project_id = await _create_project(api)
        milestones = (await api.get(f"/api/projects/{project_id}/milestones", headers=VENDOR)).json()
        milestone_id = milestones["milestones"][0]["id"]

        response = await api.post(f"/api/milestones/{milestone_id}/actions", json={"action": "start"},
                                  headers=VENDOR)

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["reason"] == "insufficient_funds"
        assert body["needs_deposit"] is True
        assert body["shortage"] == 11_000_000

    async def test_unknown_action(self, api):
        project_id = await _create_project(api)
        milestones = (await api.get(f"/api/projects/{project_id}/milestones", headers=VENDOR)).json()
        milestone_id = milestones["milestones"][0]["id"]

        response = await api.post(f"/api/milestones/{milestone_id}/actions", json={"action": "teleport"},
                                  headers=VENDOR)
        assert response.status_code == 400
        assert response.json()["message"] == "Aksi tidak valid"

    async def test_termin_payment_notifies_client(self, api, notifications):
        project_id = await _create_project(api)
        termins = (await api.get(f"/api/projects/{project_id}/termins", headers=CLIENT)).json()["termins"]
        termin_id = termins[0]["id"]

        requested = await api.post(f"/api/projects/{project_id}/termins",
                                   json={"action": "request_payment", "terminId": termin_id}, headers=CLIENT)
        assert requested.json()["termin"]["status"] == "pending_confirmation"

        confirmed = await api.post(f"/api/projects/{project_id}/termins",
                                   json={"action": "confirm_payment", "terminId": termin_id}, headers=ADMIN)
        assert confirmed.status_code == 200
        assert confirmed.json()["ledger"]["client_funds"] == 10_100_000
        assert {"to": "client@example.com", "subject": "[Adogalo] Pembayaran termin dikonfirmasi"} \
            in notifications.outbox

        again = await api.post(f"/api/projects/{project_id}/termins",
                               json={"action": "confirm_payment", "terminId": termin_id}, headers=ADMIN)
        assert again.status_code == 400
        assert again.json()["reason"] == "invalid_state"

    async def test_ledger_hidden_from_vendor(self, api):
        project_id = await _create_project(api)
        response = await api.get(f"/api/projects/{project_id}/ledger", headers=VENDOR)
        assert response.status_code == 403

        response = await api.get(f"/api/projects/{project_id}/ledger", headers=ADMIN)
        assert response.json()["ledger"]["version"] == 1

    async def test_retensi_proposal(self, api):
        project_id = await _create_project(api)
        response = await api.post(f"/api/projects/{project_id}/retensi",
                                  json={"action": "propose", "percent": 5, "days": 30}, headers=VENDOR)
        assert response.json()["retensi"]["status"] == "proposed"

        retensi = (await api.get(f"/api/projects/{project_id}/retensi", headers=CLIENT)).json()["retensi"]
        assert retensi["value"] == 500_000
        assert retensi["logs"][0]["tipe"] == "proposed"

    async def test_unknown_additional_work_action(self, api):
        project_id = await _create_project(api)
        response = await api.post(f"/api/projects/{project_id}/additional-work",
                                  json={"action": "merge"}, headers=VENDOR)
        assert response.status_code == 400
        assert response.json()["action"] == "merge"
