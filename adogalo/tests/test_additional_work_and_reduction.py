"""
Scope changes: vendor-proposed additional work and price reductions
"""
import pytest

from adogalo.core.errors import AuthorizationError, EscrowValidationError, InsufficientFundsError, StateGuardError
from adogalo.core.state_machine import GuardConditionError


class TestAdditionalWork:
    """pending -> approved (spawns milestone + termin) | rejected"""

    async def test_approval_spawns_milestone_and_termin(self, services, make_project, vendor, client_user,
                                                        admin):
        project_id = await make_project(budget=10_000_000)
        created = await services.additional_work.create(
            project_id, vendor, "Kanopi Carport", 2_000_000, deskripsi="Rangka baja ringan"
        )
        assert created["additional_work"]["status"] == "pending"
        work_id = str(created["additional_work"]["_id"])

        result = await services.additional_work.approve(project_id, work_id, client_user)

        milestone = result["milestone"]
        assert milestone["judul"] == "[Tambahan] Kanopi Carport"
        assert milestone["status"] == "pending_additional"
        assert milestone["is_additional_work"] is True
        assert milestone["price"] == 2_000_000
        assert milestone["urutan"] == 2

        termin = result["termin"]
        assert termin["type"] == "additional"
        assert termin["fee_client_amount"] == 20_000
        assert termin["total_with_fee"] == 2_020_000
        assert termin["terkait_id"] == work_id

        assert result["additional_work"]["status"] == "approved"
        assert result["additional_work"]["milestone_id"] == str(milestone["_id"])
        assert len(await services.termins.list_termins(project_id, admin)) == 2

    async def test_additional_milestone_can_start(self, services, make_project, fund_project, vendor,
                                                  client_user):
        project_id = await make_project(budget=10_000_000)
        await fund_project(project_id, 3_000_000)
        created = await services.additional_work.create(project_id, vendor, "Pagar", 2_000_000)
        result = await services.additional_work.approve(
            project_id, str(created["additional_work"]["_id"]), client_user
        )

        started = await services.milestones.perform(str(result["milestone"]["_id"]), "start", vendor)
        assert started["milestone"]["status"] == "active"

    async def test_reject_is_terminal(self, services, make_project, vendor, client_user):
        project_id = await make_project()
        created = await services.additional_work.create(project_id, vendor, "Kolam", 5_000_000)
        work_id = str(created["additional_work"]["_id"])

        rejected = await services.additional_work.reject(project_id, work_id, client_user)
        assert rejected["additional_work"]["status"] == "rejected"
        with pytest.raises(StateGuardError):
            await services.additional_work.approve(project_id, work_id, client_user)
        assert len(await services.ctx.get_project_milestones(project_id)) == 1

    async def test_only_vendor_proposes(self, services, make_project, client_user):
        project_id = await make_project()
        with pytest.raises(AuthorizationError):
            await services.additional_work.create(project_id, client_user, "Kolam", 5_000_000)

    async def test_vendor_cannot_approve_own_work(self, services, make_project, vendor):
        project_id = await make_project()
        created = await services.additional_work.create(project_id, vendor, "Kolam", 5_000_000)
        with pytest.raises(AuthorizationError):
            await services.additional_work.approve(project_id, str(created["additional_work"]["_id"]), vendor)

    @pytest.mark.parametrize("judul,amount", [("", 1_000_000), ("Kolam", 0), ("Kolam", None)])
    async def test_invalid_request(self, services, make_project, vendor, judul, amount):
        project_id = await make_project()
        with pytest.raises(EscrowValidationError):
            await services.additional_work.create(project_id, vendor, judul, amount)


class TestReduction:
    """Client-approved price reductions and the refund that follows"""

    async def _approved_reduction(self, services, project_id, vendor, client_user, amount):
        [milestone] = await services.ctx.get_project_milestones(project_id)
        created = await services.reduction.create(
            project_id, vendor, str(milestone["_id"]), amount, alasan="Material diganti"
        )
        return await services.reduction.approve_client(
            project_id, str(created["change_request"]["_id"]), client_user
        )

    async def test_approval_lowers_price(self, services, make_project, vendor, client_user):
        project_id = await make_project(budget=10_000_000)
        result = await self._approved_reduction(services, project_id, vendor, client_user, 2_000_000)

        assert result["change_request"]["status"] == "approved"
        assert result["milestone"]["price"] == 8_000_000
        termin = result["termin"]
        assert termin["type"] == "reduction"
        assert termin["base_amount"] == -2_000_000
        assert termin["fee_client_amount"] == 0
        assert termin["total_with_fee"] == -2_000_000

        log = await services.db.logs.find_one({"project_id": project_id, "tipe": "change"})
        assert "Rp 2.000.000" in log["catatan"]
        assert "Material diganti" in log["catatan"]

    async def test_amount_cannot_exceed_price(self, services, make_project, milestone_ids, vendor):
        project_id = await make_project(budget=10_000_000)
        [milestone_id] = await milestone_ids(project_id)
        with pytest.raises(EscrowValidationError):
            await services.reduction.create(project_id, vendor, milestone_id, 10_000_001)

    async def test_client_rejects(self, services, make_project, milestone_ids, vendor, client_user):
        project_id = await make_project()
        [milestone_id] = await milestone_ids(project_id)
        created = await services.reduction.create(project_id, vendor, milestone_id, 1_000_000)

        result = await services.reduction.reject_client(
            project_id, str(created["change_request"]["_id"]), client_user
        )
        assert result["change_request"]["status"] == "rejected"
        assert (await services.ctx.get_milestone(milestone_id))["price"] == 10_000_000

    async def test_only_client_approves(self, services, make_project, milestone_ids, vendor, admin):
        project_id = await make_project()
        [milestone_id] = await milestone_ids(project_id)
        created = await services.reduction.create(project_id, vendor, milestone_id, 1_000_000)
        with pytest.raises(AuthorizationError):
            await services.reduction.approve_client(project_id, str(created["change_request"]["_id"]), admin)

    async def test_reduction_termin_cannot_be_paid(self, services, make_project, vendor, client_user):
        project_id = await make_project(budget=10_000_000)
        result = await self._approved_reduction(services, project_id, vendor, client_user, 1_000_000)
        with pytest.raises(GuardConditionError):
            await services.termins.perform(project_id, str(result["termin"]["_id"]), "request_payment", client_user)

    async def test_refund_moves_money_back(self, services, make_project, fund_project, vendor, client_user,
                                           admin):
        project_id = await make_project(budget=10_000_000)
        before = await fund_project(project_id, 5_000_000)
        assert before["client_funds"] == 5_050_000
        result = await self._approved_reduction(services, project_id, vendor, client_user, 2_000_000)

        refunded = await services.termins.perform(
            project_id, str(result["termin"]["_id"]), "process_refund", admin
        )

        assert refunded["termin"]["status"] == "refunded"
        assert refunded["ledger"]["client_funds"] == 3_050_000
        assert refunded["ledger"]["admin_balance"] == 3_050_000
        log = await services.db.logs.find_one({"project_id": project_id, "tipe": "refund"})
        assert "Rp 2.000.000" in log["catatan"]

    async def test_refund_needs_client_funds(self, services, make_project, vendor, client_user, admin):
        project_id = await make_project(budget=10_000_000)
        result = await self._approved_reduction(services, project_id, vendor, client_user, 2_000_000)
        with pytest.raises(InsufficientFundsError) as exc:
            await services.termins.perform(project_id, str(result["termin"]["_id"]), "process_refund", admin)
        assert exc.value.details["shortage"] == 2_000_000

    async def test_refund_only_for_reduction_termins(self, services, make_project, admin):
        project_id = await make_project()
        [termin] = await services.termins.list_termins(project_id, admin)
        with pytest.raises(GuardConditionError):
            await services.termins.perform(project_id, str(termin["_id"]), "process_refund", admin)

    async def test_lost_status_race_restores_price(self, services, make_project, milestone_ids, vendor,
                                                   client_user, monkeypatch):
        project_id = await make_project(budget=10_000_000)
        [milestone_id] = await milestone_ids(project_id)
        created = await services.reduction.create(project_id, vendor, milestone_id, 1_000_000)
        stale = created["change_request"]
        await services.reduction.reject_client(project_id, str(stale["_id"]), client_user)

        # the approval still sees the request as pending
        async def stale_load(project_id, change_request_id, session=None):
            return dict(stale)
        monkeypatch.setattr(services.reduction, "_load", stale_load)

        with pytest.raises(StateGuardError):
            await services.reduction.approve_client(project_id, str(stale["_id"]), client_user)

        assert (await services.ctx.get_milestone(milestone_id))["price"] == 10_000_000
        assert await services.db.termins.count_documents({"project_id": project_id, "type": "reduction"}) == 0
