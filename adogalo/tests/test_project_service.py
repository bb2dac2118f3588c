"""
Project lifecycle, role-specific views, milestone CRUD, comments and managers
"""
import pytest

from adogalo.core.errors import AuthorizationError, EscrowValidationError, NotFoundError, StateGuardError

TWO_MILESTONES = [{"judul": "A", "persentase": 50}, {"judul": "B", "persentase": 50}]


class TestCreateProject:
    async def test_creates_children(self, services, make_project, admin):
        project_id = await make_project(budget=20_000_000, milestones=TWO_MILESTONES,
                                        retensi_percent=5, retensi_days=30)

        ledger = await services.ctx.ledger.get(project_id)
        assert ledger["client_funds"] == 0
        assert ledger["version"] == 1

        retensi = await services.ctx.get_retensi(project_id)
        assert retensi["status"] == "agreed"
        assert retensi["value"] == 1_000_000

        milestones = await services.ctx.get_project_milestones(project_id)
        assert [m["price"] for m in milestones] == [10_000_000, 10_000_000]
        assert [m["urutan"] for m in milestones] == [1, 2]

        logs = await services.projects.get_audit_logs(project_id, admin)
        assert logs[0]["action_type"] == "CREATE"

    async def test_percentages_must_total_100(self, services, admin, make_project):
        with pytest.raises(EscrowValidationError) as exc:
            await make_project(milestones=[{"judul": "A", "persentase": 60}, {"judul": "B", "persentase": 30}])
        assert exc.value.details["total_persentase"] == 90

    async def test_required_fields(self, services, make_project):
        with pytest.raises(EscrowValidationError):
            await make_project(vendor_email=" ")
        with pytest.raises(EscrowValidationError):
            await make_project(budget=-5)

    async def test_only_admin_creates(self, services, client_user):
        with pytest.raises(AuthorizationError):
            await services.projects.create_project(client_user, {"judul": "X"})

    async def test_emails_are_normalized(self, services, make_project):
        project_id = await make_project(client_email="  Client@Example.COM ")
        project = await services.ctx.get_project(project_id)
        assert project["client_email"] == "client@example.com"


class TestVisibility:
    """Who sees which projects and which amounts"""

    async def test_list_per_role(self, services, make_project, make_manager, admin, client_user, outsider):
        first = await make_project(judul="Rumah A")
        second = await make_project(judul="Rumah B", client_email="other@example.com")
        manager = await make_manager([second])

        assert len(await services.projects.list_projects(admin)) == 2
        assert [str(p["_id"]) for p in await services.projects.list_projects(client_user)] == [first]
        assert [str(p["_id"]) for p in await services.projects.list_projects(manager)] == [second]
        assert await services.projects.list_projects(outsider) == []

    async def test_amounts_per_role(self, services, make_project, client_user, vendor, admin):
        project_id = await make_project(budget=10_000_000)

        vendor_view = (await services.projects.get_project_view(project_id, vendor))["project"]
        assert vendor_view["milestones"][0]["display_amount"] == 9_800_000
        assert vendor_view["budget_display"]["show_fee"] is False
        assert "ledger" not in vendor_view

        client_result = await services.projects.get_project_view(project_id, client_user)
        client_view = client_result["project"]
        assert client_result["user_role"] == "client"
        assert client_view["milestones"][0]["display_amount"] == 10_000_000
        assert client_view["budget_display"]["display_amount"] == 10_100_000
        assert client_view["statistics"]["funds_warning"]["required_funds"] == 11_000_000

        admin_view = (await services.projects.get_project_view(project_id, admin))["project"]
        assert admin_view["ledger"]["version"] == 1
        assert admin_view["milestones"][0]["display_breakdown"]["vendor_fee_amount"] == 200_000

    async def test_outsider_is_rejected(self, services, make_project, outsider):
        project_id = await make_project()
        with pytest.raises(AuthorizationError):
            await services.projects.get_project_view(project_id, outsider)

    async def test_ledger_view_is_admin_or_manager(self, services, make_project, vendor, admin):
        project_id = await make_project()
        with pytest.raises(AuthorizationError):
            await services.projects.get_ledger_view(project_id, vendor)
        view = await services.projects.get_ledger_view(project_id, admin)
        assert view["invariants"]["valid"] is True

    async def test_unknown_project(self, services, admin):
        with pytest.raises(NotFoundError):
            await services.projects.get_project_view("64b7f0000000000000000000", admin)


class TestUpdateAndDelete:
    async def test_update_basic_fields(self, services, make_project, admin):
        project_id = await make_project()
        result = await services.projects.update_project(project_id, admin, {"judul": "  Rumah Baru ", "budget": 1})
        assert result["project"]["judul"] == "Rumah Baru"
        assert result["project"]["base_total"] == 10_000_000

    async def test_empty_update(self, services, make_project, admin):
        project_id = await make_project()
        with pytest.raises(EscrowValidationError):
            await services.projects.update_project(project_id, admin, {"judul": " "})

    async def test_delete_cascades(self, services, make_project, make_manager, admin):
        project_id = await make_project()
        manager = await make_manager([project_id])

        await services.projects.delete_project(project_id, admin)

        for name in ("milestones", "termins", "retensi", "admin_data"):
            assert await services.db[name].count_documents({"project_id": project_id}) == 0
        user = await services.db.users.find_one({"email": manager["email"]})
        assert user["project_ids"] == []
        with pytest.raises(NotFoundError):
            await services.ctx.get_project(project_id)


class TestMilestoneCrud:
    async def test_create_within_remaining_percentage(self, services, make_project, milestone_ids, admin):
        project_id = await make_project(milestones=TWO_MILESTONES)
        _, second = await milestone_ids(project_id)

        with pytest.raises(EscrowValidationError) as exc:
            await services.projects.create_milestone(project_id, admin, "C", 10)
        assert exc.value.details["sisa_persentase"] == 0

        await services.projects.delete_milestone(second, admin)
        created = await services.projects.create_milestone(project_id, admin, "C", 50)
        milestone = created["milestone"]
        assert milestone["price"] == 5_000_000
        assert milestone["urutan"] == 2

        termin = await services.db.termins.find_one({"milestone_id": str(milestone["_id"])})
        assert termin["judul"] == "Termin 2: C"

    async def test_delete_removes_linked_termin_and_logs(self, services, make_project, milestone_ids, admin):
        project_id = await make_project(milestones=TWO_MILESTONES)
        _, second = await milestone_ids(project_id)
        await services.projects.delete_milestone(second, admin)
        created = await services.projects.create_milestone(project_id, admin, "C", 50)
        milestone_id = str(created["milestone"]["_id"])

        await services.projects.delete_milestone(milestone_id, admin)

        assert await services.db.termins.count_documents({"milestone_id": milestone_id}) == 0
        assert await services.db.logs.count_documents({"milestone_id": milestone_id}) == 0

    async def test_started_milestone_is_locked(self, services, make_project, fund_project, milestone_ids,
                                               vendor, admin):
        project_id = await make_project()
        await fund_project(project_id, 11_000_000)
        [milestone_id] = await milestone_ids(project_id)
        await services.milestones.perform(milestone_id, "start", vendor)

        with pytest.raises(StateGuardError):
            await services.projects.delete_milestone(milestone_id, admin)
        with pytest.raises(StateGuardError):
            await services.projects.update_milestone(milestone_id, vendor, judul="Baru")
        with pytest.raises(StateGuardError):
            await services.projects.update_milestone(milestone_id, admin, harga=5_000_000)

        renamed = await services.projects.update_milestone(milestone_id, admin, judul="Struktur Utama")
        assert renamed["milestone"]["judul"] == "Struktur Utama"

    async def test_vendor_edits_pending_price(self, services, make_project, milestone_ids, vendor):
        project_id = await make_project()
        [milestone_id] = await milestone_ids(project_id)
        result = await services.projects.update_milestone(milestone_id, vendor, harga=9_500_000)
        assert result["milestone"]["price"] == 9_500_000
        assert result["milestone"]["original_price"] == 9_500_000

    async def test_client_cannot_edit(self, services, make_project, milestone_ids, client_user):
        project_id = await make_project()
        [milestone_id] = await milestone_ids(project_id)
        with pytest.raises(AuthorizationError):
            await services.projects.update_milestone(milestone_id, client_user, judul="X")


class TestComments:
    async def test_party_comments_on_log(self, services, make_project, milestone_ids, fund_project,
                                         vendor, client_user):
        project_id = await make_project()
        await fund_project(project_id, 11_000_000)
        [milestone_id] = await milestone_ids(project_id)
        await services.milestones.perform(milestone_id, "start", vendor)
        log = await services.db.logs.find_one({"milestone_id": milestone_id})

        result = await services.projects.add_comment(str(log["_id"]), client_user, teks="Mulai kapan?")
        assert result["comment"]["nama"] == "Budi"

        detail = await services.projects.get_milestone_detail(milestone_id, vendor)
        commented = next(entry for entry in detail["milestone"]["logs"] if entry["_id"] == log["_id"])
        assert [c["teks"] for c in commented["comments"]] == ["Mulai kapan?"]

    async def test_outsider_cannot_comment(self, services, make_project, milestone_ids, fund_project,
                                           vendor, outsider):
        project_id = await make_project()
        await fund_project(project_id, 11_000_000)
        [milestone_id] = await milestone_ids(project_id)
        await services.milestones.perform(milestone_id, "start", vendor)
        log = await services.db.logs.find_one({"milestone_id": milestone_id})

        with pytest.raises(AuthorizationError):
            await services.projects.add_comment(str(log["_id"]), outsider, teks="Halo")

    async def test_empty_comment(self, services, client_user):
        with pytest.raises(EscrowValidationError):
            await services.projects.add_comment("64b7f0000000000000000000", client_user, teks=" ")


class TestManagers:
    async def test_crud(self, services, make_project, admin):
        project_id = await make_project()
        created = await services.managers.create_manager(admin, "Sari", "Sari@Adogalo.example.com", [project_id])
        manager_id = str(created["manager"]["_id"])
        assert created["manager"]["email"] == "sari@adogalo.example.com"

        [listed] = await services.managers.list_managers(admin)
        assert listed["projects"] == [{"id": project_id, "judul": "Rumah Tinggal Type 45"}]

        updated = await services.managers.update_manager(manager_id, admin, project_ids=[])
        assert updated["manager"]["project_ids"] == []

        await services.managers.delete_manager(manager_id, admin)
        assert await services.managers.list_managers(admin) == []

    async def test_duplicate_email(self, services, admin):
        await services.managers.create_manager(admin, "Sari", "sari@adogalo.example.com")
        with pytest.raises(EscrowValidationError):
            await services.managers.create_manager(admin, "Sari 2", "SARI@adogalo.example.com")

    async def test_admin_only(self, services, client_user):
        with pytest.raises(AuthorizationError):
            await services.managers.list_managers(client_user)
