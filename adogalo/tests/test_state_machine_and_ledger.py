"""
State machine compare-and-set and ledger invariants
"""
import pytest
from bson import ObjectId

from adogalo.core.errors import (
    ConcurrencyConflictError,
    EscrowValidationError,
    InvariantViolationError,
    StateGuardError,
)
from adogalo.core.invariant_validator import collect_ledger_violations
from adogalo.core.milestone_engine import milestone_machine, MilestoneStatus
from adogalo.core.retensi_engine import retensi_machine
from adogalo.core.state_machine import InvalidTransitionError, UnknownActionError
from adogalo.core.termin_engine import termin_machine, TerminStatus


class TestTransitionTables:
    """Registered transitions per entity"""

    def test_milestone_graph(self):
        assert sorted(milestone_machine.get_allowed_actions(MilestoneStatus.WAITING)) == ["approve", "complain"]
        assert milestone_machine.get_allowed_actions(MilestoneStatus.COMPLETED) == []

    def test_terminal_termin_states(self):
        assert termin_machine.get_allowed_actions(TerminStatus.PAID) == []
        assert termin_machine.get_allowed_actions(TerminStatus.REFUNDED) == []

    def test_release_sources(self):
        for status in ("countdown", "waiting_confirmation", "pending_release"):
            assert retensi_machine.can_apply(status, "release")
        assert not retensi_machine.can_apply("complaint_paused", "release")

    def test_unknown_action_is_validation_error(self):
        with pytest.raises(UnknownActionError) as exc:
            milestone_machine.get_transition("teleport")
        assert isinstance(exc.value, EscrowValidationError)
        assert exc.value.message == "Aksi tidak valid"

    def test_wrong_state_is_state_guard(self):
        with pytest.raises(InvalidTransitionError) as exc:
            milestone_machine.validate({"_id": ObjectId(), "status": "pending"}, "approve")
        assert isinstance(exc.value, StateGuardError)


class TestCompareAndSet:
    """apply() only writes when the stored status still matches"""

    async def test_apply_moves_status(self, db, clock):
        doc = {"_id": ObjectId(), "status": "pending"}
        await db.milestones.insert_one(dict(doc))
        updated = await milestone_machine.apply(db, doc, "start", now=clock())
        assert updated["status"] == "active"
        assert updated["updated_at"] == clock()

    async def test_stale_copy_loses_the_race(self, db, clock):
        doc = {"_id": ObjectId(), "status": "pending"}
        await db.milestones.insert_one(dict(doc))
        await milestone_machine.apply(db, doc, "start", now=clock())

        # second writer still holds the pending copy
        with pytest.raises(InvalidTransitionError):
            await milestone_machine.apply(db, doc, "start", now=clock())

    async def test_status_preserving_action_does_not_write(self, db):
        doc = {"_id": ObjectId(), "status": "active"}
        assert await milestone_machine.apply(db, doc, "daily") is doc


class TestLedgerInvariants:
    def test_valid_values(self):
        assert collect_ledger_violations({
            "client_funds": 100, "vendor_paid": 0, "admin_balance": 100,
            "retention_held": 50, "fee_earned": 0,
        }) == []

    def test_negative_and_retention_rules(self):
        violations = collect_ledger_violations({
            "client_funds": -1, "admin_balance": 10, "retention_held": 20,
        })
        types = {v["type"] for v in violations}
        assert types == {"NEGATIVE_CLIENT_FUNDS", "RETENTION_EXCEEDS_BALANCE"}


class TestLedgerService:
    """plan validates before anything is written; commit is versioned"""

    async def test_plan_rejects_overdraft(self, services):
        ledger = await services.ctx.ledger.create("p-1")
        with pytest.raises(InvariantViolationError):
            services.ctx.ledger.plan(ledger, {"admin_balance": -1}, reason="test")
        stored = await services.ctx.ledger.get("p-1")
        assert stored["admin_balance"] == 0
        assert stored["version"] == 1

    async def test_commit_increments_version(self, services):
        ledger = await services.ctx.ledger.create("p-2")
        change = services.ctx.ledger.plan(
            ledger, {"client_funds": 1_010_000, "admin_balance": 1_010_000}, reason="termin_payment"
        )
        committed = await services.ctx.ledger.commit(change)
        assert committed["version"] == 2
        assert committed["client_funds"] == 1_010_000

    async def test_stale_version_conflicts(self, services):
        ledger = await services.ctx.ledger.create("p-3")
        first = services.ctx.ledger.plan(ledger, {"client_funds": 10, "admin_balance": 10}, reason="a")
        second = services.ctx.ledger.plan(ledger, {"client_funds": 20, "admin_balance": 20}, reason="b")
        await services.ctx.ledger.commit(first)

        with pytest.raises(ConcurrencyConflictError):
            await services.ctx.ledger.commit(second)
        assert (await services.ctx.ledger.get("p-3"))["client_funds"] == 10

    async def test_unknown_field_is_programming_error(self, services):
        ledger = await services.ctx.ledger.create("p-4")
        with pytest.raises(ValueError):
            services.ctx.ledger.plan(ledger, {"bonus": 1}, reason="test")
