"""
TERMIN (INSTALLMENT) ENGINE

States: unpaid -> pending_confirmation -> paid
                  pending_confirmation -> unpaid (cancel)
        unpaid -> refunded (reduction termins only)

Money flows IN on confirm_payment (client -> escrow) and OUT on
process_refund (escrow -> client). Paid and refunded termins are terminal
and never touched by regenerate/reconfigure.
"""

from datetime import datetime
from typing import Dict, Any, Optional, List
import logging

from adogalo.core.context import EscrowContext
from adogalo.core.documents import to_object_id
from adogalo.core.errors import InsufficientFundsError, InvariantViolationError, NotFoundError, EscrowValidationError
from adogalo.core.financial_calculator import calculate_termin_amount, format_currency
from adogalo.core.financial_precision import to_decimal, to_float, validate_positive
from adogalo.core.state_machine import StateMachine

logger = logging.getLogger(__name__)


class TerminStatus:
    UNPAID = "unpaid"
    PENDING_CONFIRMATION = "pending_confirmation"
    PAID = "paid"
    REFUNDED = "refunded"


class TerminType:
    MAIN = "main"
    ADDITIONAL = "additional"
    REDUCTION = "reduction"


async def _not_reduction(termin, context):
    if termin.get("type") == TerminType.REDUCTION:
        return False, "Termin pengurangan hanya bisa diproses sebagai pengembalian dana"
    return True, ""


async def _is_reduction(termin, context):
    if termin.get("type") != TerminType.REDUCTION:
        return False, "Hanya termin pengurangan pekerjaan yang bisa diproses pengembalian"
    return True, ""


termin_machine = (
    StateMachine("termin", "termins")
    .register(
        "request_payment", [TerminStatus.UNPAID], TerminStatus.PENDING_CONFIRMATION,
        guard=_not_reduction, message="Termin sudah diproses",
        description="Client requests to pay the termin"
    )
    .register(
        "cancel_request", [TerminStatus.PENDING_CONFIRMATION], TerminStatus.UNPAID,
        message="Termin tidak bisa dibatalkan"
    )
    .register(
        "confirm_payment", [TerminStatus.PENDING_CONFIRMATION], TerminStatus.PAID,
        message="Termin tidak dalam status menunggu konfirmasi",
        description="Admin/manager confirms the client transfer"
    )
    .register(
        "process_refund", [TerminStatus.UNPAID], TerminStatus.REFUNDED,
        guard=_is_reduction, message="Pengembalian untuk termin ini sudah diproses",
        description="Refund a reduction termin to the client"
    )
)

ACTION_ACTORS = {
    "request_payment": (("client", "admin"), "Hanya client yang bisa membayar termin"),
    "cancel_request": (("client", "admin"), "Tidak memiliki akses"),
    "confirm_payment": (
        ("admin", "manager"),
        "Hanya admin atau manager yang bisa konfirmasi pembayaran termin",
    ),
    "process_refund": (
        ("admin", "manager"),
        "Hanya admin atau manager yang bisa memproses pengembalian dana",
    ),
}


def new_termin_doc(
    project_id: str,
    judul: str,
    base_amount,
    termin_type: str,
    client_fee_percent,
    now: datetime,
    terkait_id: Optional[str] = None,
    milestone_id: Optional[str] = None
) -> Dict[str, Any]:
    amounts = calculate_termin_amount(base_amount, client_fee_percent)
    return {
        "project_id": project_id,
        "judul": judul,
        "base_amount": amounts["base_amount"],
        "type": termin_type,
        "fee_client_amount": amounts["client_fee_amount"],
        "total_with_fee": amounts["total_with_fee"],
        "status": TerminStatus.UNPAID,
        "terkait_id": terkait_id,
        "milestone_id": milestone_id,
        "paid_at": None,
        "created_at": now,
        "updated_at": now,
    }


async def delete_termins(ctx: EscrowContext, actor: Dict[str, Any], query: Dict[str, Any], session=None) -> int:
    """
    Delete the termins matching `query`, one audited DELETE per termin.

    The audit guard refuses termins that already moved money, so only
    unpaid ones can go.
    """
    termins = await ctx.db.termins.find(query, session=session).to_list(length=None)
    for termin in termins:
        await ctx.audit_action(
            actor, "TERMIN_MANAGEMENT", "TERMIN", termin["_id"], "DELETE",
            project_id=termin["project_id"],
            old_value={"status": termin["status"], "judul": termin["judul"],
                       "total_with_fee": termin["total_with_fee"]},
            session=session
        )
    if not termins:
        return 0
    result = await ctx.db.termins.delete_many(
        {"_id": {"$in": [t["_id"] for t in termins]}, "status": TerminStatus.UNPAID}, session=session
    )
    return result.deleted_count


class TerminEngine:
    def __init__(self, ctx: EscrowContext):
        self.ctx = ctx
        self.db = ctx.db

    async def list_termins(self, project_id: str, actor: Dict[str, Any]) -> List[Dict[str, Any]]:
        project = await self.ctx.get_project(project_id)
        access = await self.ctx.access.resolve(actor, project)
        access.require("admin", "manager", "client", "vendor")
        return await self.db.termins.find({"project_id": project_id}).sort(
            "created_at", 1
        ).to_list(length=None)

    async def perform(self, project_id: str, termin_id: str, action: str, actor: Dict[str, Any]) -> Dict[str, Any]:
        termin_machine.get_transition(action)
        termin_oid = to_object_id(termin_id, "Termin tidak ditemukan")
        await self.ctx.get_project(project_id)

        async with self.ctx.transactions.project(project_id) as uow:
            session = uow.session
            project = await self.ctx.get_project(project_id, session)
            termin = await self.db.termins.find_one(
                {"_id": termin_oid, "project_id": project_id}, session=session
            )
            if not termin:
                raise NotFoundError("Termin tidak ditemukan", details={"termin_id": termin_id})

            access = await self.ctx.access.resolve(actor, project, session)
            roles, message = ACTION_ACTORS[action]
            access.require(*roles, message=message)

            handler = getattr(self, f"_{action}")
            return await handler(uow, project, termin, actor)

    async def _request_payment(self, uow, project, termin, actor):
        updated = await termin_machine.apply(
            self.db, termin, "request_payment", session=uow.session, now=self.ctx.now()
        )
        uow.queue_event("termin.payment_requested", {
            "project_title": project["judul"],
            "termin_title": termin["judul"],
            "client_name": project.get("client_name"),
        })
        await self._audit(actor, updated, "REQUEST_PAYMENT", termin, uow.session)
        return {"message": "Permintaan pembayaran termin berhasil dikirim", "termin": updated}

    async def _cancel_request(self, uow, project, termin, actor):
        updated = await termin_machine.apply(
            self.db, termin, "cancel_request", session=uow.session, now=self.ctx.now()
        )
        await self._audit(actor, updated, "CANCEL_REQUEST", termin, uow.session)
        return {"message": "Permintaan pembayaran dibatalkan", "termin": updated}

    async def _confirm_payment(self, uow, project, termin, actor):
        session = uow.session
        now = self.ctx.now()
        termin_machine.validate(termin, "confirm_payment")

        total = termin["total_with_fee"]
        ledger = await self.ctx.ledger.get(termin["project_id"], session)
        change = self.ctx.ledger.plan(
            ledger,
            {"client_funds": total, "admin_balance": total},
            reason="termin_payment",
        )

        updated = await termin_machine.apply(
            self.db, termin, "confirm_payment", session=session,
            extra_set={"paid_at": now}, now=now
        )
        ledger = await self.ctx.ledger.commit(change, session=session, now=now)

        await self.ctx.add_log(
            termin["project_id"], "system",
            f'Termin "{termin["judul"]}" sebesar {format_currency(total)} telah dibayar oleh client',
            amount=termin.get("fee_client_amount", 0),
            user_id=actor.get("user_id"),
            session=session, now=now
        )
        uow.queue_event("termin.paid", {
            "client_email": project["client_email"],
            "project_title": project["judul"],
            "termin_title": termin["judul"],
        })
        await self._audit(actor, updated, "CONFIRM_PAYMENT", termin, session, ledger=ledger)
        return {"message": "Pembayaran termin berhasil dikonfirmasi", "termin": updated, "ledger": ledger}

    async def _process_refund(self, uow, project, termin, actor):
        session = uow.session
        now = self.ctx.now()
        termin_machine.validate(termin, "process_refund")
        await termin_machine.check_guard(
            termin, termin_machine.get_transition("process_refund"), {}
        )

        refund = abs(to_decimal(termin["total_with_fee"]))
        ledger = await self.ctx.ledger.get(termin["project_id"], session)
        available = to_decimal(ledger.get("client_funds", 0))

        if available < refund:
            raise InsufficientFundsError(
                f"Dana client tidak mencukupi untuk pengembalian (tersedia: {format_currency(available)}, "
                f"diperlukan: {format_currency(refund)})",
                required_funds=to_float(refund),
                available=to_float(available),
                shortage=to_float(refund - available),
            )

        try:
            change = self.ctx.ledger.plan(
                ledger,
                {"client_funds": -refund, "admin_balance": -refund},
                reason="termin_refund",
            )
        except InvariantViolationError as e:
            balance = to_decimal(ledger.get("admin_balance", 0)) - to_decimal(ledger.get("retention_held", 0))
            raise InsufficientFundsError(
                "Saldo escrow tidak mencukupi untuk pengembalian dana",
                required_funds=to_float(refund),
                available=to_float(balance),
                shortage=to_float(refund - balance),
            ) from e

        updated = await termin_machine.apply(
            self.db, termin, "process_refund", session=session, now=now
        )
        ledger = await self.ctx.ledger.commit(change, session=session, now=now)

        await self.ctx.add_log(
            termin["project_id"], "refund",
            f'Pengembalian dana "{termin["judul"]}" sebesar {format_currency(refund)} '
            f'telah dikembalikan ke client',
            user_id=actor.get("user_id"),
            session=session, now=now
        )
        uow.queue_event("termin.refunded", {
            "client_email": project["client_email"],
            "project_title": project["judul"],
            "termin_title": termin["judul"],
            "amount": format_currency(refund),
        })
        await self._audit(actor, updated, "PROCESS_REFUND", termin, session, ledger=ledger)
        return {"message": "Pengembalian dana berhasil diproses", "termin": updated, "ledger": ledger}

    # =========================================================================
    # BULK REGENERATE / RECONFIGURE (admin)
    # =========================================================================

    async def regenerate(self, project_id: str, actor: Dict[str, Any]) -> Dict[str, Any]:
        """
        Rebuild unpaid main termins from the current non-additional milestones.
        Milestones already covered by a paid or pending termin keep it.
        """
        self.ctx.access.require_admin(actor, "Hanya admin yang bisa mengatur termin")
        await self.ctx.get_project(project_id)

        async with self.ctx.transactions.project(project_id) as uow:
            session = uow.session
            now = self.ctx.now()
            project = await self.ctx.get_project(project_id, session)

            removed = await delete_termins(
                self.ctx, actor,
                {"project_id": project_id, "type": TerminType.MAIN, "status": TerminStatus.UNPAID},
                session=session
            )
            kept = await self.db.termins.find(
                {"project_id": project_id, "type": TerminType.MAIN}, session=session
            ).to_list(length=None)
            covered = {t.get("milestone_id") for t in kept if t.get("milestone_id")}

            milestones = await self.db.milestones.find(
                {"project_id": project_id, "is_additional_work": False}, session=session
            ).sort("urutan", 1).to_list(length=None)

            created = []
            for milestone in milestones:
                milestone_id = str(milestone["_id"])
                if milestone_id in covered:
                    continue
                doc = new_termin_doc(
                    project_id,
                    f"Termin {milestone['urutan']}: {milestone['judul']}",
                    milestone["price"],
                    TerminType.MAIN,
                    project.get("client_fee_percent", 1),
                    now,
                    milestone_id=milestone_id,
                )
                result = await self.db.termins.insert_one(doc, session=session)
                doc["_id"] = result.inserted_id
                created.append(doc)

            logger.info(
                f"[TERMIN] Regenerated project:{project_id}: removed {removed}, "
                f"created {len(created)}, kept {len(kept)}"
            )
            await self.ctx.audit_action(
                actor, "TERMIN_MANAGEMENT", "PROJECT", project_id, "REGENERATE_TERMINS",
                project_id=project_id,
                new_value={"created": len(created), "removed": removed},
                session=session
            )

        return {"message": "Termin berhasil diperbarui", "created_count": len(created), "termins": created}

    async def reconfigure(self, project_id: str, configs: List[Dict[str, Any]], actor: Dict[str, Any]) -> Dict[str, Any]:
        """Replace unpaid main termins with a hand-edited list of {judul, base_amount}."""
        self.ctx.access.require_admin(actor, "Hanya admin yang bisa mengatur termin")
        if not configs:
            raise EscrowValidationError("Konfigurasi termin diperlukan")
        for index, config in enumerate(configs, start=1):
            if not (config.get("judul") or "").strip():
                raise EscrowValidationError(
                    f"Judul termin ke-{index} harus diisi", details={"index": index}
                )
            validate_positive(config.get("base_amount"), f"termins[{index}].base_amount")

        await self.ctx.get_project(project_id)

        async with self.ctx.transactions.project(project_id) as uow:
            session = uow.session
            now = self.ctx.now()
            project = await self.ctx.get_project(project_id, session)

            removed = await delete_termins(
                self.ctx, actor,
                {"project_id": project_id, "type": TerminType.MAIN, "status": TerminStatus.UNPAID},
                session=session
            )

            created = []
            for config in configs:
                doc = new_termin_doc(
                    project_id,
                    config["judul"].strip(),
                    config["base_amount"],
                    TerminType.MAIN,
                    project.get("client_fee_percent", 1),
                    now,
                    milestone_id=config.get("milestone_id"),
                )
                result = await self.db.termins.insert_one(doc, session=session)
                doc["_id"] = result.inserted_id
                created.append(doc)

            await self.ctx.audit_action(
                actor, "TERMIN_MANAGEMENT", "PROJECT", project_id, "RECONFIGURE_TERMINS",
                project_id=project_id,
                new_value={"created": len(created), "removed": removed},
                session=session
            )

        return {"message": "Konfigurasi termin berhasil diperbarui", "termins": created}

    async def _audit(self, actor, updated, action_type, old, session, ledger=None):
        new_value = {"status": updated["status"]}
        if ledger is not None:
            new_value["ledger_version"] = ledger.get("version")
        await self.ctx.audit_action(
            actor, "TERMIN", "TERMIN", updated["_id"], action_type,
            project_id=updated["project_id"],
            old_value={"status": old["status"]},
            new_value=new_value,
            session=session
        )
