"""
MILESTONE ENGINE

States:
    pending / pending_additional -> active -> waiting -> waiting_admin -> completed
                                              waiting -> complaint -> waiting (loop)

confirm-payment is the money-moving transition: it pays the vendor net of
fee and retention out of the escrow balance and, when it completes the last
open milestone of a project with agreed retention, starts the retention
countdown in the same transaction.
"""

from typing import Dict, Any, Optional
import logging

from adogalo.core.context import EscrowContext
from adogalo.core.errors import InsufficientFundsError
from adogalo.core.financial_calculator import (
    calculate_milestone_payment,
    check_client_funds_sufficient,
    format_currency,
    format_percent,
    CLIENT_FEE_PERCENT,
    VENDOR_FEE_PERCENT,
)
from adogalo.core.retensi_engine import RetensiEngine, RetensiStatus, RETENTION_ACTIVE_STATUSES
from adogalo.core.state_machine import StateMachine

logger = logging.getLogger(__name__)


class MilestoneStatus:
    PENDING = "pending"
    PENDING_ADDITIONAL = "pending_additional"
    ACTIVE = "active"
    WAITING = "waiting"
    COMPLAINT = "complaint"
    WAITING_ADMIN = "waiting_admin"
    COMPLETED = "completed"


milestone_machine = (
    StateMachine("milestone", "milestones")
    .register(
        "start", [MilestoneStatus.PENDING, MilestoneStatus.PENDING_ADDITIONAL], MilestoneStatus.ACTIVE,
        message="Milestone tidak dalam status yang bisa dimulai"
    )
    .register(
        "daily", [MilestoneStatus.ACTIVE], None,
        message="Milestone tidak dalam status aktif",
        description="Daily report, status unchanged"
    )
    .register(
        "finish", [MilestoneStatus.ACTIVE], MilestoneStatus.WAITING,
        message="Milestone tidak dalam status aktif"
    )
    .register(
        "complain", [MilestoneStatus.WAITING], MilestoneStatus.COMPLAINT,
        message="Milestone tidak dalam status menunggu"
    )
    .register(
        "fix", [MilestoneStatus.COMPLAINT], MilestoneStatus.WAITING,
        message="Milestone tidak dalam status komplain"
    )
    .register(
        "approve", [MilestoneStatus.WAITING], MilestoneStatus.WAITING_ADMIN,
        message="Milestone tidak dalam status menunggu"
    )
    .register(
        "confirm-payment", [MilestoneStatus.WAITING_ADMIN], MilestoneStatus.COMPLETED,
        message="Milestone tidak dalam status menunggu admin"
    )
)

ACTION_ACTORS = {
    "start": ("vendor", "Hanya vendor yang bisa memulai pekerjaan"),
    "daily": ("vendor", "Hanya vendor yang bisa upload laporan harian"),
    "finish": ("vendor", "Hanya vendor yang bisa mengajukan selesai"),
    "complain": ("client", "Hanya client yang bisa komplain"),
    "fix": ("vendor", "Hanya vendor yang bisa mengupload perbaikan"),
    "approve": ("client", "Hanya client yang bisa menyetujui"),
    "confirm-payment": ("admin", "Hanya admin yang bisa konfirmasi pembayaran"),
}


class MilestoneEngine:
    def __init__(self, ctx: EscrowContext, retensi_engine: RetensiEngine):
        self.ctx = ctx
        self.db = ctx.db
        self.retensi = retensi_engine

    async def perform(self, milestone_id: str, action: str, actor: Dict[str, Any],
                      catatan: Optional[str] = None, files: Optional[list] = None) -> Dict[str, Any]:
        milestone_machine.get_transition(action)
        milestone = await self.ctx.get_milestone(milestone_id)
        project_id = milestone["project_id"]

        async with self.ctx.transactions.project(project_id) as uow:
            session = uow.session
            milestone = await self.ctx.get_milestone(milestone_id, session)
            project = await self.ctx.get_project(project_id, session)

            access = await self.ctx.access.resolve(actor, project, session)
            role, message = ACTION_ACTORS[action]
            access.require(role, message=message)

            old_status = milestone["status"]
            handler = getattr(self, "_" + action.replace("-", "_"))
            result = await handler(uow, project, milestone, actor, catatan, list(files or []))

            await self.ctx.audit_action(
                actor, "MILESTONE", "MILESTONE", milestone["_id"], action.upper().replace("-", "_"),
                project_id=project_id,
                old_value={"status": old_status},
                new_value={"status": result["milestone"]["status"]},
                session=session
            )
            return result

    async def _log(self, uow, milestone, tipe, catatan, files=None, actor=None, amount=None):
        return await self.ctx.add_log(
            milestone["project_id"], tipe, catatan,
            milestone_id=str(milestone["_id"]),
            files=files,
            user_id=(actor or {}).get("user_id"),
            amount=amount,
            session=uow.session,
        )

    async def _start(self, uow, project, milestone, actor, catatan, files):
        milestone_machine.validate(milestone, "start")

        ledger = await self.ctx.ledger.get(milestone["project_id"], uow.session)
        funds = check_client_funds_sufficient(ledger.get("client_funds", 0), milestone["price"])
        if not funds.is_sufficient:
            raise InsufficientFundsError(
                funds.warning_message,
                required_funds=funds.required_funds,
                available=float(ledger.get("client_funds", 0)),
                shortage=funds.shortage,
            )

        updated = await milestone_machine.apply(
            self.db, milestone, "start", session=uow.session, now=self.ctx.now()
        )
        await self._log(uow, milestone, "system", "Pekerjaan dimulai", actor=actor)
        return {"message": "Pekerjaan berhasil dimulai", "milestone": updated}

    async def _daily(self, uow, project, milestone, actor, catatan, files):
        updated = await milestone_machine.apply(self.db, milestone, "daily", session=uow.session)
        await self._log(uow, milestone, "daily", catatan or "", files, actor=actor)
        return {"message": "Laporan harian berhasil diupload", "milestone": updated}

    async def _finish(self, uow, project, milestone, actor, catatan, files):
        updated = await milestone_machine.apply(
            self.db, milestone, "finish", session=uow.session, now=self.ctx.now()
        )
        await self._log(
            uow, milestone, "finish",
            catatan or "Pekerjaan selesai, menunggu persetujuan client", files, actor=actor
        )
        uow.queue_event("milestone.finished", {
            "client_email": project["client_email"],
            "project_title": project["judul"],
            "milestone_title": milestone["judul"],
        })
        return {"message": "Pekerjaan berhasil diajukan, menunggu persetujuan client", "milestone": updated}

    async def _complain(self, uow, project, milestone, actor, catatan, files):
        updated = await milestone_machine.apply(
            self.db, milestone, "complain", session=uow.session, now=self.ctx.now()
        )
        await self._log(uow, milestone, "complain", catatan or "", files, actor=actor)
        return {"message": "Komplain berhasil diajukan", "milestone": updated}

    async def _fix(self, uow, project, milestone, actor, catatan, files):
        updated = await milestone_machine.apply(
            self.db, milestone, "fix", session=uow.session, now=self.ctx.now()
        )
        await self._log(uow, milestone, "fix", catatan or "Perbaikan telah dilakukan", files, actor=actor)
        return {"message": "Perbaikan berhasil diupload, menunggu persetujuan client", "milestone": updated}

    async def _approve(self, uow, project, milestone, actor, catatan, files):
        updated = await milestone_machine.apply(
            self.db, milestone, "approve", session=uow.session, now=self.ctx.now()
        )
        await self._log(
            uow, milestone, "system", "Client menyetujui pekerjaan, menunggu konfirmasi admin", actor=actor
        )
        return {"message": "Pekerjaan disetujui, menunggu konfirmasi admin", "milestone": updated}

    async def _confirm_payment(self, uow, project, milestone, actor, catatan, files):
        session = uow.session
        now = self.ctx.now()
        project_id = milestone["project_id"]
        milestone_machine.validate(milestone, "confirm-payment")

        ledger = await self.ctx.ledger.get(project_id, session)
        retensi = await self.retensi.load_reconciled(project_id, session)

        retention_percent = 0
        if retensi and retensi.get("status") in RETENTION_ACTIVE_STATUSES:
            retention_percent = retensi.get("percent", 0)

        vendor_fee_percent = project.get("vendor_fee_percent", VENDOR_FEE_PERCENT)
        payment = calculate_milestone_payment(
            milestone["price"],
            retention_percent,
            project.get("client_fee_percent", CLIENT_FEE_PERCENT),
            vendor_fee_percent,
        )

        change = self.ctx.ledger.plan(
            ledger,
            {
                "vendor_paid": payment.vendor_net_amount,
                "admin_balance": -payment.vendor_net_amount,
                # retention stays inside admin_balance, only earmarked
                "retention_held": payment.retention_amount,
                "fee_earned": payment.vendor_fee_amount,
            },
            reason="milestone_payment",
        )

        updated = await milestone_machine.apply(
            self.db, milestone, "confirm-payment", session=session,
            extra_set={"paid_at": now}, now=now
        )
        ledger = await self.ctx.ledger.commit(change, session=session, now=now)

        detail = (
            "Pembayaran dikonfirmasi:\n"
            f"- Nilai Kotor: {format_currency(payment.gross_amount)}\n"
            f"- Fee Vendor ({format_percent(vendor_fee_percent, 0)}): {format_currency(payment.vendor_fee_amount)}\n"
            f"- Retensi ({format_percent(payment.retention_percent, 0)}): {format_currency(payment.retention_amount)}\n"
            f"- Diterima Vendor: {format_currency(payment.vendor_net_amount)}"
        )
        await self._log(uow, milestone, "admin", detail, actor=actor, amount=payment.vendor_fee_amount)

        milestones = await self.ctx.get_project_milestones(project_id, session)
        all_completed = bool(milestones) and all(
            m["status"] == MilestoneStatus.COMPLETED for m in milestones
        )
        if all_completed and retensi and retensi.get("status") == RetensiStatus.AGREED:
            retensi = await self.retensi.start_countdown(uow, retensi, now)

        return {
            "message": "Pembayaran berhasil dikonfirmasi",
            "milestone": updated,
            "payment": payment.to_dict(),
            "ledger": ledger,
        }
