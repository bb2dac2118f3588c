"""
RETENSI (RETENTION) ENGINE

States:
    none -> proposed -> agreed -> countdown <-> complaint_paused <-> waiting_confirmation
    countdown -> pending_release (time based, evaluated on read) -> paid

The countdown survives complaint cycles without losing elapsed time:
- complain freezes an absolute end_date computed from the remaining
  milliseconds (end_date = now + (end_date - now))
- fix and reject_fix never touch end_date
- confirm_fix resumes against the same stored end_date

Expiry is reconciled lazily. reconcile_retensi() is pure, and the write-back
is a compare-and-set on status == countdown so a second read never logs
countdown_finished again.
"""

from bson import ObjectId
from datetime import datetime, timedelta
from typing import Dict, Any, Optional, List
import logging

from adogalo.core.clock import ceil_days
from adogalo.core.context import EscrowContext
from adogalo.core.errors import EscrowValidationError, NotFoundError
from adogalo.core.financial_calculator import format_currency, format_percent
from adogalo.core.financial_precision import to_decimal, to_float, safe_add, calculate_percentage
from adogalo.core.state_machine import StateMachine, InvalidTransitionError

logger = logging.getLogger(__name__)


class RetensiStatus:
    NONE = "none"
    PROPOSED = "proposed"
    AGREED = "agreed"
    COUNTDOWN = "countdown"
    COMPLAINT_PAUSED = "complaint_paused"
    WAITING_CONFIRMATION = "waiting_confirmation"
    PENDING_RELEASE = "pending_release"
    PAID = "paid"


# Retention is deducted from milestone payments only while in one of these
RETENTION_ACTIVE_STATUSES = (
    RetensiStatus.AGREED,
    RetensiStatus.COUNTDOWN,
    RetensiStatus.COMPLAINT_PAUSED,
    RetensiStatus.WAITING_CONFIRMATION,
    RetensiStatus.PENDING_RELEASE,
)

retensi_machine = (
    StateMachine("retensi", "retensi")
    .register(
        "propose", [RetensiStatus.NONE], RetensiStatus.PROPOSED,
        message="Retensi sudah diajukan atau disepakati",
        description="Vendor proposes retention terms"
    )
    .register(
        "approve", [RetensiStatus.PROPOSED], RetensiStatus.AGREED,
        message="Tidak ada pengajuan retensi yang bisa disetujui"
    )
    .register(
        "reject", [RetensiStatus.PROPOSED], RetensiStatus.NONE,
        message="Tidak ada pengajuan retensi yang bisa ditolak"
    )
    .register(
        "start_countdown", [RetensiStatus.AGREED], RetensiStatus.COUNTDOWN,
        message="Retensi belum disepakati",
        description="System: every milestone completed"
    )
    .register(
        "complain", [RetensiStatus.COUNTDOWN], RetensiStatus.COMPLAINT_PAUSED,
        message="Tidak dalam masa retensi"
    )
    .register(
        "fix", [RetensiStatus.COMPLAINT_PAUSED], RetensiStatus.WAITING_CONFIRMATION,
        message="Tidak ada komplain yang perlu diperbaiki"
    )
    .register(
        "confirm_fix", [RetensiStatus.WAITING_CONFIRMATION], RetensiStatus.COUNTDOWN,
        message="Tidak menunggu konfirmasi"
    )
    .register(
        "reject_fix", [RetensiStatus.WAITING_CONFIRMATION], RetensiStatus.COMPLAINT_PAUSED,
        message="Tidak menunggu konfirmasi"
    )
    .register(
        "finish_countdown", [RetensiStatus.COUNTDOWN], RetensiStatus.PENDING_RELEASE,
        description="System: countdown reached end_date"
    )
    .register(
        "release",
        [RetensiStatus.COUNTDOWN, RetensiStatus.WAITING_CONFIRMATION, RetensiStatus.PENDING_RELEASE],
        RetensiStatus.PAID,
        message="Retensi tidak bisa di-release"
    )
)

# Actions callers may request; start_countdown and finish_countdown are system-only
PUBLIC_ACTIONS = ("propose", "approve", "reject", "complain", "fix", "confirm_fix", "reject_fix", "release")

ACTION_ACTORS = {
    "propose": ("vendor", "Hanya vendor yang bisa mengajukan retensi"),
    "approve": ("client", "Hanya client yang bisa menyetujui retensi"),
    "reject": ("client", "Hanya client yang bisa menolak retensi"),
    "complain": ("client", "Hanya client yang bisa komplain"),
    "fix": ("vendor", "Hanya vendor yang bisa upload perbaikan"),
    "confirm_fix": ("client", "Hanya client yang bisa konfirmasi"),
    "reject_fix": ("client", "Hanya client yang bisa menolak perbaikan"),
    "release": ("admin", "Hanya admin yang bisa me-release retensi"),
}

EVIDENCE_REQUIRED = ("complain", "fix", "reject_fix")


def new_retensi_doc(project_id: str, now: datetime, percent=0, days=0, value=0,
                    status: str = RetensiStatus.NONE) -> Dict[str, Any]:
    return {
        "project_id": project_id,
        "status": status,
        "percent": float(to_decimal(percent)),
        "days": int(days),
        "value": to_float(value),
        "start_date": None,
        "end_date": None,
        "remaining_days": None,
        "paused_time": None,
        "fix_submitted_time": None,
        "logs": [],
        "created_at": now,
        "updated_at": now,
    }


def retensi_log(tipe: str, catatan: str, now: datetime, files: Optional[List[str]] = None) -> Dict[str, Any]:
    return {
        "_id": ObjectId(),
        "tipe": tipe,
        "catatan": catatan,
        "files": list(files or []),
        "tanggal": now,
    }


def countdown_end(retensi: Dict[str, Any]) -> Optional[datetime]:
    """Stored end_date, or start_date + remaining_days for records without one."""
    if retensi.get("end_date") is not None:
        return retensi["end_date"]
    if retensi.get("start_date") is not None and retensi.get("remaining_days") is not None:
        return retensi["start_date"] + timedelta(days=retensi["remaining_days"])
    return None


def reconcile_retensi(retensi: Optional[Dict[str, Any]], now: datetime) -> Optional[Dict[str, Any]]:
    """
    Apply the time-based countdown -> pending_release transition.

    Returns the same object when nothing changes, otherwise a new dict with
    the countdown_finished log appended. Never writes.
    """
    if not retensi or retensi.get("status") != RetensiStatus.COUNTDOWN:
        return retensi

    end_date = countdown_end(retensi)
    if end_date is None or now < end_date:
        return retensi

    reconciled = dict(retensi)
    reconciled["status"] = RetensiStatus.PENDING_RELEASE
    reconciled["remaining_days"] = 0
    reconciled["end_date"] = None
    reconciled["updated_at"] = now
    reconciled["logs"] = list(retensi.get("logs", [])) + [
        retensi_log(
            "countdown_finished",
            "Masa retensi selesai. Menunggu admin mencairkan dana ke vendor.",
            now,
        )
    ]
    return reconciled


class RetensiEngine:
    def __init__(self, ctx: EscrowContext):
        self.ctx = ctx
        self.db = ctx.db

    # =========================================================================
    # READ PATH (lazy reconcile)
    # =========================================================================

    async def load_reconciled(self, project_id: str, session=None) -> Optional[Dict[str, Any]]:
        retensi = await self.ctx.get_retensi(project_id, session)
        reconciled = reconcile_retensi(retensi, self.ctx.now())
        if reconciled is retensi:
            return retensi

        finished_log = reconciled["logs"][-1]
        try:
            updated = await retensi_machine.apply(
                self.db, retensi, "finish_countdown",
                session=session,
                extra_set={"remaining_days": 0, "end_date": None},
                extra_update={"$push": {"logs": finished_log}},
                now=reconciled["updated_at"]
            )
        except InvalidTransitionError:
            # Another reader already wrote the expiry
            return await self.ctx.get_retensi(project_id, session)

        logger.info(f"[RETENSI] Countdown finished for project:{project_id}")
        return updated

    async def get(self, project_id: str, actor: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        project = await self.ctx.get_project(project_id)
        access = await self.ctx.access.resolve(actor, project)
        access.require("admin", "manager", "client", "vendor")

        async with self.ctx.transactions.project(project_id) as uow:
            retensi = await self.load_reconciled(project_id, uow.session)

        if retensi is not None:
            retensi = dict(retensi)
            retensi["logs"] = sorted(retensi.get("logs", []), key=lambda log: log["tanggal"], reverse=True)
        return retensi

    # =========================================================================
    # SYSTEM TRANSITION (called by the milestone engine)
    # =========================================================================

    async def start_countdown(self, uow, retensi: Dict[str, Any], now: datetime) -> Dict[str, Any]:
        days = int(retensi.get("days") or 0)
        log = retensi_log(
            "countdown_start",
            f"Semua pekerjaan selesai. Masa retensi {days} hari dimulai.",
            now,
        )
        updated = await retensi_machine.apply(
            self.db, retensi, "start_countdown",
            session=uow.session,
            extra_set={
                "start_date": now,
                "end_date": now + timedelta(days=days),
                "remaining_days": days,
                "paused_time": None,
                "fix_submitted_time": None,
            },
            extra_update={"$push": {"logs": log}},
            now=now
        )
        logger.info(f"[RETENSI] Countdown started for project:{retensi['project_id']} ({days} days)")
        return updated

    # =========================================================================
    # ACTIONS
    # =========================================================================

    def _validate_payload(self, action: str, payload: Dict[str, Any]):
        if action not in PUBLIC_ACTIONS:
            raise EscrowValidationError("Aksi tidak valid", details={"action": action})

        if action == "propose":
            percent = payload.get("percent")
            if percent is None or not (0 < to_decimal(percent) <= 100):
                raise EscrowValidationError("Persentase retensi tidak valid", details={"field": "percent"})
            days = payload.get("days")
            if days is None or int(days) <= 0:
                raise EscrowValidationError("Durasi retensi tidak valid", details={"field": "days"})

        if action in EVIDENCE_REQUIRED:
            if not (payload.get("catatan") or "").strip():
                raise EscrowValidationError("Catatan wajib diisi", details={"field": "catatan"})
            if not payload.get("files"):
                raise EscrowValidationError("Bukti foto/file wajib dilampirkan", details={"field": "files"})

    async def perform(self, project_id: str, action: str, actor: Dict[str, Any],
                      payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        payload = payload or {}
        self._validate_payload(action, payload)
        await self.ctx.get_project(project_id)

        async with self.ctx.transactions.project(project_id) as uow:
            session = uow.session
            project = await self.ctx.get_project(project_id, session)

            access = await self.ctx.access.resolve(actor, project, session)
            role, message = ACTION_ACTORS[action]
            access.require(role, message=message)

            retensi = await self.load_reconciled(project_id, session)
            if retensi is None:
                raise NotFoundError("Data retensi tidak ditemukan", details={"project_id": project_id})

            handler = getattr(self, f"_{action}")
            result = await handler(uow, project, retensi, payload)

            await self.ctx.audit_action(
                actor, "RETENSI", "RETENSI", retensi["_id"], action.upper(),
                project_id=project_id,
                old_value={"status": retensi["status"]},
                new_value={"status": result["retensi"]["status"]},
                session=session
            )
            return result

    async def _propose(self, uow, project, retensi, payload):
        now = self.ctx.now()
        percent = to_decimal(payload["percent"])
        days = int(payload["days"])

        milestones = await self.ctx.get_project_milestones(str(project["_id"]), uow.session)
        total_value = safe_add(*[m.get("price", 0) for m in milestones])
        value = calculate_percentage(total_value, percent)

        log = retensi_log(
            "proposed",
            f"Vendor mengajukan retensi {format_percent(percent)} selama {days} hari",
            now,
        )
        updated = await retensi_machine.apply(
            self.db, retensi, "propose", session=uow.session,
            extra_set={"percent": float(percent), "days": days, "value": to_float(value)},
            extra_update={"$push": {"logs": log}},
            now=now
        )
        uow.queue_event("retensi.proposed", {
            "client_email": project["client_email"],
            "project_title": project["judul"],
            "percent": float(percent),
            "days": days,
            "value": format_currency(value),
        })
        return {"message": "Pengajuan retensi berhasil dikirim", "retensi": updated}

    async def _approve(self, uow, project, retensi, payload):
        now = self.ctx.now()
        updated = await retensi_machine.apply(
            self.db, retensi, "approve", session=uow.session,
            extra_update={"$push": {"logs": retensi_log("approved", "Client menyetujui pengajuan retensi", now)}},
            now=now
        )
        uow.queue_event("retensi.approved", {
            "vendor_email": project["vendor_email"],
            "project_title": project["judul"],
        })
        return {"message": "Retensi berhasil disetujui", "retensi": updated}

    async def _reject(self, uow, project, retensi, payload):
        now = self.ctx.now()
        updated = await retensi_machine.apply(
            self.db, retensi, "reject", session=uow.session,
            extra_set={"percent": 0.0, "days": 0, "value": 0.0},
            extra_update={"$push": {"logs": retensi_log("rejected", "Client menolak pengajuan retensi", now)}},
            now=now
        )
        uow.queue_event("retensi.rejected", {
            "vendor_email": project["vendor_email"],
            "project_title": project["judul"],
        })
        return {"message": "Retensi ditolak", "retensi": updated}

    async def _complain(self, uow, project, retensi, payload):
        now = self.ctx.now()
        retensi_machine.validate(retensi, "complain")

        # Reconciled above, so end_date is still in the future here
        remaining = countdown_end(retensi) - now
        log = retensi_log("complaint", payload["catatan"], now, payload.get("files"))
        updated = await retensi_machine.apply(
            self.db, retensi, "complain", session=uow.session,
            extra_set={
                "paused_time": now,
                "end_date": now + remaining,
                "remaining_days": ceil_days(remaining),
            },
            extra_update={"$push": {"logs": log}},
            now=now
        )
        uow.queue_event("retensi.complaint", {
            "vendor_email": project["vendor_email"],
            "project_title": project["judul"],
            "catatan": payload["catatan"],
        })
        return {"message": "Komplain berhasil diajukan, timer di-pause", "retensi": updated}

    async def _fix(self, uow, project, retensi, payload):
        now = self.ctx.now()
        log = retensi_log("fix_submitted", payload["catatan"], now, payload.get("files"))
        updated = await retensi_machine.apply(
            self.db, retensi, "fix", session=uow.session,
            extra_set={"fix_submitted_time": now},
            extra_update={"$push": {"logs": log}},
            now=now
        )
        uow.queue_event("retensi.fix_submitted", {
            "client_email": project["client_email"],
            "project_title": project["judul"],
        })
        return {"message": "Perbaikan berhasil diupload, menunggu konfirmasi client", "retensi": updated}

    async def _confirm_fix(self, uow, project, retensi, payload):
        now = self.ctx.now()
        log = retensi_log("fix_confirmed", "Client mengkonfirmasi perbaikan, countdown dilanjutkan", now)
        updated = await retensi_machine.apply(
            self.db, retensi, "confirm_fix", session=uow.session,
            extra_set={"paused_time": None, "fix_submitted_time": None},
            extra_update={"$push": {"logs": log}},
            now=now
        )
        return {"message": "Perbaikan dikonfirmasi, countdown dilanjutkan", "retensi": updated}

    async def _reject_fix(self, uow, project, retensi, payload):
        now = self.ctx.now()
        log = retensi_log("fix_rejected", payload["catatan"], now, payload.get("files"))
        updated = await retensi_machine.apply(
            self.db, retensi, "reject_fix", session=uow.session,
            extra_set={"fix_submitted_time": None},
            extra_update={"$push": {"logs": log}},
            now=now
        )
        uow.queue_event("retensi.fix_rejected", {
            "vendor_email": project["vendor_email"],
            "project_title": project["judul"],
            "catatan": payload["catatan"],
        })
        return {"message": "Perbaikan ditolak, vendor perlu memperbaiki kembali", "retensi": updated}

    async def _release(self, uow, project, retensi, payload):
        session = uow.session
        now = self.ctx.now()
        project_id = retensi["project_id"]
        retensi_machine.validate(retensi, "release")

        ledger = await self.ctx.ledger.get(project_id, session)
        # Only what was actually withheld can be paid out
        amount = min(to_decimal(retensi.get("value", 0)), to_decimal(ledger.get("retention_held", 0)))
        change = None
        if amount > 0:
            change = self.ctx.ledger.plan(
                ledger,
                {"retention_held": -amount, "vendor_paid": amount, "admin_balance": -amount},
                reason="retensi_release",
            )

        log = retensi_log(
            "released",
            f"Retensi sebesar {format_currency(amount)} berhasil dicairkan ke vendor",
            now,
        )
        updated = await retensi_machine.apply(
            self.db, retensi, "release", session=session,
            extra_set={"remaining_days": 0, "end_date": None, "released_amount": to_float(amount)},
            extra_update={"$push": {"logs": log}},
            now=now
        )
        if change is not None:
            ledger = await self.ctx.ledger.commit(change, session=session, now=now)

        await self.db.projects.update_one(
            {"_id": project["_id"]},
            {"$set": {"status": "completed", "updated_at": now}},
            session=session
        )
        logger.info(f"[RETENSI] Released {to_float(amount)} for project:{project_id}")
        return {"message": "Retensi berhasil dicairkan ke vendor", "retensi": updated, "ledger": ledger}
