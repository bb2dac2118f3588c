"""
ADDITIONAL WORK WORKFLOW

pending -> approved | rejected (terminal)

Approval spawns a milestone (status pending_additional) and an
`additional` termin linked back through terkait_id.
"""

from typing import Dict, Any, Optional, List
import logging

from adogalo.core.context import EscrowContext
from adogalo.core.documents import to_object_id
from adogalo.core.errors import EscrowValidationError, NotFoundError
from adogalo.core.financial_calculator import format_currency, CLIENT_FEE_PERCENT
from adogalo.core.financial_precision import to_decimal, to_float
from adogalo.core.milestone_engine import MilestoneStatus
from adogalo.core.state_machine import StateMachine
from adogalo.core.termin_engine import new_termin_doc, TerminType

logger = logging.getLogger(__name__)


class AdditionalWorkStatus:
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


additional_work_machine = (
    StateMachine("additional_work", "additional_works")
    .register(
        "approve", [AdditionalWorkStatus.PENDING], AdditionalWorkStatus.APPROVED,
        message="Pekerjaan tambahan tidak ditemukan atau sudah diproses"
    )
    .register(
        "reject", [AdditionalWorkStatus.PENDING], AdditionalWorkStatus.REJECTED,
        message="Pekerjaan tambahan tidak ditemukan atau sudah diproses"
    )
)


class AdditionalWorkEngine:
    def __init__(self, ctx: EscrowContext):
        self.ctx = ctx
        self.db = ctx.db

    async def list_works(self, project_id: str, actor: Dict[str, Any]) -> List[Dict[str, Any]]:
        project = await self.ctx.get_project(project_id)
        access = await self.ctx.access.resolve(actor, project)
        access.require("admin", "manager", "client", "vendor")
        return await self.db.additional_works.find({"project_id": project_id}).sort(
            "created_at", -1
        ).to_list(length=None)

    async def create(self, project_id: str, actor: Dict[str, Any], judul: str, amount,
                     deskripsi: Optional[str] = None, files: Optional[list] = None) -> Dict[str, Any]:
        judul = (judul or "").strip()
        if not judul or amount is None or to_decimal(amount) <= 0:
            raise EscrowValidationError("Judul dan nilai pekerjaan harus diisi")
        await self.ctx.get_project(project_id)

        async with self.ctx.transactions.project(project_id) as uow:
            project = await self.ctx.get_project(project_id, uow.session)
            access = await self.ctx.access.resolve(actor, project, uow.session)
            access.require("vendor", message="Hanya vendor yang bisa mengajukan pekerjaan tambahan")

            now = self.ctx.now()
            work = {
                "project_id": project_id,
                "judul": judul,
                "amount": to_float(amount),
                "deskripsi": deskripsi,
                "files": list(files or []),
                "status": AdditionalWorkStatus.PENDING,
                "milestone_id": None,
                "created_at": now,
                "updated_at": now,
            }
            result = await self.db.additional_works.insert_one(work, session=uow.session)
            work["_id"] = result.inserted_id

            await self.ctx.audit_action(
                actor, "ADDITIONAL_WORK", "ADDITIONAL_WORK", work["_id"], "CREATE",
                project_id=project_id, new_value={"judul": judul, "amount": work["amount"]},
                session=uow.session
            )

        return {"message": "Pengajuan pekerjaan tambahan berhasil dikirim", "additional_work": work}

    async def _load(self, project_id: str, additional_work_id: Optional[str], session=None):
        if not additional_work_id:
            raise EscrowValidationError("Additional Work ID diperlukan")
        oid = to_object_id(additional_work_id, "Pekerjaan tambahan tidak ditemukan")
        work = await self.db.additional_works.find_one(
            {"_id": oid, "project_id": project_id}, session=session
        )
        if not work:
            raise NotFoundError("Pekerjaan tambahan tidak ditemukan", details={"additional_work_id": additional_work_id})
        return work

    async def approve(self, project_id: str, additional_work_id: str, actor: Dict[str, Any]) -> Dict[str, Any]:
        if not additional_work_id:
            raise EscrowValidationError("Additional Work ID diperlukan")
        await self.ctx.get_project(project_id)

        async with self.ctx.transactions.project(project_id) as uow:
            session = uow.session
            now = self.ctx.now()
            project = await self.ctx.get_project(project_id, session)
            access = await self.ctx.access.resolve(actor, project, session)
            access.require("client", "admin", message="Hanya client atau admin yang bisa menyetujui")

            work = await self._load(project_id, additional_work_id, session)
            additional_work_machine.validate(work, "approve")

            milestone = {
                "project_id": project_id,
                "judul": f"[Tambahan] {work['judul']}",
                "deskripsi": work.get("deskripsi"),
                "persentase": 0.0,
                "price": work["amount"],
                "original_price": work["amount"],
                "status": MilestoneStatus.PENDING_ADDITIONAL,
                "is_additional_work": True,
                "urutan": await self.ctx.next_urutan(project_id, session),
                "paid_at": None,
                "created_at": now,
                "updated_at": now,
            }
            result = await self.db.milestones.insert_one(milestone, session=session)
            milestone["_id"] = result.inserted_id
            milestone_id = str(milestone["_id"])

            termin = new_termin_doc(
                project_id,
                f"Pekerjaan Tambahan: {work['judul']}",
                work["amount"],
                TerminType.ADDITIONAL,
                project.get("client_fee_percent", CLIENT_FEE_PERCENT),
                now,
                terkait_id=str(work["_id"]),
                milestone_id=milestone_id,
            )
            result = await self.db.termins.insert_one(termin, session=session)
            termin["_id"] = result.inserted_id

            updated = await additional_work_machine.apply(
                self.db, work, "approve", session=session,
                extra_set={"milestone_id": milestone_id}, now=now
            )

            await self.ctx.add_log(
                project_id, "system",
                f"Pekerjaan tambahan \"{work['judul']}\" senilai {format_currency(work['amount'])} disetujui",
                milestone_id=milestone_id, user_id=actor.get("user_id"),
                session=session, now=now
            )
            await self.ctx.audit_action(
                actor, "ADDITIONAL_WORK", "ADDITIONAL_WORK", work["_id"], "APPROVE",
                project_id=project_id,
                old_value={"status": work["status"]},
                new_value={"status": updated["status"], "milestone_id": milestone_id, "termin_id": str(termin["_id"])},
                session=session
            )

        logger.info(f"[ADDITIONAL_WORK] Approved {work['_id']} -> milestone:{milestone_id}")
        return {
            "message": "Pekerjaan tambahan disetujui, milestone dan termin baru dibuat",
            "additional_work": updated,
            "milestone": milestone,
            "termin": termin,
        }

    async def reject(self, project_id: str, additional_work_id: str, actor: Dict[str, Any]) -> Dict[str, Any]:
        if not additional_work_id:
            raise EscrowValidationError("Additional Work ID diperlukan")
        await self.ctx.get_project(project_id)

        async with self.ctx.transactions.project(project_id) as uow:
            project = await self.ctx.get_project(project_id, uow.session)
            access = await self.ctx.access.resolve(actor, project, uow.session)
            access.require("client", "admin", message="Hanya client atau admin yang bisa menolak")

            work = await self._load(project_id, additional_work_id, uow.session)
            updated = await additional_work_machine.apply(
                self.db, work, "reject", session=uow.session, now=self.ctx.now()
            )
            await self.ctx.audit_action(
                actor, "ADDITIONAL_WORK", "ADDITIONAL_WORK", work["_id"], "REJECT",
                project_id=project_id,
                old_value={"status": work["status"]}, new_value={"status": updated["status"]},
                session=uow.session
            )

        return {"message": "Pekerjaan tambahan ditolak", "additional_work": updated}
