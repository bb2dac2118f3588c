"""
REDUCTION WORKFLOW (change requests)

pending -> approved | rejected (terminal), client-side only.

Approval lowers the milestone price and creates a negative `reduction`
termin. No money moves here: the refund is a later termin process_refund.
"""

from typing import Dict, Any, Optional, List
from pymongo import ReturnDocument
import logging

from adogalo.core.context import EscrowContext
from adogalo.core.documents import to_object_id
from adogalo.core.errors import EscrowValidationError, NotFoundError
from adogalo.core.financial_calculator import format_currency
from adogalo.core.financial_precision import to_decimal, to_float
from adogalo.core.state_machine import InvalidTransitionError, StateMachine
from adogalo.core.termin_engine import new_termin_doc, TerminType

logger = logging.getLogger(__name__)


class ChangeRequestStatus:
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


change_request_machine = (
    StateMachine("change_request", "change_requests")
    .register(
        "approve_client", [ChangeRequestStatus.PENDING], ChangeRequestStatus.APPROVED,
        message="Request tidak ditemukan atau sudah diproses"
    )
    .register(
        "reject_client", [ChangeRequestStatus.PENDING], ChangeRequestStatus.REJECTED,
        message="Request tidak ditemukan atau sudah diproses"
    )
)


class ReductionEngine:
    def __init__(self, ctx: EscrowContext):
        self.ctx = ctx
        self.db = ctx.db

    async def list_requests(self, project_id: str, actor: Dict[str, Any]) -> List[Dict[str, Any]]:
        project = await self.ctx.get_project(project_id)
        access = await self.ctx.access.resolve(actor, project)
        access.require("admin", "manager", "client", "vendor")

        requests = await self.db.change_requests.find({"project_id": project_id}).sort(
            "created_at", -1
        ).to_list(length=None)
        milestones = {str(m["_id"]): m for m in await self.ctx.get_project_milestones(project_id)}
        for request in requests:
            milestone = milestones.get(request.get("milestone_id"))
            request["milestone"] = {"id": request.get("milestone_id"), "judul": milestone["judul"]} if milestone else None
        return requests

    async def create(self, project_id: str, actor: Dict[str, Any], milestone_id: Optional[str], amount,
                     alasan: Optional[str] = None, files: Optional[list] = None) -> Dict[str, Any]:
        if not milestone_id or amount is None or to_decimal(amount) <= 0:
            raise EscrowValidationError("Milestone dan nilai pengurangan harus diisi")
        await self.ctx.get_project(project_id)

        async with self.ctx.transactions.project(project_id) as uow:
            session = uow.session
            project = await self.ctx.get_project(project_id, session)
            access = await self.ctx.access.resolve(actor, project, session)
            access.require("vendor", message="Hanya vendor yang bisa mengajukan pengurangan")

            milestone = await self.ctx.get_milestone(milestone_id, session)
            if milestone["project_id"] != project_id:
                raise NotFoundError("Milestone tidak ditemukan", details={"milestone_id": milestone_id})
            if to_decimal(amount) > to_decimal(milestone["price"]):
                raise EscrowValidationError(
                    "Nilai pengurangan tidak boleh melebihi harga milestone",
                    details={"amount": to_float(amount), "price": milestone["price"]}
                )

            now = self.ctx.now()
            request = {
                "project_id": project_id,
                "milestone_id": str(milestone["_id"]),
                "tipe": "reduction",
                "amount": to_float(amount),
                "alasan": alasan,
                "files": list(files or []),
                "status": ChangeRequestStatus.PENDING,
                "created_by": "vendor",
                "created_at": now,
                "updated_at": now,
            }
            result = await self.db.change_requests.insert_one(request, session=session)
            request["_id"] = result.inserted_id

            await self.ctx.audit_action(
                actor, "REDUCTION", "CHANGE_REQUEST", request["_id"], "CREATE",
                project_id=project_id,
                new_value={"milestone_id": request["milestone_id"], "amount": request["amount"]},
                session=session
            )

        return {"message": "Pengajuan pengurangan berhasil dikirim", "change_request": request}

    async def _load(self, project_id: str, change_request_id: str, session=None):
        oid = to_object_id(change_request_id, "Request tidak ditemukan")
        request = await self.db.change_requests.find_one(
            {"_id": oid, "project_id": project_id}, session=session
        )
        if not request:
            raise NotFoundError("Request tidak ditemukan", details={"change_request_id": change_request_id})
        return request

    async def approve_client(self, project_id: str, change_request_id: str, actor: Dict[str, Any]) -> Dict[str, Any]:
        if not change_request_id:
            raise EscrowValidationError("Change Request ID diperlukan")
        await self.ctx.get_project(project_id)

        async with self.ctx.transactions.project(project_id) as uow:
            session = uow.session
            now = self.ctx.now()
            project = await self.ctx.get_project(project_id, session)
            access = await self.ctx.access.resolve(actor, project, session)
            access.require("client", message="Hanya client yang bisa menyetujui")

            request = await self._load(project_id, change_request_id, session)
            change_request_machine.validate(request, "approve_client")

            amount = to_decimal(request["amount"])
            milestone = await self.ctx.get_milestone(request["milestone_id"], session)

            # The price may have dropped since the request was filed
            if amount > to_decimal(milestone["price"]):
                raise EscrowValidationError(
                    "Nilai pengurangan tidak boleh melebihi harga milestone",
                    details={"amount": to_float(amount), "price": milestone["price"]}
                )

            milestone = await self.db.milestones.find_one_and_update(
                {"_id": milestone["_id"], "price": {"$gte": to_float(amount)}},
                {"$inc": {"price": -to_float(amount)}, "$set": {"updated_at": now}},
                return_document=ReturnDocument.AFTER,
                session=session
            )
            if milestone is None:
                raise EscrowValidationError(
                    "Nilai pengurangan tidak boleh melebihi harga milestone",
                    details={"amount": to_float(amount)}
                )
            try:
                updated = await change_request_machine.apply(
                    self.db, request, "approve_client", session=session, now=now
                )
            except InvalidTransitionError:
                # another approval or rejection won the status race; undo the price cut
                await self.db.milestones.update_one(
                    {"_id": milestone["_id"]}, {"$inc": {"price": to_float(amount)}}, session=session
                )
                raise

            termin = new_termin_doc(
                project_id,
                f"Pengurangan: {milestone['judul']}",
                -amount,
                TerminType.REDUCTION,
                0,
                now,
                terkait_id=str(request["_id"]),
                milestone_id=str(milestone["_id"]),
            )
            result = await self.db.termins.insert_one(termin, session=session)
            termin["_id"] = result.inserted_id

            await self.ctx.add_log(
                project_id, "change",
                f"Pengurangan nilai sebesar {format_currency(amount)} disetujui. "
                f"Alasan: {request.get('alasan') or 'Tidak ada alasan'}",
                milestone_id=str(milestone["_id"]),
                files=request.get("files"),
                user_id=actor.get("user_id"),
                session=session, now=now
            )
            await self.ctx.audit_action(
                actor, "REDUCTION", "CHANGE_REQUEST", request["_id"], "APPROVE_CLIENT",
                project_id=project_id,
                old_value={"status": request["status"]},
                new_value={"status": updated["status"], "milestone_price": milestone["price"],
                           "termin_id": str(termin["_id"])},
                session=session
            )

        logger.info(f"[REDUCTION] Approved {request['_id']}: milestone:{milestone['_id']} -{to_float(amount)}")
        return {
            "message": "Pengurangan disetujui, milestone diperbarui dan refund akan diproses",
            "change_request": updated,
            "milestone": milestone,
            "termin": termin,
        }

    async def reject_client(self, project_id: str, change_request_id: str, actor: Dict[str, Any]) -> Dict[str, Any]:
        if not change_request_id:
            raise EscrowValidationError("Change Request ID diperlukan")
        await self.ctx.get_project(project_id)

        async with self.ctx.transactions.project(project_id) as uow:
            project = await self.ctx.get_project(project_id, uow.session)
            access = await self.ctx.access.resolve(actor, project, uow.session)
            access.require("client", message="Hanya client yang bisa menolak")

            request = await self._load(project_id, change_request_id, uow.session)
            updated = await change_request_machine.apply(
                self.db, request, "reject_client", session=uow.session, now=self.ctx.now()
            )
            await self.ctx.audit_action(
                actor, "REDUCTION", "CHANGE_REQUEST", request["_id"], "REJECT_CLIENT",
                project_id=project_id,
                old_value={"status": request["status"]}, new_value={"status": updated["status"]},
                session=uow.session
            )

        return {"message": "Pengajuan pengurangan ditolak", "change_request": updated}
