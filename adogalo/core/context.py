"""
Shared collaborators of the escrow engines.

EscrowContext bundles the database, the per-project transaction manager,
the ledger, access resolution, the audit trail and the clock, plus the
loaders every engine needs.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Dict, Any, Optional, List
import logging

from adogalo.core.access import AccessResolver
from adogalo.core.clock import Clock, utcnow
from adogalo.core.documents import to_object_id
from adogalo.core.errors import NotFoundError
from adogalo.core.ledger import LedgerService
from adogalo.core.transaction import TransactionManager

logger = logging.getLogger(__name__)

LOG_TYPES = ("system", "daily", "finish", "fix", "complain", "admin", "change", "refund")


class EscrowContext:
    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        transactions: TransactionManager,
        audit_service,
        clock: Clock = utcnow
    ):
        self.db = db
        self.transactions = transactions
        self.audit = audit_service
        self.clock = clock
        self.ledger = LedgerService(db)
        self.access = AccessResolver(db)

    def now(self) -> datetime:
        return self.clock()

    # =========================================================================
    # LOADERS
    # =========================================================================

    async def get_project(self, project_id: str, session=None) -> Dict[str, Any]:
        oid = to_object_id(project_id, "Proyek tidak ditemukan")
        project = await self.db.projects.find_one({"_id": oid}, session=session)
        if not project:
            raise NotFoundError("Proyek tidak ditemukan", details={"project_id": project_id})
        return project

    async def get_milestone(self, milestone_id: str, session=None) -> Dict[str, Any]:
        oid = to_object_id(milestone_id, "Milestone tidak ditemukan")
        milestone = await self.db.milestones.find_one({"_id": oid}, session=session)
        if not milestone:
            raise NotFoundError("Milestone tidak ditemukan", details={"milestone_id": milestone_id})
        return milestone

    async def get_project_milestones(self, project_id: str, session=None) -> List[Dict[str, Any]]:
        return await self.db.milestones.find(
            {"project_id": project_id}, session=session
        ).sort("urutan", 1).to_list(length=None)

    async def get_retensi(self, project_id: str, session=None) -> Optional[Dict[str, Any]]:
        return await self.db.retensi.find_one({"project_id": project_id}, session=session)

    async def next_urutan(self, project_id: str, session=None) -> int:
        last = await self.db.milestones.find(
            {"project_id": project_id}, session=session
        ).sort("urutan", -1).limit(1).to_list(length=1)
        return (last[0].get("urutan", 0) if last else 0) + 1

    # =========================================================================
    # WRITERS
    # =========================================================================

    async def add_log(
        self,
        project_id: str,
        tipe: str,
        catatan: str,
        milestone_id: Optional[str] = None,
        files: Optional[list] = None,
        user_id: Optional[str] = None,
        amount: Optional[float] = None,
        session=None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Append an activity log (milestone-level when milestone_id is set)."""
        if tipe not in LOG_TYPES:
            raise ValueError(f"Unknown log type: {tipe}")

        log = {
            "project_id": project_id,
            "milestone_id": milestone_id,
            "tipe": tipe,
            "catatan": catatan,
            "files": list(files or []),
            "user_id": user_id,
            "amount": amount,
            "comments": [],
            "tanggal": now or self.now(),
        }
        result = await self.db.logs.insert_one(log, session=session)
        log["_id"] = result.inserted_id
        return log

    async def audit_action(
        self,
        actor: Dict[str, Any],
        module_name: str,
        entity_type: str,
        entity_id: Any,
        action_type: str,
        project_id: Optional[str] = None,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        session=None
    ):
        await self.audit.log_action(
            module_name=module_name,
            entity_type=entity_type,
            entity_id=str(entity_id),
            action_type=action_type,
            user_id=actor.get("user_id") or actor.get("email") or "system",
            project_id=project_id,
            old_value=old_value,
            new_value=new_value,
            session=session
        )
