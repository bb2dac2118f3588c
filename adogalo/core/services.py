"""
Wiring of the escrow engines.

build_services() creates one EscrowContext and every engine on top of it,
so the routes, the seed script and the tests share the same construction.
"""

from dataclasses import dataclass
from typing import Optional
import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from adogalo.audit_service import AuditService
from adogalo.core.additional_work_engine import AdditionalWorkEngine
from adogalo.core.clock import Clock, utcnow
from adogalo.core.context import EscrowContext
from adogalo.core.manager_service import ManagerService
from adogalo.core.milestone_engine import MilestoneEngine
from adogalo.core.project_service import ProjectService
from adogalo.core.reduction_engine import ReductionEngine
from adogalo.core.retensi_engine import RetensiEngine
from adogalo.core.termin_engine import TerminEngine
from adogalo.core.transaction import DomainEventEmitter, TransactionManager

logger = logging.getLogger(__name__)


@dataclass
class EscrowServices:
    ctx: EscrowContext
    events: DomainEventEmitter
    retensi: RetensiEngine
    milestones: MilestoneEngine
    termins: TerminEngine
    additional_work: AdditionalWorkEngine
    reduction: ReductionEngine
    projects: ProjectService
    managers: ManagerService

    @property
    def db(self) -> AsyncIOMotorDatabase:
        return self.ctx.db


def build_services(
    db: AsyncIOMotorDatabase,
    client: Optional[AsyncIOMotorClient] = None,
    use_transactions: bool = True,
    clock: Clock = utcnow,
    events: Optional[DomainEventEmitter] = None
) -> EscrowServices:
    events = events or DomainEventEmitter()
    transactions = TransactionManager(client, events, use_transactions=use_transactions)
    ctx = EscrowContext(db, transactions, AuditService(db), clock=clock)
    retensi = RetensiEngine(ctx)

    logger.info(f"[SERVICES] Escrow engines ready (transactions={transactions.use_transactions})")
    return EscrowServices(
        ctx=ctx,
        events=events,
        retensi=retensi,
        milestones=MilestoneEngine(ctx, retensi),
        termins=TerminEngine(ctx),
        additional_work=AdditionalWorkEngine(ctx),
        reduction=ReductionEngine(ctx),
        projects=ProjectService(ctx, retensi),
        managers=ManagerService(ctx),
    )


async def ensure_indexes(db: AsyncIOMotorDatabase):
    """Indexes for the hot lookups; the unique ones back the one-per-project documents."""
    await db.admin_data.create_index("project_id", unique=True)
    await db.retensi.create_index("project_id", unique=True)
    await db.milestones.create_index([("project_id", 1), ("urutan", 1)])
    await db.termins.create_index([("project_id", 1), ("created_at", 1)])
    await db.logs.create_index([("milestone_id", 1), ("tanggal", -1)])
    await db.additional_works.create_index("project_id")
    await db.change_requests.create_index("project_id")
    await db.audit_logs.create_index([("project_id", 1), ("timestamp", -1)])
    await db.users.create_index("email", unique=True)
    logger.info("[SERVICES] Indexes ensured")
