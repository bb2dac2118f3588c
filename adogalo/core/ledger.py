"""
ESCROW LEDGER (AdminData)

One row per project in `admin_data`:
- client_funds   : cumulative client payments received
- vendor_paid    : cumulative paid out to the vendor
- admin_balance  : funds currently held by the platform
- retention_held : part of admin_balance earmarked as retention
- fee_earned     : platform commission accumulated

Writes follow two steps:
1. plan(): apply a Decimal delta to the current row and validate invariants
2. commit(): compare-and-set on `version`, then `$inc version`

Callers plan BEFORE touching any other document so a rejected mutation
never leaves a half-applied transition behind.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from decimal import Decimal
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any
from pymongo import ReturnDocument
import logging

from adogalo.core.errors import NotFoundError, ConcurrencyConflictError
from adogalo.core.financial_precision import Number, to_decimal, to_float
from adogalo.core.invariant_validator import FinancialInvariantValidator, LEDGER_FIELDS

logger = logging.getLogger(__name__)


@dataclass
class LedgerChange:
    """A validated ledger mutation waiting to be committed."""
    project_id: str
    version: int
    reason: str
    before: Dict[str, Decimal]
    after: Dict[str, Decimal]
    delta: Dict[str, Decimal] = field(default_factory=dict)

    def as_floats(self, values: Dict[str, Decimal]) -> Dict[str, float]:
        return {key: to_float(value) for key, value in values.items()}


class LedgerService:
    """Reads and mutates the per-project escrow ledger."""

    COLLECTION = "admin_data"

    def __init__(self, db: AsyncIOMotorDatabase, validator: Optional[FinancialInvariantValidator] = None):
        self.db = db
        self.validator = validator or FinancialInvariantValidator(db)

    async def create(self, project_id: str, session=None, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        doc = {
            "project_id": project_id,
            **{name: 0.0 for name in LEDGER_FIELDS},
            "version": 1,
            "created_at": now,
            "updated_at": now,
        }
        result = await self.db[self.COLLECTION].insert_one(doc, session=session)
        doc["_id"] = result.inserted_id
        logger.info(f"[LEDGER] Created ledger for project:{project_id}")
        return doc

    async def get(self, project_id: str, session=None) -> Dict[str, Any]:
        ledger = await self.db[self.COLLECTION].find_one({"project_id": project_id}, session=session)
        if not ledger:
            raise NotFoundError("Data admin tidak ditemukan", details={"project_id": project_id})
        return ledger

    def plan(self, ledger: Dict[str, Any], delta: Dict[str, Number], reason: str) -> LedgerChange:
        """Apply delta in Decimal and validate. Raises InvariantViolationError."""
        before = {name: to_decimal(ledger.get(name, 0)) for name in LEDGER_FIELDS}
        decimal_delta = {name: to_decimal(value) for name, value in delta.items()}

        unknown = set(decimal_delta) - set(LEDGER_FIELDS)
        if unknown:
            raise ValueError(f"Unknown ledger fields: {sorted(unknown)}")

        after = {
            name: before[name] + decimal_delta.get(name, Decimal('0'))
            for name in LEDGER_FIELDS
        }
        self.validator.validate_ledger_values(ledger["project_id"], after)

        return LedgerChange(
            project_id=ledger["project_id"],
            version=ledger.get("version", 1),
            reason=reason,
            before=before,
            after=after,
            delta=decimal_delta,
        )

    async def commit(self, change: LedgerChange, session=None, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Write a planned change. Raises ConcurrencyConflictError on version mismatch."""
        result = await self.db[self.COLLECTION].find_one_and_update(
            {"project_id": change.project_id, "version": change.version},
            {
                "$set": {
                    **change.as_floats(change.after),
                    "updated_at": now or datetime.utcnow(),
                },
                "$inc": {"version": 1},
            },
            return_document=ReturnDocument.AFTER,
            session=session
        )

        if result is None:
            logger.error(
                f"[LEDGER] Version conflict for project:{change.project_id} "
                f"(expected version {change.version}) during {change.reason}"
            )
            raise ConcurrencyConflictError(
                "Data keuangan proyek berubah secara bersamaan. Silakan coba lagi.",
                details={"project_id": change.project_id},
            )

        logger.info(
            f"[LEDGER] {change.reason} project:{change.project_id} "
            f"delta={change.as_floats(change.delta)} version={result.get('version')}"
        )
        return result

    async def apply(
        self,
        project_id: str,
        delta: Dict[str, Number],
        reason: str,
        session=None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Read, plan and commit in one call."""
        ledger = await self.get(project_id, session=session)
        change = self.plan(ledger, delta, reason)
        return await self.commit(change, session=session, now=now)
