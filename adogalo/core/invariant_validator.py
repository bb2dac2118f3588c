"""
ESCROW LEDGER INVARIANT VALIDATOR

Enforces the ledger (AdminData) constraints:
1. client_funds, vendor_paid, admin_balance, retention_held, fee_earned >= 0
2. admin_balance >= retention_held (retention is earmarked inside the balance)

Blocks the mutation if violated.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from decimal import Decimal
from typing import Dict, List, Mapping
from datetime import datetime
import logging

from adogalo.core.errors import InvariantViolationError
from adogalo.core.financial_precision import Number, to_decimal, to_float

logger = logging.getLogger(__name__)

LEDGER_FIELDS = (
    "client_funds",
    "vendor_paid",
    "admin_balance",
    "retention_held",
    "fee_earned",
)


def collect_ledger_violations(values: Mapping[str, Number]) -> List[dict]:
    """Return every violated rule for a set of ledger values (empty if valid)."""
    amounts = {field: to_decimal(values.get(field, 0)) for field in LEDGER_FIELDS}
    violations = []

    for field, amount in amounts.items():
        if amount < Decimal('0'):
            violations.append({
                "type": f"NEGATIVE_{field.upper()}",
                "message": f"{field} ({to_float(amount)}) tidak boleh negatif",
                field: to_float(amount),
            })

    if amounts["admin_balance"] < amounts["retention_held"]:
        violations.append({
            "type": "RETENTION_EXCEEDS_BALANCE",
            "message": (
                f"admin_balance ({to_float(amounts['admin_balance'])}) lebih kecil dari "
                f"retention_held ({to_float(amounts['retention_held'])})"
            ),
            "admin_balance": to_float(amounts["admin_balance"]),
            "retention_held": to_float(amounts["retention_held"]),
        })

    return violations


class FinancialInvariantValidator:
    """
    Centralized ledger invariant enforcement.

    Used before EVERY ledger mutation is written.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    def validate_ledger_values(self, project_id: str, values: Mapping[str, Number]) -> bool:
        """
        Raises InvariantViolationError listing ALL violations.
        Returns True if all constraints pass.
        """
        violations = collect_ledger_violations(values)

        if violations:
            logger.error(
                f"[LEDGER] Invariant violation for project:{project_id}: "
                f"{[v['type'] for v in violations]}"
            )
            raise InvariantViolationError(
                violation_type="MULTIPLE_VIOLATIONS" if len(violations) > 1 else violations[0]["type"],
                message="Transaksi ditolak: saldo escrow tidak konsisten",
                details={"project_id": project_id, "violations": violations}
            )

        return True

    async def validate_project_invariants(self, project_id: str, session=None) -> Dict[str, object]:
        """
        Check the stored ledger of a project.

        Does NOT raise - collects violations for reporting.
        """
        ledger = await self.db.admin_data.find_one({"project_id": project_id}, session=session)
        violations = collect_ledger_violations(ledger or {})

        if violations:
            logger.warning(f"[LEDGER] Stored ledger of project:{project_id} violates invariants")

        return {
            "project_id": project_id,
            "valid": not violations,
            "violations": violations,
            "validated_at": datetime.utcnow(),
        }
