from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any
import logging

from adogalo.core.errors import AuthorizationError

logger = logging.getLogger(__name__)

# ARCHITECTURAL GUARD: escrow entity types that CANNOT be deleted on their own
FINANCIAL_ENTITY_TYPES = [
    "LEDGER",
    "RETENSI",
]

# Termins in these states have moved money (or are about to) and stay on record
LOCKED_TERMIN_STATUSES = [
    "pending_confirmation",
    "paid",
    "refunded",
]


class AuditService:
    """Service for immutable audit logging"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db.audit_logs

    def enforce_financial_delete_guard(self, entity_type: str, action_type: str,
                                       old_value: Optional[Dict[str, Any]] = None):
        """
        ARCHITECTURAL GUARD: Prevent DELETE operations on escrow records.

        The ledger and the retention record only disappear together with their
        project (cascade). A termin may only be deleted while unpaid.
        Raises AuthorizationError otherwise.
        """
        if action_type != "DELETE":
            return
        if entity_type in FINANCIAL_ENTITY_TYPES:
            raise AuthorizationError(
                f"ARCHITECTURAL GUARD: Cannot DELETE {entity_type}. Escrow records are immutable.",
                details={"entity_type": entity_type}
            )
        status = (old_value or {}).get("status")
        if entity_type == "TERMIN" and status in LOCKED_TERMIN_STATUSES:
            raise AuthorizationError(
                f"ARCHITECTURAL GUARD: Cannot DELETE a {status} TERMIN.",
                details={"entity_type": entity_type, "status": status}
            )

    async def log_action(
        self,
        module_name: str,
        entity_type: str,
        entity_id: str,
        action_type: str,
        user_id: str,
        project_id: Optional[str] = None,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        session=None
    ):
        """
        Log an action to audit trail (INSERT ONLY).

        ENFORCES: Financial entity delete guard.
        """
        self.enforce_financial_delete_guard(entity_type, action_type, old_value)

        try:
            audit_entry = {
                "project_id": project_id,
                "module_name": module_name,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "action_type": action_type,
                "old_value_json": old_value,
                "new_value_json": new_value,
                "user_id": user_id,
                "timestamp": datetime.utcnow()
            }

            await self.collection.insert_one(audit_entry, session=session)
            logger.info(f"[AUDIT] {action_type} on {entity_type}:{entity_id} by user:{user_id}")
        except Exception as e:
            # Don't fail the main operation if audit logging fails
            logger.error(f"[AUDIT] Failed to create audit log: {str(e)}")

    async def get_audit_logs(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        project_id: Optional[str] = None,
        limit: int = 100
    ):
        """Retrieve audit logs (READ ONLY)"""
        query = {}

        if entity_type:
            query["entity_type"] = entity_type
        if entity_id:
            query["entity_id"] = entity_id
        if project_id:
            query["project_id"] = project_id

        cursor = self.collection.find(query).sort("timestamp", -1).limit(limit)
        logs = await cursor.to_list(length=limit)

        for log in logs:
            log["audit_id"] = str(log.pop("_id"))

        return logs
