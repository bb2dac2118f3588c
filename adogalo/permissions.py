from fastapi import HTTPException, status, Depends
from motor.motor_asyncio import AsyncIOMotorDatabase
from bson import ObjectId
import logging

from adogalo.auth import get_current_user
from adogalo.core.access import ROLE_ADMIN, ROLE_MANAGER

logger = logging.getLogger(__name__)


class PermissionChecker:
    """
    Request-level permission checks.

    RULES:
    1. User must be authenticated (valid bearer token)
    2. A manager token must match a registered manager account
    3. Project-level roles (client, vendor, manager allowlist) are resolved
       by the escrow core per operation
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def get_authenticated_user(self, current_user: dict = Depends(get_current_user)):
        """Validate the actor claims; managers are checked against the users collection"""
        if current_user.get("role") != ROLE_MANAGER:
            return current_user

        user = None
        user_id = current_user.get("user_id")
        if user_id and ObjectId.is_valid(user_id):
            user = await self.db.users.find_one({"_id": ObjectId(user_id)})
        if user is None:
            user = await self.db.users.find_one({"email": current_user["email"]})

        if not user or user.get("role") != ROLE_MANAGER:
            logger.warning(f"[PERMISSION] Unknown manager token for {current_user.get('email')}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Akun manager tidak terdaftar"
            )

        return {**current_user, "user_id": str(user["_id"])}

    async def check_admin_role(self, user: dict):
        """Check if user has admin role"""
        if user.get("role") != ROLE_ADMIN:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Hanya admin yang bisa melakukan aksi ini"
            )
        return True
