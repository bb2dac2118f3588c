"""
Project-level access resolution.

An actor is the authenticated claim set {email, role, user_id}. For one
project it resolves to any of: admin (role claim), manager with the project
in their allowlist, client or vendor (by e-mail match).
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from dataclasses import dataclass
from typing import Dict, Any, Optional
from bson import ObjectId
import logging

from adogalo.core.errors import AuthorizationError

logger = logging.getLogger(__name__)

ROLE_ADMIN = "admin"
ROLE_MANAGER = "manager"
ROLE_USER = "user"

PARTY_ROLES = ("admin", "manager", "client", "vendor")


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


@dataclass(frozen=True)
class ProjectAccess:
    email: str
    user_id: Optional[str]
    is_admin: bool = False
    is_manager: bool = False
    is_client: bool = False
    is_vendor: bool = False

    @property
    def role(self) -> Optional[str]:
        """Display role, admin first."""
        if self.is_admin:
            return "admin"
        if self.is_manager:
            return "manager"
        if self.is_vendor:
            return "vendor"
        if self.is_client:
            return "client"
        return None

    def has(self, role: str) -> bool:
        return getattr(self, f"is_{role}")

    def require(self, *roles: str, message: str = "Anda tidak memiliki akses"):
        if not any(self.has(role) for role in roles):
            raise AuthorizationError(message, details={"required_roles": list(roles)})


class AccessResolver:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def manager_project_ids(self, actor: Dict[str, Any], session=None) -> list:
        if actor.get("role") != ROLE_MANAGER:
            return []

        user = None
        user_id = actor.get("user_id")
        if user_id and ObjectId.is_valid(user_id):
            user = await self.db.users.find_one({"_id": ObjectId(user_id)}, session=session)
        if user is None and actor.get("email"):
            user = await self.db.users.find_one(
                {"email": normalize_email(actor["email"])}, session=session
            )

        if not user or user.get("role") != ROLE_MANAGER:
            return []
        return list(user.get("project_ids", []))

    async def resolve(self, actor: Dict[str, Any], project: Dict[str, Any], session=None) -> ProjectAccess:
        email = normalize_email(actor.get("email"))
        project_id = str(project["_id"])

        is_manager = False
        if actor.get("role") == ROLE_MANAGER:
            is_manager = project_id in await self.manager_project_ids(actor, session=session)

        access = ProjectAccess(
            email=email,
            user_id=actor.get("user_id"),
            is_admin=actor.get("role") == ROLE_ADMIN,
            is_manager=is_manager,
            is_client=bool(email) and email == project.get("client_email"),
            is_vendor=bool(email) and email == project.get("vendor_email"),
        )
        logger.debug(f"[ACCESS] {email} on project:{project_id} -> {access.role}")
        return access

    def require_admin(self, actor: Dict[str, Any], message: str = "Hanya admin yang bisa melakukan aksi ini"):
        if actor.get("role") != ROLE_ADMIN:
            raise AuthorizationError(message, details={"required_roles": [ROLE_ADMIN]})
