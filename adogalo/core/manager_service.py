"""Manager users and their project allowlist (admin only)."""

from bson import ObjectId
from typing import Dict, Any, Optional, List
import logging

from adogalo.core.access import normalize_email, ROLE_MANAGER
from adogalo.core.context import EscrowContext
from adogalo.core.documents import to_object_id
from adogalo.core.errors import EscrowValidationError, NotFoundError

logger = logging.getLogger(__name__)


class ManagerService:
    def __init__(self, ctx: EscrowContext):
        self.ctx = ctx
        self.db = ctx.db

    async def _projects_summary(self, project_ids: List[str]) -> List[Dict[str, Any]]:
        oids = [ObjectId(pid) for pid in project_ids if ObjectId.is_valid(pid)]
        projects = await self.db.projects.find({"_id": {"$in": oids}}).to_list(length=None)
        return [{"id": str(p["_id"]), "judul": p["judul"]} for p in projects]

    async def list_managers(self, actor: Dict[str, Any]) -> List[Dict[str, Any]]:
        self.ctx.access.require_admin(actor)
        managers = await self.db.users.find({"role": ROLE_MANAGER}).sort("created_at", -1).to_list(length=None)
        for manager in managers:
            manager["projects"] = await self._projects_summary(manager.get("project_ids", []))
        return managers

    async def create_manager(self, actor: Dict[str, Any], nama: str, email: str,
                             project_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        self.ctx.access.require_admin(actor, "Hanya admin yang bisa menambahkan manager")
        if not (nama or "").strip() or not (email or "").strip():
            raise EscrowValidationError("Nama dan email harus diisi")

        email = normalize_email(email)
        if await self.db.users.find_one({"email": email}):
            raise EscrowValidationError("Email sudah terdaftar", details={"email": email})

        now = self.ctx.now()
        manager = {
            "nama": nama.strip(),
            "email": email,
            "role": ROLE_MANAGER,
            "project_ids": list(project_ids or []),
            "created_at": now,
            "updated_at": now,
        }
        result = await self.db.users.insert_one(manager)
        manager["_id"] = result.inserted_id

        await self.ctx.audit_action(
            actor, "MANAGER", "USER", manager["_id"], "CREATE",
            new_value={"email": email, "project_ids": manager["project_ids"]}
        )
        logger.info(f"[MANAGER] Created manager {email} with {len(manager['project_ids'])} project(s)")
        return {"message": "Manager berhasil ditambahkan", "manager": manager}

    async def _get(self, manager_id: str) -> Dict[str, Any]:
        oid = to_object_id(manager_id, "Manager tidak ditemukan")
        manager = await self.db.users.find_one({"_id": oid, "role": ROLE_MANAGER})
        if not manager:
            raise NotFoundError("Manager tidak ditemukan", details={"manager_id": manager_id})
        return manager

    async def update_manager(self, manager_id: str, actor: Dict[str, Any], nama: Optional[str] = None,
                             project_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        self.ctx.access.require_admin(actor, "Hanya admin yang bisa mengubah manager")
        manager = await self._get(manager_id)

        updates = {"updated_at": self.ctx.now()}
        if nama and nama.strip():
            updates["nama"] = nama.strip()
        if project_ids is not None:
            updates["project_ids"] = list(project_ids)

        await self.db.users.update_one({"_id": manager["_id"]}, {"$set": updates})
        await self.ctx.audit_action(
            actor, "MANAGER", "USER", manager["_id"], "UPDATE",
            old_value={"project_ids": manager.get("project_ids", [])},
            new_value={"project_ids": updates.get("project_ids", manager.get("project_ids", []))}
        )
        return {"message": "Manager berhasil diperbarui", "manager": await self._get(manager_id)}

    async def delete_manager(self, manager_id: str, actor: Dict[str, Any]) -> Dict[str, Any]:
        self.ctx.access.require_admin(actor, "Hanya admin yang bisa menghapus manager")
        manager = await self._get(manager_id)
        await self.db.users.delete_one({"_id": manager["_id"]})
        await self.ctx.audit_action(
            actor, "MANAGER", "USER", manager["_id"], "DELETE", old_value={"email": manager["email"]}
        )
        return {"message": "Manager berhasil dihapus"}
