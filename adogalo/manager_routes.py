# MANAGER API ENDPOINTS (Admin only)

from fastapi import APIRouter, status, Depends
import logging

from adogalo.models import ManagerCreate, ManagerUpdate
from adogalo.core.services import EscrowServices
from adogalo.permissions import PermissionChecker
from adogalo.auth import get_current_user
from adogalo.responses import success

logger = logging.getLogger(__name__)


def create_manager_routes(
    services: EscrowServices,
    permission_checker: PermissionChecker
) -> APIRouter:
    router = APIRouter(prefix="/api/managers", tags=["Managers"])
    managers = services.managers

    @router.get("")
    async def list_managers(current_user: dict = Depends(get_current_user)):
        user = await permission_checker.get_authenticated_user(current_user)
        await permission_checker.check_admin_role(user)
        return success(managers=await managers.list_managers(user))

    @router.post("", status_code=status.HTTP_201_CREATED)
    async def create_manager(manager_data: ManagerCreate, current_user: dict = Depends(get_current_user)):
        user = await permission_checker.get_authenticated_user(current_user)
        await permission_checker.check_admin_role(user)
        result = await managers.create_manager(
            user, manager_data.nama, manager_data.email, manager_data.project_ids
        )
        return success(result)

    @router.patch("/{manager_id}")
    async def update_manager(manager_id: str, manager_data: ManagerUpdate,
                             current_user: dict = Depends(get_current_user)):
        user = await permission_checker.get_authenticated_user(current_user)
        await permission_checker.check_admin_role(user)
        result = await managers.update_manager(
            manager_id, user, nama=manager_data.nama, project_ids=manager_data.project_ids
        )
        return success(result)

    @router.delete("/{manager_id}")
    async def delete_manager(manager_id: str, current_user: dict = Depends(get_current_user)):
        user = await permission_checker.get_authenticated_user(current_user)
        await permission_checker.check_admin_role(user)
        return success(await managers.delete_manager(manager_id, user))

    return router
