# PROJECT & MILESTONE API ENDPOINTS
# Project lifecycle, milestone CRUD, ledger view, audit trail and log comments

from fastapi import APIRouter, status, Depends, Query
import logging

from adogalo.models import (
    ProjectCreate, ProjectUpdate,
    MilestoneCreate, MilestoneUpdate,
    CommentCreate
)
from adogalo.core.services import EscrowServices
from adogalo.permissions import PermissionChecker
from adogalo.auth import get_current_user
from adogalo.responses import success

logger = logging.getLogger(__name__)


def create_project_routes(
    services: EscrowServices,
    permission_checker: PermissionChecker
) -> APIRouter:
    """Create the project / milestone API router"""

    router = APIRouter(prefix="/api", tags=["Projects"])
    projects = services.projects

    # ============================================
    # PROJECT ENDPOINTS
    # ============================================

    @router.post("/projects", status_code=status.HTTP_201_CREATED)
    async def create_project(project_data: ProjectCreate, current_user: dict = Depends(get_current_user)):
        """Create project with milestones, termin schedule, ledger and retensi (Admin only)"""
        user = await permission_checker.get_authenticated_user(current_user)
        data = project_data.model_dump()
        result = await projects.create_project(user, data)
        return success(result)

    @router.get("/projects")
    async def list_projects(current_user: dict = Depends(get_current_user)):
        user = await permission_checker.get_authenticated_user(current_user)
        return success(projects=await projects.list_projects(user))

    @router.get("/projects/{project_id}")
    async def get_project(project_id: str, current_user: dict = Depends(get_current_user)):
        """Project detail with role-specific display values"""
        user = await permission_checker.get_authenticated_user(current_user)
        return success(await projects.get_project_view(project_id, user))

    @router.patch("/projects/{project_id}")
    async def update_project(project_id: str, project_data: ProjectUpdate,
                             current_user: dict = Depends(get_current_user)):
        user = await permission_checker.get_authenticated_user(current_user)
        data = project_data.model_dump(exclude_none=True)
        return success(await projects.update_project(project_id, user, data))

    @router.delete("/projects/{project_id}")
    async def delete_project(project_id: str, current_user: dict = Depends(get_current_user)):
        user = await permission_checker.get_authenticated_user(current_user)
        return success(await projects.delete_project(project_id, user))

    @router.get("/projects/{project_id}/ledger")
    async def get_ledger(project_id: str, current_user: dict = Depends(get_current_user)):
        """Ledger with statistics and an invariant check (Admin / Manager)"""
        user = await permission_checker.get_authenticated_user(current_user)
        return success(await projects.get_ledger_view(project_id, user))

    @router.get("/projects/{project_id}/audit-logs")
    async def get_audit_logs(
        project_id: str,
        limit: int = Query(default=100, ge=1, le=500),
        current_user: dict = Depends(get_current_user)
    ):
        user = await permission_checker.get_authenticated_user(current_user)
        return success(audit_logs=await projects.get_audit_logs(project_id, user, limit))

    # ============================================
    # MILESTONE ENDPOINTS
    # ============================================

    @router.post("/projects/{project_id}/milestones", status_code=status.HTTP_201_CREATED)
    async def create_milestone(project_id: str, milestone_data: MilestoneCreate,
                               current_user: dict = Depends(get_current_user)):
        user = await permission_checker.get_authenticated_user(current_user)
        result = await projects.create_milestone(
            project_id, user,
            judul=milestone_data.judul,
            persentase=milestone_data.persentase,
            deskripsi=milestone_data.deskripsi,
            harga=milestone_data.harga
        )
        return success(result)

    @router.get("/projects/{project_id}/milestones")
    async def list_milestones(project_id: str, current_user: dict = Depends(get_current_user)):
        user = await permission_checker.get_authenticated_user(current_user)
        return success(milestones=await projects.list_milestones(project_id, user))

    @router.get("/milestones/{milestone_id}")
    async def get_milestone(milestone_id: str, current_user: dict = Depends(get_current_user)):
        """Milestone with logs, comments and change requests"""
        user = await permission_checker.get_authenticated_user(current_user)
        return success(await projects.get_milestone_detail(milestone_id, user))

    @router.put("/milestones/{milestone_id}")
    async def update_milestone(milestone_id: str, milestone_data: MilestoneUpdate,
                               current_user: dict = Depends(get_current_user)):
        user = await permission_checker.get_authenticated_user(current_user)
        result = await projects.update_milestone(
            milestone_id, user,
            judul=milestone_data.judul,
            deskripsi=milestone_data.deskripsi,
            harga=milestone_data.harga
        )
        return success(result)

    @router.delete("/milestones/{milestone_id}")
    async def delete_milestone(milestone_id: str, current_user: dict = Depends(get_current_user)):
        user = await permission_checker.get_authenticated_user(current_user)
        return success(await projects.delete_milestone(milestone_id, user))

    # ============================================
    # COMMENTS
    # ============================================

    @router.post("/logs/{log_id}/comments", status_code=status.HTTP_201_CREATED)
    async def add_comment(log_id: str, comment_data: CommentCreate,
                          current_user: dict = Depends(get_current_user)):
        user = await permission_checker.get_authenticated_user(current_user)
        result = await projects.add_comment(
            log_id, user,
            teks=comment_data.teks,
            files=comment_data.files,
            reply_to=comment_data.reply_to
        )
        return success(result)

    return router
