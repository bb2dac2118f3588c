# ESCROW WORKFLOW API ENDPOINTS
# Milestone actions, termins, retensi, additional work and reduction.
# Every mutation runs inside the per-project unit of work of the engines.

from fastapi import APIRouter, Depends
import logging

from adogalo.models import (
    MilestoneAction,
    TerminAction, TerminReconfigure,
    RetensiAction,
    AdditionalWorkAction,
    ReductionAction
)
from adogalo.core.errors import EscrowValidationError
from adogalo.core.services import EscrowServices
from adogalo.permissions import PermissionChecker
from adogalo.auth import get_current_user
from adogalo.responses import success

logger = logging.getLogger(__name__)


def create_escrow_routes(
    services: EscrowServices,
    permission_checker: PermissionChecker
) -> APIRouter:
    """Create the escrow workflow API router"""

    router = APIRouter(prefix="/api", tags=["Escrow Workflow"])

    # ============================================
    # MILESTONE ACTIONS
    # ============================================

    @router.post("/milestones/{milestone_id}/actions")
    async def milestone_action(milestone_id: str, action_data: MilestoneAction,
                               current_user: dict = Depends(get_current_user)):
        """start, daily, finish, complain, fix, approve, confirm-payment"""
        user = await permission_checker.get_authenticated_user(current_user)
        logger.info(f"[MILESTONE] {action_data.action} on {milestone_id} by {user['email']}")
        result = await services.milestones.perform(
            milestone_id, action_data.action, user,
            catatan=action_data.catatan,
            files=action_data.files
        )
        return success(result)

    # ============================================
    # TERMIN ENDPOINTS
    # ============================================

    @router.get("/projects/{project_id}/termins")
    async def list_termins(project_id: str, current_user: dict = Depends(get_current_user)):
        user = await permission_checker.get_authenticated_user(current_user)
        return success(termins=await services.termins.list_termins(project_id, user))

    @router.post("/projects/{project_id}/termins")
    async def termin_action(project_id: str, action_data: TerminAction,
                            current_user: dict = Depends(get_current_user)):
        """request_payment, cancel_request (Client); confirm_payment, process_refund (Admin)"""
        user = await permission_checker.get_authenticated_user(current_user)
        logger.info(f"[TERMIN] {action_data.action} on {action_data.termin_id} by {user['email']}")
        result = await services.termins.perform(project_id, action_data.termin_id, action_data.action, user)
        return success(result)

    @router.put("/projects/{project_id}/termins")
    async def regenerate_termins(project_id: str, current_user: dict = Depends(get_current_user)):
        """Rebuild unpaid main termins from the milestones (Admin only)"""
        user = await permission_checker.get_authenticated_user(current_user)
        return success(await services.termins.regenerate(project_id, user))

    @router.patch("/projects/{project_id}/termins")
    async def reconfigure_termins(project_id: str, config_data: TerminReconfigure,
                                  current_user: dict = Depends(get_current_user)):
        user = await permission_checker.get_authenticated_user(current_user)
        configs = [config.model_dump() for config in config_data.termins]
        return success(await services.termins.reconfigure(project_id, configs, user))

    # ============================================
    # RETENSI ENDPOINTS
    # ============================================

    @router.get("/projects/{project_id}/retensi")
    async def get_retensi(project_id: str, current_user: dict = Depends(get_current_user)):
        """Retensi with countdown reconciled against the current time"""
        user = await permission_checker.get_authenticated_user(current_user)
        return success(retensi=await services.retensi.get(project_id, user))

    @router.post("/projects/{project_id}/retensi")
    async def retensi_action(project_id: str, action_data: RetensiAction,
                             current_user: dict = Depends(get_current_user)):
        user = await permission_checker.get_authenticated_user(current_user)
        logger.info(f"[RETENSI] {action_data.action} on project {project_id} by {user['email']}")
        payload = action_data.model_dump(exclude={"action"})
        result = await services.retensi.perform(project_id, action_data.action, user, payload)
        return success(result)

    # ============================================
    # ADDITIONAL WORK ENDPOINTS
    # ============================================

    @router.get("/projects/{project_id}/additional-work")
    async def list_additional_work(project_id: str, current_user: dict = Depends(get_current_user)):
        user = await permission_checker.get_authenticated_user(current_user)
        return success(additional_works=await services.additional_work.list_works(project_id, user))

    @router.post("/projects/{project_id}/additional-work")
    async def additional_work_action(project_id: str, action_data: AdditionalWorkAction,
                                     current_user: dict = Depends(get_current_user)):
        """create (Vendor); approve, reject (Client)"""
        user = await permission_checker.get_authenticated_user(current_user)
        engine = services.additional_work

        if action_data.action == "create":
            result = await engine.create(
                project_id, user,
                judul=action_data.judul,
                amount=action_data.amount,
                deskripsi=action_data.deskripsi,
                files=action_data.files
            )
        elif action_data.action == "approve":
            result = await engine.approve(project_id, action_data.additional_work_id, user)
        elif action_data.action == "reject":
            result = await engine.reject(project_id, action_data.additional_work_id, user)
        else:
            raise EscrowValidationError("Aksi tidak valid", details={"action": action_data.action})
        return success(result)

    # ============================================
    # REDUCTION ENDPOINTS
    # ============================================

    @router.get("/projects/{project_id}/reduction")
    async def list_reductions(project_id: str, current_user: dict = Depends(get_current_user)):
        user = await permission_checker.get_authenticated_user(current_user)
        return success(change_requests=await services.reduction.list_requests(project_id, user))

    @router.post("/projects/{project_id}/reduction")
    async def reduction_action(project_id: str, action_data: ReductionAction,
                               current_user: dict = Depends(get_current_user)):
        """create (Vendor); approve_client, reject_client (Client)"""
        user = await permission_checker.get_authenticated_user(current_user)
        engine = services.reduction

        if action_data.action == "create":
            result = await engine.create(
                project_id, user,
                milestone_id=action_data.milestone_id,
                amount=action_data.amount,
                alasan=action_data.alasan,
                files=action_data.files
            )
        elif action_data.action == "approve_client":
            result = await engine.approve_client(project_id, action_data.change_request_id, user)
        elif action_data.action == "reject_client":
            result = await engine.reject_client(project_id, action_data.change_request_id, user)
        else:
            raise EscrowValidationError("Aksi tidak valid", details={"action": action_data.action})
        return success(result)

    return router
