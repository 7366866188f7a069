from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db
from app.crm.automation.queue import AutomationQueue
from app.crm.automation.runner import AutomationExecutionRunner
from app.crm.schemas import (
    ActivityRead,
    AutomationDryRunRequest,
    AutomationDryRunResponse,
    AutomationLogRead,
    AutomationRuleCreate,
    AutomationRuleRead,
    AutomationRuleUpdate,
    AutomationRunRequest,
    AutomationRunResponse,
    CompanyCreate,
    CompanyRead,
    ContactCreate,
    ContactRead,
    DealBulkMoveStageRequest,
    DealBulkMoveStageResponse,
    DealBulkUpdateOwnerRequest,
    DealBulkUpdateOwnerResponse,
    DealContactLinkRequest,
    DealCreate,
    DealHistoryRead,
    DealMoveStageRequest,
    DealRead,
    DealUpdate,
    PipelineCreate,
    PipelineMetricsRead,
    PipelineRead,
    PipelineStageCreate,
    PipelineStageRead,
    PipelineStageReorderRequest,
    PipelineStageUpdate,
    PipelineUpdate,
    TagCreate,
    TagRead,
    TaskRead,
    UserCreate,
    UserRead,
)
from app.crm.service import (
    ActorUser,
    AutomationRuleService,
    DealService,
    DirectoryService,
    PipelineService,
)


pipelines_router = APIRouter(prefix="/api/crm", tags=["crm.pipelines"])
directory_router = APIRouter(prefix="/api/crm", tags=["crm.directory"])
deals_router = APIRouter(prefix="/api/crm", tags=["crm.deals"])
automations_router = APIRouter(prefix="/api/crm", tags=["crm.automations"])
pipeline_service = PipelineService()
directory_service = DirectoryService()
deal_service = DealService()
automation_service = AutomationRuleService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _parse_uuid_list(raw: str | None) -> list[uuid.UUID]:
    if not raw:
        return []
    return [uuid.UUID(item.strip()) for item in raw.split(",") if item.strip()]


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    try:
        allowed_workspaces = _parse_uuid_list(request.headers.get("x-allowed-workspaces"))
        current_raw = request.headers.get("x-workspace-id")
        current_workspace_id = uuid.UUID(current_raw) if current_raw else None
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid workspace header") from exc

    if not allowed_workspaces and current_workspace_id is not None:
        allowed_workspaces = [current_workspace_id]
    if current_workspace_id is None and len(allowed_workspaces) == 1:
        current_workspace_id = allowed_workspaces[0]

    return ActorUser(
        user_id=auth_user.sub,
        workspace_ids=allowed_workspaces,
        current_workspace_id=current_workspace_id,
        permissions=set(auth_user.roles),
        correlation_id=correlation_id,
    )


def get_automation_queue(request: Request) -> AutomationQueue:
    return request.app.state.automation_queue


def get_automation_runner(request: Request) -> AutomationExecutionRunner:
    return request.app.state.automation_runner


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


@pipelines_router.post("/pipelines", response_model=PipelineRead, status_code=status.HTTP_201_CREATED)
def create_pipeline(
    request: Request,
    dto: PipelineCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_service.create_pipeline(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_pipeline_create_failed")


@pipelines_router.get("/pipelines/{pipeline_id}", response_model=PipelineRead)
def get_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.read")
        return pipeline_service.get_pipeline(db, user, pipeline_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_pipeline_get_failed")


@pipelines_router.patch("/pipelines/{pipeline_id}", response_model=PipelineRead)
def update_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    dto: PipelineUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_service.update_pipeline(db, user, pipeline_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_pipeline_update_failed")


@pipelines_router.delete("/pipelines/{pipeline_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.pipelines.manage")
        pipeline_service.delete_pipeline(db, user, pipeline_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _failed(request, exc, "crm_pipeline_delete_failed")


@pipelines_router.post(
    "/pipelines/{pipeline_id}/stages",
    response_model=PipelineStageRead,
    status_code=status.HTTP_201_CREATED,
)
def add_pipeline_stage(
    request: Request,
    pipeline_id: uuid.UUID,
    dto: PipelineStageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineStageRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_service.add_stage(db, user, pipeline_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_pipeline_stage_create_failed")


@pipelines_router.get("/pipelines/{pipeline_id}/stages", response_model=list[PipelineStageRead])
def list_pipeline_stages(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineStageRead] | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.read")
        return pipeline_service.list_stages(db, user, pipeline_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_pipeline_stage_list_failed")


@pipelines_router.get("/pipelines/{pipeline_id}/metrics", response_model=PipelineMetricsRead)
def get_pipeline_metrics(
    request: Request,
    pipeline_id: uuid.UUID,
    created_from: datetime | None = Query(default=None),
    created_to: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineMetricsRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.read")
        return pipeline_service.get_pipeline_metrics(
            db,
            user,
            pipeline_id,
            created_from=created_from,
            created_to=created_to,
        )
    except HTTPException as exc:
        return _failed(request, exc, "crm_pipeline_metrics_failed")


@pipelines_router.put("/pipelines/{pipeline_id}/stages/order", response_model=list[PipelineStageRead])
def reorder_pipeline_stages(
    request: Request,
    pipeline_id: uuid.UUID,
    dto: PipelineStageReorderRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineStageRead] | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_service.reorder_stages(db, user, pipeline_id, dto.stage_ids)
    except HTTPException as exc:
        return _failed(request, exc, "crm_pipeline_stage_reorder_failed")


@pipelines_router.patch("/pipelines/{pipeline_id}/stages/{stage_id}", response_model=PipelineStageRead)
def update_pipeline_stage(
    request: Request,
    pipeline_id: uuid.UUID,
    stage_id: uuid.UUID,
    dto: PipelineStageUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineStageRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_service.update_stage(db, user, pipeline_id, stage_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_pipeline_stage_update_failed")


@pipelines_router.delete(
    "/pipelines/{pipeline_id}/stages/{stage_id}",
    status_code=status.HTTP_200_OK,
    response_model=None,
)
def delete_pipeline_stage(
    request: Request,
    pipeline_id: uuid.UUID,
    stage_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.pipelines.manage")
        pipeline_service.delete_stage(db, user, pipeline_id, stage_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _failed(request, exc, "crm_pipeline_stage_delete_failed")


@directory_router.post("/users", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(
    request: Request,
    dto: UserCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    try:
        require_permission(user, "crm.directory.manage")
        return directory_service.create_user(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_user_create_failed")


@directory_router.post("/companies", response_model=CompanyRead, status_code=status.HTTP_201_CREATED)
def create_company(
    request: Request,
    dto: CompanyCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CompanyRead | JSONResponse:
    try:
        require_permission(user, "crm.directory.manage")
        return directory_service.create_company(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_company_create_failed")


@directory_router.post("/contacts", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    request: Request,
    dto: ContactCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.directory.manage")
        return directory_service.create_contact(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_contact_create_failed")


@directory_router.post("/tags", response_model=TagRead, status_code=status.HTTP_201_CREATED)
def create_tag(
    request: Request,
    dto: TagCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TagRead | JSONResponse:
    try:
        require_permission(user, "crm.tags.manage")
        return directory_service.create_tag(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_tag_create_failed")


@directory_router.get("/tags", response_model=list[TagRead])
def list_tags(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TagRead] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return directory_service.list_tags(db, user)
    except HTTPException as exc:
        return _failed(request, exc, "crm_tag_list_failed")


@deals_router.post("/deals", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    dto: DealCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.create")
        return deal_service.create_deal(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_create_failed")


@deals_router.get("/deals", response_model=list[DealRead])
def list_deals(
    request: Request,
    pipeline_id: uuid.UUID | None = Query(default=None),
    stage_id: uuid.UUID | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    owner_id: uuid.UUID | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DealRead] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.list_deals(
            db,
            user,
            pipeline_id=pipeline_id,
            stage_id=stage_id,
            status_filter=status_filter,
            owner_id=owner_id,
            limit=limit,
            offset=offset,
        )
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_list_failed")


@deals_router.post("/deals/bulk-move-stage", response_model=DealBulkMoveStageResponse)
def bulk_move_deals(
    request: Request,
    dto: DealBulkMoveStageRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealBulkMoveStageResponse | JSONResponse:
    try:
        require_permission(user, "crm.deals.update")
        return deal_service.bulk_move_to_stage(db, user, dto.deal_ids, dto.stage_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_bulk_move_failed")


@deals_router.post("/deals/bulk-update-owner", response_model=DealBulkUpdateOwnerResponse)
def bulk_update_deal_owner(
    request: Request,
    dto: DealBulkUpdateOwnerRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealBulkUpdateOwnerResponse | JSONResponse:
    try:
        require_permission(user, "crm.deals.update")
        return deal_service.bulk_update_owner(db, user, dto.deal_ids, dto.owner_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_bulk_update_owner_failed")


@deals_router.get("/deals/{deal_id}", response_model=DealRead)
def get_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.get_deal(db, user, deal_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_get_failed")


@deals_router.patch("/deals/{deal_id}", response_model=DealRead)
def update_deal(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.update")
        return deal_service.update_deal(db, user, deal_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_update_failed")


@deals_router.post("/deals/{deal_id}/move-stage", response_model=DealRead)
def move_deal_stage(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealMoveStageRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.update")
        return deal_service.move_to_stage(db, user, deal_id, dto.stage_id, reason=dto.reason)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_move_stage_failed")


@deals_router.delete("/deals/{deal_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.deals.update")
        deal_service.soft_delete_deal(db, user, deal_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_delete_failed")


@deals_router.get("/deals/{deal_id}/history", response_model=DealHistoryRead)
def get_deal_history(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealHistoryRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.get_deal_history(db, user, deal_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_history_failed")


@deals_router.post("/deals/{deal_id}/contacts", response_model=DealRead)
def add_deal_contact(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealContactLinkRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.update")
        return deal_service.add_contact(db, user, deal_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_contact_add_failed")


@deals_router.delete("/deals/{deal_id}/contacts/{contact_id}", response_model=DealRead)
def remove_deal_contact(
    request: Request,
    deal_id: uuid.UUID,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.update")
        return deal_service.remove_contact(db, user, deal_id, contact_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_contact_remove_failed")


@deals_router.get("/deals/{deal_id}/tasks", response_model=list[TaskRead])
def list_deal_tasks(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TaskRead] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.list_tasks(db, user, deal_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_task_list_failed")


@deals_router.get("/deals/{deal_id}/activities", response_model=list[ActivityRead])
def list_deal_activities(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.list_activities(db, user, deal_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_activity_list_failed")


@deals_router.get("/deals/{deal_id}/automation-logs", response_model=list[AutomationLogRead])
def list_deal_automation_logs(
    request: Request,
    deal_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AutomationLogRead] | JSONResponse:
    try:
        require_permission(user, "crm.automations.read")
        return automation_service.list_logs_for_deal(db, user, deal_id, limit=limit)
    except HTTPException as exc:
        return _failed(request, exc, "crm_automation_log_list_failed")


@automations_router.get("/pipelines/{pipeline_id}/automations", response_model=list[AutomationRuleRead])
def list_automations(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AutomationRuleRead] | JSONResponse:
    try:
        require_permission(user, "crm.automations.read")
        return automation_service.list_rules(db, user, pipeline_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_automation_list_failed")


@automations_router.post(
    "/pipelines/{pipeline_id}/automations/defaults",
    response_model=list[AutomationRuleRead],
    status_code=status.HTTP_201_CREATED,
)
def create_default_automations(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AutomationRuleRead] | JSONResponse:
    try:
        require_permission(user, "crm.automations.manage")
        return automation_service.create_default_automations(db, user, pipeline_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_automation_defaults_failed")


@automations_router.post("/automations", response_model=AutomationRuleRead, status_code=status.HTTP_201_CREATED)
def create_automation(
    request: Request,
    dto: AutomationRuleCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRuleRead | JSONResponse:
    try:
        require_permission(user, "crm.automations.manage")
        return automation_service.create_rule(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_automation_create_failed")


@automations_router.get("/automations/{automation_id}", response_model=AutomationRuleRead)
def get_automation(
    request: Request,
    automation_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRuleRead | JSONResponse:
    try:
        require_permission(user, "crm.automations.read")
        return automation_service.get_rule(db, user, automation_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_automation_get_failed")


@automations_router.patch("/automations/{automation_id}", response_model=AutomationRuleRead)
def update_automation(
    request: Request,
    automation_id: uuid.UUID,
    dto: AutomationRuleUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRuleRead | JSONResponse:
    try:
        require_permission(user, "crm.automations.manage")
        return automation_service.update_rule(db, user, automation_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_automation_update_failed")


@automations_router.delete("/automations/{automation_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_automation(
    request: Request,
    automation_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.automations.manage")
        automation_service.delete_rule(db, user, automation_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _failed(request, exc, "crm_automation_delete_failed")


@automations_router.post("/automations/{automation_id}/dry-run", response_model=AutomationDryRunResponse)
def dry_run_automation(
    request: Request,
    automation_id: uuid.UUID,
    dto: AutomationDryRunRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationDryRunResponse | JSONResponse:
    try:
        require_permission(user, "crm.automations.read")
        return automation_service.dry_run(db, user, automation_id, dto.deal_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_automation_dry_run_failed")


@automations_router.post(
    "/automations/{automation_id}/run",
    response_model=AutomationRunResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def run_automation(
    request: Request,
    automation_id: uuid.UUID,
    dto: AutomationRunRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    queue: AutomationQueue = Depends(get_automation_queue),
    runner: AutomationExecutionRunner = Depends(get_automation_runner),
) -> AutomationRunResponse | JSONResponse:
    try:
        require_permission(user, "crm.automations.execute")
        return automation_service.run_now(db, user, automation_id, dto.deal_id, queue=queue, runner=runner)
    except HTTPException as exc:
        return _failed(request, exc, "crm_automation_run_failed")


@automations_router.get("/automations/{automation_id}/logs", response_model=list[AutomationLogRead])
def list_automation_logs(
    request: Request,
    automation_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AutomationLogRead] | JSONResponse:
    try:
        require_permission(user, "crm.automations.read")
        return automation_service.list_logs_for_rule(db, user, automation_id, limit=limit)
    except HTTPException as exc:
        return _failed(request, exc, "crm_automation_log_list_failed")


@automations_router.get("/automation-logs/{log_id}", response_model=AutomationLogRead)
def get_automation_log(
    request: Request,
    log_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationLogRead | JSONResponse:
    try:
        require_permission(user, "crm.automations.read")
        return automation_service.get_log(db, user, log_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_automation_log_get_failed")
