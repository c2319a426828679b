"""Deployment preview, execution and rollback API endpoints."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Dict, List, Optional
from trashsync.schemas import ConflictResolution
from trashsync.services.deployment_preview import DeploymentPreviewService, get_preview_service
from trashsync.services.deployment_executor import DeploymentExecutor, get_deployment_executor

router = APIRouter()


class DeploymentRequest(BaseModel):
    template_id: str
    instance_id: str
    # Keyed by trash id or CF name
    conflict_resolutions: Dict[str, ConflictResolution] = {}


class BulkDeploymentRequest(BaseModel):
    template_id: str
    instance_ids: List[str]
    conflict_resolutions: Dict[str, ConflictResolution] = {}


@router.post("/preview")
async def preview_deployment(
    request: DeploymentRequest,
    preview_service: DeploymentPreviewService = Depends(get_preview_service)
):
    """Compare a template with the live state of an instance without writing anything."""
    preview = await preview_service.generate_preview(
        request.template_id, request.instance_id, request.conflict_resolutions
    )
    return preview.model_dump(mode="json", by_alias=True)


@router.post("/execute")
async def execute_deployment(
    request: DeploymentRequest,
    executor: DeploymentExecutor = Depends(get_deployment_executor)
):
    result = await executor.deploy(request.template_id, request.instance_id, request.conflict_resolutions)
    return result.model_dump(mode="json", by_alias=True)


@router.post("/execute-bulk")
async def execute_bulk_deployment(
    request: BulkDeploymentRequest,
    executor: DeploymentExecutor = Depends(get_deployment_executor)
):
    result = await executor.deploy_bulk(request.template_id, request.instance_ids, request.conflict_resolutions)
    return result.model_dump(mode="json", by_alias=True)


@router.post("/{deployment_id}/rollback")
async def rollback_deployment(
    deployment_id: str,
    executor: DeploymentExecutor = Depends(get_deployment_executor)
):
    result = await executor.rollback(deployment_id)
    return result.model_dump(mode="json", by_alias=True)


@router.get("/history")
async def get_deployment_history(
    template_id: Optional[str] = None,
    instance_id: Optional[str] = None,
    limit: int = 50,
    executor: DeploymentExecutor = Depends(get_deployment_executor)
):
    records = await executor.list_history(template_id=template_id, instance_id=instance_id, limit=limit)
    return [r.model_dump(mode="json", by_alias=True) for r in records]
