"""Template diff and auto-sync API endpoints."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Any, Dict, Optional
from trashsync.services.template_service import TemplateService, get_template_service

router = APIRouter()


class AutoSyncRequest(BaseModel):
    """Request to move a template to a newer upstream commit."""
    target_commit: Optional[str] = None
    accept_additions: bool = False
    force: bool = False


class ManualEditRequest(BaseModel):
    config: Dict[str, Any]
    description: Optional[str] = None


@router.get("")
async def list_templates(
    service_type: Optional[str] = None,
    service: TemplateService = Depends(get_template_service)
):
    templates = await service.list_templates(service_type)
    return [
        {
            "id": t.id,
            "name": t.name,
            "serviceType": t.service_type,
            "commitHash": t.commit_hash,
            "hasUserModifications": t.has_user_modifications,
        }
        for t in templates
    ]


@router.get("/updates")
async def check_for_updates(service: TemplateService = Depends(get_template_service)):
    """Templates that are behind the upstream guide repository."""
    updates = await service.check_for_updates()
    return [u.model_dump(mode="json", by_alias=True) for u in updates]


@router.get("/{template_id}/diff")
async def get_template_diff(
    template_id: str,
    target_commit: Optional[str] = None,
    service: TemplateService = Depends(get_template_service)
):
    diff = await service.compute_diff(template_id, target_commit)
    return diff.model_dump(mode="json", by_alias=True)


@router.post("/{template_id}/auto-sync")
async def auto_sync_template(
    template_id: str,
    request: AutoSyncRequest,
    service: TemplateService = Depends(get_template_service)
):
    result = await service.auto_sync(
        template_id,
        target_commit=request.target_commit,
        accept_additions=request.accept_additions,
        force=request.force,
    )
    return result.model_dump(mode="json", by_alias=True)


@router.put("/{template_id}/config")
async def edit_template_config(
    template_id: str,
    request: ManualEditRequest,
    service: TemplateService = Depends(get_template_service)
):
    """Save a manual edit; the template is excluded from auto-sync afterwards."""
    template = await service.mark_user_modified(template_id, request.config, request.description)
    return {"success": True, "id": template.id, "hasUserModifications": True}


@router.delete("/{template_id}")
async def delete_template(
    template_id: str,
    service: TemplateService = Depends(get_template_service)
):
    await service.soft_delete(template_id)
    return {"success": True}
