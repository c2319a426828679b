"""Parsing of the JSON documents stored on a template row."""

import json
from typing import Any, Dict, List, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from trashsync.exceptions import CorruptDataError, NotFoundError, ServiceMismatchError
from trashsync.models import ServiceInstance, TrashTemplate
from trashsync.services.cf_matching import apply_instance_overrides


def load_config_data(template: TrashTemplate) -> Dict[str, Any]:
    """Return ``configData`` as a dict; a parse failure names the template."""
    try:
        config = json.loads(template.config_data or "{}")
    except ValueError as e:
        raise CorruptDataError(
            f"Template '{template.name}' (id: {template.id}) has corrupt configData: {e}",
            template.id,
        ) from e
    if not isinstance(config, dict):
        raise CorruptDataError(
            f"Template '{template.name}' (id: {template.id}) configData is not an object",
            template.id,
        )
    return config


def load_instance_overrides(template: TrashTemplate, instance_id: str) -> Dict[str, Any]:
    """Overlay stored for one instance, ``{}`` when the template has none."""
    if not template.instance_overrides:
        return {}
    try:
        overrides = json.loads(template.instance_overrides)
    except ValueError as e:
        raise CorruptDataError(
            f"Template {template.id} has corrupt instanceOverrides: {e}", template.id
        ) from e
    if not isinstance(overrides, dict):
        raise CorruptDataError(f"Template {template.id} instanceOverrides is not an object", template.id)
    return overrides.get(instance_id) or {}


def score_set_of(config: Dict[str, Any]) -> str:
    return (config.get("qualityProfile") or {}).get("trash_score_set") or "default"


async def load_deployment_target(
    session: AsyncSession,
    template_id: str,
    instance_id: str,
) -> Tuple[TrashTemplate, ServiceInstance]:
    """Fetch a live template and an instance that runs the same service."""
    template = await session.get(TrashTemplate, template_id)
    if template is None or template.deleted_at is not None:
        raise NotFoundError("Template", template_id)
    instance = await session.get(ServiceInstance, instance_id)
    if instance is None:
        raise NotFoundError("Instance", instance_id)
    if (template.service_type or "").lower() != (instance.service or "").lower():
        raise ServiceMismatchError(template.service_type, instance.service)
    return template, instance


def effective_custom_formats(
    template: TrashTemplate,
    config: Dict[str, Any],
    instance_id: str,
) -> List[Dict[str, Any]]:
    """The template's custom formats as they apply to one instance."""
    overrides = load_instance_overrides(template, instance_id)
    return apply_instance_overrides(config.get("customFormats") or [], overrides)
