"""Preview of what deploying a template to an instance would change."""

import logging
from typing import Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from trashsync.database import async_session
from trashsync.exceptions import RemoteError
from trashsync.models import ServiceInstance
from trashsync.schemas import (
    ConflictResolution,
    CustomFormatConflict,
    CustomFormatDeploymentItem,
    DeploymentPreview,
    PreviewSummary,
)
from trashsync.services.arr_client import ArrClient, get_arr_client
from trashsync.services.cf_matching import match_remote_custom_formats, specifications_equal
from trashsync.services.template_config import (
    effective_custom_formats,
    load_config_data,
    load_deployment_target,
)

logger = logging.getLogger(__name__)


def resolution_for(
    conflict_resolutions: Optional[Dict[str, ConflictResolution]],
    trash_id: str,
    name: str,
) -> Optional[ConflictResolution]:
    """Resolution chosen for a CF, keyed by trash id or by name."""
    if not conflict_resolutions:
        return None
    return conflict_resolutions.get(trash_id) or conflict_resolutions.get(name)


class DeploymentPreviewService:
    """Read-only comparison of a template with the live state of an instance."""

    def __init__(
        self,
        session_factory: async_sessionmaker = None,
        client_factory: Callable[[ServiceInstance], ArrClient] = get_arr_client,
    ):
        self._session_factory = session_factory or async_session
        self.client_factory = client_factory

    async def generate_preview(
        self,
        template_id: str,
        instance_id: str,
        conflict_resolutions: Optional[Dict[str, ConflictResolution]] = None,
    ) -> DeploymentPreview:
        async with self._session_factory() as session:
            template, instance = await load_deployment_target(session, template_id, instance_id)

        config = load_config_data(template)
        custom_formats = effective_custom_formats(template, config, instance_id)

        client = self.client_factory(instance)
        instance_reachable = False
        instance_version = None
        remote_cfs: List[Dict] = []
        try:
            status = await client.get_system_status() or {}
            instance_version = status.get("version")
            remote_cfs = await client.get_custom_formats()
            instance_reachable = True
        except RemoteError as e:
            logger.warning(f"Instance {instance.label} unreachable during preview: {e}")

        matches = match_remote_custom_formats(custom_formats, remote_cfs)
        summary = PreviewSummary()
        items: List[CustomFormatDeploymentItem] = []

        for cf in custom_formats:
            trash_id = cf["trashId"]
            name = cf.get("name", "")
            template_specs = (cf.get("originalConfig") or {}).get("specifications") or []
            remote, match_method = matches.get(trash_id, (None, None))
            resolution = resolution_for(conflict_resolutions, trash_id, name)
            conflicts: List[CustomFormatConflict] = []

            if remote is None:
                action = "create"
                summary.new_custom_formats += 1
            else:
                remote_specs = remote.get("specifications") or []
                if not specifications_equal(template_specs, remote_specs):
                    conflicts.append(CustomFormatConflict(
                        cf_trash_id=trash_id,
                        cf_name=name,
                        template_value=template_specs,
                        instance_value=remote_specs,
                        resolution=resolution,
                    ))
                if resolution == "keep_existing":
                    action = "skip"
                    summary.skipped_custom_formats += 1
                else:
                    action = "update"
                    summary.updated_custom_formats += 1

            summary.total_conflicts += len(conflicts)
            summary.unresolved_conflicts += sum(1 for c in conflicts if c.resolution is None)
            items.append(CustomFormatDeploymentItem(
                trash_id=trash_id,
                name=name,
                action=action,
                match_method=match_method,
                template_data=cf.get("originalConfig"),
                instance_data=remote,
                conflicts=conflicts,
                has_conflicts=bool(conflicts),
            ))

        summary.total_items = len(items)
        # Deletions are never planned
        summary.deleted_custom_formats = 0

        return DeploymentPreview(
            template_id=template.id,
            template_name=template.name,
            instance_id=instance.id,
            instance_label=instance.label,
            instance_service_type=instance.service.upper(),
            summary=summary,
            custom_formats=items,
            can_deploy=instance_reachable and (
                summary.unresolved_conflicts == 0 or summary.total_conflicts == 0
            ),
            requires_conflict_resolution=summary.unresolved_conflicts > 0,
            instance_reachable=instance_reachable,
            instance_version=instance_version,
        )


def get_preview_service() -> DeploymentPreviewService:
    return DeploymentPreviewService()
