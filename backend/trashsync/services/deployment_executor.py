"""Applies a template to a remote instance and rolls deployments back.

A deployment moves through PENDING, BACKING_UP and APPLYING and is then
finalized once as SUCCESS, PARTIAL_SUCCESS or FAILED. Only create and update
calls are ever sent to the instance.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from trashsync.config import settings
from trashsync.database import async_session
from trashsync.exceptions import (
    ConcurrencyError,
    ConflictError,
    NotFoundError,
    RemoteError,
    RollbackUnavailableError,
)
from trashsync.models import (
    ServiceInstance,
    TemplateDeploymentHistory,
    TrashBackup,
    TrashSyncHistory,
    TrashTemplate,
)
from trashsync.schemas import (
    AppliedConfig,
    ApplyResult,
    BulkDeploymentResult,
    ConflictResolution,
    DeploymentHistoryRecord,
    FailedConfig,
    RollbackResult,
)
from trashsync.services.arr_client import ArrClient, get_arr_client
from trashsync.services.backup_manager import BackupManager
from trashsync.services.cf_matching import (
    get_current_score,
    match_remote_custom_formats,
    specifications_equal,
    transform_fields_to_array,
)
from trashsync.services.deployment_preview import resolution_for
from trashsync.services.retry import with_retry
from trashsync.services.template_config import (
    effective_custom_formats,
    load_config_data,
    load_deployment_target,
    score_set_of,
)
from trashsync.utils import utcnow

logger = logging.getLogger(__name__)

QUALITY_PROFILE_KEYS = ("upgradeAllowed", "cutoff", "minFormatScore", "cutoffFormatScore", "minUpgradeFormatScore")


class DeploymentGuard:
    """In-process set of targets with a deployment in flight.

    Does not survive a restart and does not coordinate between processes.
    """

    def __init__(self):
        self._active: Set[str] = set()

    def is_active(self, key: str) -> bool:
        return key in self._active

    @asynccontextmanager
    async def hold(self, key: str):
        if key in self._active:
            raise ConcurrencyError(key)
        self._active.add(key)
        try:
            yield
        finally:
            self._active.discard(key)


deployment_guard = DeploymentGuard()


def merge_format_items(format_items: List[Dict], scores: Dict[int, int]) -> List[Dict]:
    """Set scores on a profile's formatItems, appending formats it does not list yet."""
    merged = []
    seen = set()
    for item in format_items or []:
        format_id = item.get("format")
        if format_id in scores:
            item = {**item, "score": scores[format_id]}
        seen.add(format_id)
        merged.append(item)
    for format_id, score in scores.items():
        if format_id not in seen:
            merged.append({"format": format_id, "score": score})
    return merged


class DeploymentExecutor:
    """Sole writer of deployment history; triggers backups before every write."""

    def __init__(
        self,
        session_factory: async_sessionmaker = None,
        backup_manager: BackupManager = None,
        client_factory: Callable[[ServiceInstance], ArrClient] = get_arr_client,
        guard: DeploymentGuard = None,
        throttle_seconds: float = None,
        max_retries: int = None,
        retry_base_delay: float = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._session_factory = session_factory or async_session
        self.backup_manager = backup_manager or BackupManager(self._session_factory)
        self.client_factory = client_factory
        self.guard = guard or deployment_guard
        self.throttle_seconds = settings.deploy_throttle_seconds if throttle_seconds is None else throttle_seconds
        self.max_retries = settings.max_retries if max_retries is None else max_retries
        self.retry_base_delay = settings.retry_base_delay_seconds if retry_base_delay is None else retry_base_delay
        self.sleep = sleep
        self._calls = 0

    # ------------------------------------------------------------------
    # Remote call plumbing
    # ------------------------------------------------------------------

    async def _call(self, fn: Callable[[], Awaitable[Any]], description: str) -> Any:
        """Throttled, retried remote call."""
        if self._calls and self.throttle_seconds > 0:
            await self.sleep(self.throttle_seconds)
        self._calls += 1
        return await with_retry(
            fn,
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            sleep=self.sleep,
            description=description,
        )

    async def _update_history(self, history_id: str, **values) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(TemplateDeploymentHistory)
                .where(TemplateDeploymentHistory.id == history_id)
                .values(**values)
            )
            await session.commit()

    async def _finalize(self, result: ApplyResult, status: str) -> ApplyResult:
        result.status = status
        result.success = status == "SUCCESS"
        result.completed_at = utcnow()
        await self._update_history(
            result.deployment_id,
            status=status,
            completed_at=result.completed_at,
            created_count=result.created_count,
            updated_count=result.updated_count,
            skipped_count=result.skipped_count,
            failed_count=result.failed_count,
            applied_configs=[c.model_dump(by_alias=True) for c in result.applied_configs],
            failed_configs=[c.model_dump(by_alias=True) for c in result.failed_configs],
            errors=result.errors,
            backup_id=result.backup_id,
        )
        logger.info(
            f"Deployment {result.deployment_id} of template {result.template_id} to "
            f"{result.instance_label}: {status} ({result.created_count} created, "
            f"{result.updated_count} updated, {result.skipped_count} skipped, {result.failed_count} failed)"
        )
        return result

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------

    async def deploy(
        self,
        template_id: str,
        instance_id: str,
        conflict_resolutions: Optional[Dict[str, ConflictResolution]] = None,
    ) -> ApplyResult:
        """Deploy a template to one instance.

        Raises ConcurrencyError when a deployment to the instance is already
        running, and NotFoundError, ServiceMismatchError or CorruptDataError
        before anything is recorded. Every other outcome is a result object
        backed by a history row.
        """
        async with self.guard.hold(instance_id):
            return await self._deploy(template_id, instance_id, conflict_resolutions or {})

    async def _deploy(
        self,
        template_id: str,
        instance_id: str,
        conflict_resolutions: Dict[str, ConflictResolution],
    ) -> ApplyResult:
        async with self._session_factory() as session:
            template, instance = await load_deployment_target(session, template_id, instance_id)
        config = load_config_data(template)
        custom_formats = effective_custom_formats(template, config, instance_id)

        history = TemplateDeploymentHistory(
            template_id=template.id,
            instance_id=instance.id,
            status="PENDING",
            started_at=utcnow(),
            total_count=len(custom_formats),
            template_snapshot=template.config_data,
        )
        async with self._session_factory() as session:
            session.add(history)
            await session.commit()

        result = ApplyResult(
            deployment_id=history.id,
            template_id=template.id,
            instance_id=instance.id,
            instance_label=instance.label,
            status="PENDING",
            success=False,
            started_at=history.started_at,
        )
        client = self.client_factory(instance)

        try:
            await self._update_history(history.id, status="BACKING_UP")
            try:
                remote_cfs = await self._call(client.get_custom_formats, "fetch custom formats")
                quality_profiles = await self._call(client.get_quality_profiles, "fetch quality profiles")
                backup = await self.backup_manager.create_backup(
                    instance, remote_cfs, quality_profiles, reason=f"deployment of {template.name}"
                )
            except RemoteError as e:
                logger.error(f"Backup of {instance.label} failed, aborting deployment: {e}")
                result.errors.append(f"Backup failed: {e}")
                return await self._finalize(result, "FAILED")

            result.backup_id = backup.id
            await self._update_history(history.id, status="APPLYING", backup_id=backup.id)

            await self._apply_custom_formats(client, custom_formats, remote_cfs, conflict_resolutions, result)

            if config.get("qualityProfile"):
                await self._sync_quality_profile(client, template, config, custom_formats, conflict_resolutions, result)

            return await self._finalize(result, "SUCCESS" if result.failed_count == 0 else "PARTIAL_SUCCESS")
        except Exception as e:
            logger.error(f"Deployment {history.id} aborted: {e}")
            result.errors.append(f"Deployment aborted: {e}")
            return await self._finalize(result, "FAILED")

    async def _apply_custom_formats(
        self,
        client: ArrClient,
        custom_formats: List[Dict[str, Any]],
        remote_cfs: List[Dict[str, Any]],
        conflict_resolutions: Dict[str, ConflictResolution],
        result: ApplyResult,
    ) -> None:
        matches = match_remote_custom_formats(custom_formats, remote_cfs)

        for cf in custom_formats:
            trash_id = cf["trashId"]
            name = cf.get("name", "")
            existing = matches.get(trash_id, (None, None))[0]
            resolution = resolution_for(conflict_resolutions, trash_id, name)

            if existing is not None and resolution == "keep_existing":
                result.skipped_count += 1
                continue

            template_specs = (cf.get("originalConfig") or {}).get("specifications") or []
            if (
                existing is not None
                and resolution is None
                and not specifications_equal(template_specs, existing.get("specifications") or [])
            ):
                # Instance edits are only overwritten with an explicit use_template
                conflict = ConflictError(
                    trash_id,
                    f'Custom format "{name}" differs on the instance; resolve with use_template or keep_existing',
                )
                logger.warning(f"Skipping unresolved conflict for {name} ({trash_id})")
                result.failed_count += 1
                result.failed_configs.append(FailedConfig(trash_id=trash_id, name=name, error=str(conflict)))
                result.errors.append(str(conflict))
                continue

            specifications = transform_fields_to_array(template_specs)
            try:
                if existing is not None and existing.get("id") is not None:
                    payload = {**existing, "name": name, "specifications": specifications}
                    await self._call(
                        lambda: client.update_custom_format(existing["id"], payload),
                        f"update custom format {name}",
                    )
                    result.updated_count += 1
                    result.applied_configs.append(AppliedConfig(trash_id=trash_id, name=name, action="update"))
                else:
                    payload = {
                        "name": name,
                        "includeCustomFormatWhenRenaming": False,
                        "specifications": specifications,
                    }
                    await self._call(
                        lambda: client.create_custom_format(payload),
                        f"create custom format {name}",
                    )
                    result.created_count += 1
                    result.applied_configs.append(AppliedConfig(trash_id=trash_id, name=name, action="create"))
            except RemoteError as e:
                logger.error(f"Failed to deploy custom format {name}: {e}")
                result.failed_count += 1
                result.failed_configs.append(
                    FailedConfig(trash_id=trash_id, name=name, error=str(e), status_code=e.status_code)
                )
                result.errors.append(f'Failed to deploy "{name}": {e}')

    async def _sync_quality_profile(
        self,
        client: ArrClient,
        template: TrashTemplate,
        config: Dict[str, Any],
        custom_formats: List[Dict[str, Any]],
        conflict_resolutions: Dict[str, ConflictResolution],
        result: ApplyResult,
    ) -> None:
        """Create or update the template's quality profile with the deployed CF scores."""
        profile_config = config.get("qualityProfile") or {}
        profile_name = profile_config.get("name") or template.name
        score_set = score_set_of(config)

        try:
            profiles = await self._call(client.get_quality_profiles, "fetch quality profiles")
            remote_cfs = await self._call(client.get_custom_formats, "fetch custom formats")
            target = next((p for p in profiles if p.get("name") == profile_name), None)

            ids_by_name = {cf["name"]: cf["id"] for cf in remote_cfs if cf.get("id") is not None}
            existing_scores = {
                item["format"]: item.get("score", 0)
                for item in (target or {}).get("formatItems") or []
                if "format" in item
            }
            scores: Dict[int, int] = {}
            for cf in custom_formats:
                format_id = ids_by_name.get(cf.get("name"))
                if format_id is None:
                    continue
                keep = resolution_for(conflict_resolutions, cf["trashId"], cf.get("name", "")) == "keep_existing"
                if keep and format_id in existing_scores:
                    scores[format_id] = existing_scores[format_id]
                else:
                    scores[format_id] = get_current_score(cf, score_set)

            if target is None:
                schema = await self._call(client.get_quality_profile_schema, "fetch quality profile schema")
                profile = {key: value for key, value in (schema or {}).items() if key != "id"}
                profile["name"] = profile_name
                for key in QUALITY_PROFILE_KEYS:
                    if key in profile_config:
                        profile[key] = profile_config[key]
                profile["formatItems"] = merge_format_items(profile.get("formatItems"), scores)
                await self._call(lambda: client.create_quality_profile(profile), f"create profile {profile_name}")
            else:
                profile = {**target, "formatItems": merge_format_items(target.get("formatItems"), scores)}
                await self._call(
                    lambda: client.update_quality_profile(target["id"], profile),
                    f"update profile {profile_name}",
                )
            result.applied_configs.append(
                AppliedConfig(trash_id="quality_profile", name=profile_name, action="quality_profile")
            )
        except RemoteError as e:
            logger.error(f"Failed to update quality profile {profile_name}: {e}")
            result.failed_count += 1
            result.failed_configs.append(
                FailedConfig(trash_id="quality_profile", name=profile_name, error=str(e), status_code=e.status_code)
            )
            result.errors.append(f"Failed to update quality profile: {e}")

    async def deploy_bulk(
        self,
        template_id: str,
        instance_ids: List[str],
        conflict_resolutions: Optional[Dict[str, ConflictResolution]] = None,
    ) -> BulkDeploymentResult:
        """Deploy one template to several instances concurrently."""
        async with self._session_factory() as session:
            template = await session.get(TrashTemplate, template_id)
        if template is None or template.deleted_at is not None:
            raise NotFoundError("Template", template_id)

        outcomes = await asyncio.gather(
            *[self.deploy(template_id, instance_id, conflict_resolutions) for instance_id in instance_ids],
            return_exceptions=True,
        )

        results: List[ApplyResult] = []
        for instance_id, outcome in zip(instance_ids, outcomes):
            if isinstance(outcome, ApplyResult):
                results.append(outcome)
                continue
            if not isinstance(outcome, Exception):
                raise outcome
            logger.error(f"Deployment of template {template_id} to {instance_id} failed: {outcome}")
            results.append(ApplyResult(
                deployment_id=None,
                template_id=template_id,
                instance_id=instance_id,
                instance_label=instance_id,
                status="FAILED",
                success=False,
                errors=[str(outcome)],
            ))

        successful = sum(1 for r in results if r.success)
        return BulkDeploymentResult(
            template_id=template_id,
            template_name=template.name,
            total_instances=len(instance_ids),
            successful_instances=successful,
            failed_instances=len(results) - successful,
            results=results,
        )

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    async def rollback(self, deployment_id: str) -> RollbackResult:
        """Replay the backup taken before a deployment onto the instance.

        CFs still present remotely are updated in place, missing ones are
        recreated. CFs the deployment created are left alone.
        """
        async with self._session_factory() as session:
            history = await session.get(TemplateDeploymentHistory, deployment_id)
            if history is None:
                raise NotFoundError("Deployment", deployment_id)
            if history.rolled_back:
                raise RollbackUnavailableError(f"Deployment {deployment_id} has already been rolled back")
            if not history.backup_id:
                raise RollbackUnavailableError(f"Deployment {deployment_id} has no backup")
            backup = await session.get(TrashBackup, history.backup_id)
            if backup is None:
                raise RollbackUnavailableError(f"Backup for deployment {deployment_id} has been pruned")
            if backup.expires_at is not None and backup.expires_at <= utcnow():
                raise RollbackUnavailableError(f"Backup for deployment {deployment_id} has expired")
            instance = await session.get(ServiceInstance, history.instance_id)
            if instance is None:
                raise NotFoundError("Instance", history.instance_id)

        async with self.guard.hold(instance.id):
            return await self._rollback(history, backup, instance)

    async def _rollback(
        self,
        history: TemplateDeploymentHistory,
        backup: TrashBackup,
        instance: ServiceInstance,
    ) -> RollbackResult:
        sync = TrashSyncHistory(
            instance_id=instance.id,
            template_id=history.template_id,
            sync_type="ROLLBACK",
            status="IN_PROGRESS",
            started_at=utcnow(),
            backup_id=backup.id,
        )
        async with self._session_factory() as session:
            session.add(sync)
            await session.commit()

        result = RollbackResult(
            deployment_id=history.id,
            instance_id=instance.id,
            backup_id=backup.id,
            sync_history_id=sync.id,
            success=False,
        )
        client = self.client_factory(instance)

        try:
            payload = await self.backup_manager.restore_payload(backup.id)
            remote_ids = {
                cf.get("id") for cf in await self._call(client.get_custom_formats, "fetch custom formats")
            }
        except Exception as e:
            logger.error(f"Rollback of deployment {history.id} failed before restoring: {e}")
            result.errors.append(str(e))
            await self._finish_sync(sync.id, "FAILED", result)
            return result

        for cf in payload.get("customFormats") or []:
            name = cf.get("name", "")
            try:
                if cf.get("id") in remote_ids:
                    await self._call(
                        lambda: client.update_custom_format(cf["id"], cf),
                        f"restore custom format {name}",
                    )
                else:
                    recreated = {key: value for key, value in cf.items() if key != "id"}
                    await self._call(
                        lambda: client.create_custom_format(recreated),
                        f"recreate custom format {name}",
                    )
                result.restored_count += 1
            except RemoteError as e:
                logger.error(f"Failed to restore custom format {name}: {e}")
                result.failed_count += 1
                result.errors.append(f'Failed to restore "{name}": {e}')

        result.success = result.failed_count == 0
        await self._finish_sync(sync.id, "SUCCESS" if result.success else "PARTIAL_SUCCESS", result)
        await self._update_history(
            history.id,
            rolled_back=True,
            rolled_back_at=utcnow(),
            rollback_sync_id=sync.id,
        )
        logger.info(
            f"Rolled back deployment {history.id} on {instance.label}: "
            f"{result.restored_count} restored, {result.failed_count} failed"
        )
        return result

    async def _finish_sync(self, sync_id: str, status: str, result: RollbackResult) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(TrashSyncHistory)
                .where(TrashSyncHistory.id == sync_id)
                .values(
                    status=status,
                    completed_at=utcnow(),
                    configs_applied=result.restored_count,
                    configs_failed=result.failed_count,
                    errors=result.errors,
                )
            )
            await session.commit()

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def list_history(
        self,
        template_id: Optional[str] = None,
        instance_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[DeploymentHistoryRecord]:
        query = select(TemplateDeploymentHistory).order_by(TemplateDeploymentHistory.started_at.desc())
        if template_id:
            query = query.where(TemplateDeploymentHistory.template_id == template_id)
        if instance_id:
            query = query.where(TemplateDeploymentHistory.instance_id == instance_id)
        async with self._session_factory() as session:
            rows = (await session.execute(query.limit(limit))).scalars().all()

        return [
            DeploymentHistoryRecord(
                id=row.id,
                template_id=row.template_id,
                instance_id=row.instance_id,
                status=row.status,
                started_at=row.started_at,
                completed_at=row.completed_at,
                created_count=row.created_count or 0,
                updated_count=row.updated_count or 0,
                skipped_count=row.skipped_count or 0,
                failed_count=row.failed_count or 0,
                backup_id=row.backup_id,
                rolled_back=bool(row.rolled_back),
                errors=row.errors or [],
            )
            for row in rows
        ]


def get_deployment_executor() -> DeploymentExecutor:
    return DeploymentExecutor()
