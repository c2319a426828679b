"""Template persistence and the auto-sync path that advances a template's commit."""

import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from trashsync.database import async_session
from trashsync.exceptions import NotFoundError
from trashsync.models import TrashTemplate
from trashsync.schemas import (
    AutoSyncEntry,
    AutoSyncResult,
    ChangeLogCustomFormat,
    ChangeLogScoreChange,
    ChangeLogSummaryStats,
    CreatedEntry,
    ManualEditEntry,
    TemplateDiffResult,
    TemplateUpdateInfo,
)
from trashsync.services.cache_manager import TrashCacheManager
from trashsync.services.cf_matching import get_current_score, get_recommended_score
from trashsync.services.changelog import append_entry
from trashsync.services.template_config import load_config_data, score_set_of
from trashsync.services.template_differ import TemplateDiffer
from trashsync.services.upstream_fetcher import TrashGitHubFetcher
from trashsync.utils import deep_equal, utcnow

logger = logging.getLogger(__name__)


def _conditions_for(upstream_cf: Dict[str, Any]) -> Dict[str, bool]:
    return {spec.get("name", ""): True for spec in upstream_cf.get("specifications") or []}


def merge_upstream_into_config(
    config: Dict[str, Any],
    latest_cfs: Dict[str, Dict[str, Any]],
    latest_groups: Dict[str, Dict[str, Any]],
    diff: TemplateDiffResult,
    accept_additions: bool,
) -> Dict[str, Any]:
    """Build the synced config and the changelog lists describing it.

    User choices on kept CFs (``scoreOverride``, ``conditionsEnabled``)
    survive; CFs removed upstream are dropped.
    """
    score_set = score_set_of(config)
    added, removed, updated, score_changes = [], [], [], []
    preserved = 0
    merged_cfs = []

    for cf in config.get("customFormats") or []:
        trash_id = cf["trashId"]
        latest = latest_cfs.get(trash_id)
        if latest is None:
            removed.append(ChangeLogCustomFormat(trash_id=trash_id, name=cf.get("name", "")))
            continue

        old_score = get_current_score(cf, score_set)
        old_specs = (cf.get("originalConfig") or {}).get("specifications")
        merged = {
            **cf,
            "name": latest.get("name", cf.get("name", "")),
            "originalConfig": latest,
            "conditionsEnabled": cf.get("conditionsEnabled") or _conditions_for(latest),
        }
        merged_cfs.append(merged)

        if deep_equal(old_specs, latest.get("specifications")):
            preserved += 1
        else:
            updated.append(ChangeLogCustomFormat(trash_id=trash_id, name=merged["name"]))

        if cf.get("scoreOverride") is None:
            new_score = get_recommended_score(latest, score_set)
            if new_score != old_score:
                score_changes.append(ChangeLogScoreChange(
                    trash_id=trash_id, name=merged["name"], old_score=old_score, new_score=new_score
                ))

    if accept_additions:
        for suggestion in diff.suggested_additions:
            latest = latest_cfs.get(suggestion.trash_id)
            if latest is None:
                continue
            merged_cfs.append({
                "trashId": suggestion.trash_id,
                "name": suggestion.name,
                "originalConfig": latest,
                "conditionsEnabled": _conditions_for(latest),
            })
            added.append(ChangeLogCustomFormat(
                trash_id=suggestion.trash_id, name=suggestion.name, score=suggestion.recommended_score
            ))

    merged_groups = []
    for group in config.get("customFormatGroups") or []:
        latest_group = latest_groups.get(group.get("trashId"))
        if latest_group is None:
            continue
        merged_groups.append({**group, "name": latest_group.get("name", group.get("name")), "originalConfig": latest_group})

    new_config = {**config, "customFormats": merged_cfs, "customFormatGroups": merged_groups}
    summary = {
        "added": added,
        "removed": removed,
        "updated": updated,
        "score_changes": score_changes,
        "preserved": preserved,
    }
    return {"config": new_config, "summary": summary}


class TemplateService:
    """Owns template rows: creation, manual edits, soft deletion and auto-sync."""

    def __init__(
        self,
        session_factory: async_sessionmaker = None,
        cache_manager: TrashCacheManager = None,
        fetcher: TrashGitHubFetcher = None,
    ):
        self._session_factory = session_factory or async_session
        self.cache_manager = cache_manager or TrashCacheManager(self._session_factory)
        self.fetcher = fetcher or TrashGitHubFetcher()
        self.differ = TemplateDiffer(self.cache_manager, self.fetcher)

    async def create_template(
        self,
        name: str,
        service_type: str,
        config: Dict[str, Any],
        commit_hash: Optional[str] = None,
        source_quality_profile_trash_id: Optional[str] = None,
        source: str = "import",
    ) -> TrashTemplate:
        template = TrashTemplate(
            name=name,
            service_type=service_type.upper(),
            config_data=json.dumps(config),
            commit_hash=commit_hash,
            source_quality_profile_trash_id=source_quality_profile_trash_id,
            has_user_modifications=False,
        )
        template.change_log = append_entry(
            None, CreatedEntry(timestamp=utcnow(), commit_hash=commit_hash, source=source)
        )
        async with self._session_factory() as session:
            session.add(template)
            await session.commit()
        logger.info(f"Created template {template.id} '{name}' ({service_type})")
        return template

    async def get_template(self, template_id: str) -> TrashTemplate:
        """A live (not soft-deleted) template."""
        async with self._session_factory() as session:
            template = await session.get(TrashTemplate, template_id)
        if template is None or template.deleted_at is not None:
            raise NotFoundError("Template", template_id)
        return template

    async def list_templates(self, service_type: Optional[str] = None) -> List[TrashTemplate]:
        query = select(TrashTemplate).where(TrashTemplate.deleted_at.is_(None)).order_by(TrashTemplate.name)
        if service_type:
            query = query.where(TrashTemplate.service_type == service_type.upper())
        async with self._session_factory() as session:
            return list((await session.execute(query)).scalars().all())

    async def mark_user_modified(
        self,
        template_id: str,
        config: Dict[str, Any],
        description: Optional[str] = None,
    ) -> TrashTemplate:
        """Store a manual edit. Auto-sync skips the template from now on unless forced."""
        async with self._session_factory() as session:
            template = await session.get(TrashTemplate, template_id)
            if template is None or template.deleted_at is not None:
                raise NotFoundError("Template", template_id)
            template.config_data = json.dumps(config)
            template.has_user_modifications = True
            template.change_log = append_entry(
                template.change_log,
                ManualEditEntry(timestamp=utcnow(), description=description),
                template.id,
            )
            await session.commit()
        return template

    async def soft_delete(self, template_id: str) -> None:
        async with self._session_factory() as session:
            template = await session.get(TrashTemplate, template_id)
            if template is None or template.deleted_at is not None:
                raise NotFoundError("Template", template_id)
            template.deleted_at = utcnow()
            await session.commit()
        logger.info(f"Soft-deleted template {template_id}")

    async def compute_diff(self, template_id: str, target_commit: Optional[str] = None) -> TemplateDiffResult:
        template = await self.get_template(template_id)
        target_commit = target_commit or await self.fetcher.fetch_latest_commit()
        return await self.differ.compute_template_diff(template, target_commit)

    async def check_for_updates(self) -> List[TemplateUpdateInfo]:
        """Templates whose commit is behind upstream."""
        latest_commit = await self.fetcher.fetch_latest_commit()
        return [
            TemplateUpdateInfo(
                template_id=template.id,
                template_name=template.name,
                service_type=template.service_type,
                current_commit=template.commit_hash,
                latest_commit=latest_commit,
                has_user_modifications=bool(template.has_user_modifications),
                can_auto_sync=not template.has_user_modifications,
            )
            for template in await self.list_templates()
            if template.commit_hash != latest_commit
        ]

    async def auto_sync(
        self,
        template_id: str,
        target_commit: Optional[str] = None,
        accept_additions: bool = False,
        force: bool = False,
    ) -> AutoSyncResult:
        """Move a template to ``target_commit`` (default: upstream head).

        The commit recorded on the template is the one the upstream data was
        actually read at.
        """
        template = await self.get_template(template_id)
        previous_commit = template.commit_hash

        if template.has_user_modifications and not force:
            return AutoSyncResult(
                success=False,
                template_id=template.id,
                previous_commit=previous_commit,
                new_commit=previous_commit,
                errors=["Template has user modifications; auto-sync requires force"],
            )

        target_commit = target_commit or await self.fetcher.fetch_latest_commit()
        if previous_commit == target_commit:
            return AutoSyncResult(
                success=True,
                template_id=template.id,
                previous_commit=previous_commit,
                new_commit=target_commit,
            )

        diff = await self.differ.compute_template_diff(template, target_commit)
        new_commit = diff.latest_commit
        config = load_config_data(template)
        service_type = template.service_type.upper()
        latest_cfs = {
            cf["trash_id"]: cf
            for cf in await self.cache_manager.get(service_type, "CUSTOM_FORMATS") or []
            if cf.get("trash_id")
        }
        latest_groups = {
            g["trash_id"]: g
            for g in await self.cache_manager.get(service_type, "CF_GROUPS") or []
            if g.get("trash_id")
        }

        merged = merge_upstream_into_config(config, latest_cfs, latest_groups, diff, accept_additions)
        summary = merged["summary"]
        entry = AutoSyncEntry(
            timestamp=utcnow(),
            from_commit_hash=previous_commit,
            to_commit_hash=new_commit,
            custom_formats_added=summary["added"],
            custom_formats_removed=summary["removed"],
            custom_formats_updated=summary["updated"],
            score_changes=summary["score_changes"],
            summary_stats=ChangeLogSummaryStats(
                custom_formats_added=len(summary["added"]),
                custom_formats_removed=len(summary["removed"]),
                custom_formats_updated=len(summary["updated"]),
                custom_formats_preserved=summary["preserved"],
            ),
        )

        async with self._session_factory() as session:
            stored = await session.get(TrashTemplate, template.id)
            stored.config_data = json.dumps(merged["config"])
            stored.commit_hash = new_commit
            stored.change_log = append_entry(stored.change_log, entry, stored.id)
            await session.commit()

        logger.info(
            f"Auto-synced template {template.id} from {previous_commit} to {new_commit}: "
            f"{len(summary['added'])} added, {len(summary['removed'])} removed, "
            f"{len(summary['updated'])} updated, {len(summary['score_changes'])} score changes"
        )
        return AutoSyncResult(
            success=True,
            template_id=template.id,
            previous_commit=previous_commit,
            new_commit=new_commit,
            entry=entry,
        )


def get_template_service() -> TemplateService:
    return TemplateService()
