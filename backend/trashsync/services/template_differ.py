"""Compares a template against upstream definitions at a given commit."""

import logging
from typing import Any, Dict, List

from trashsync.exceptions import TrashSyncError, UpstreamFetchError
from trashsync.models import TrashTemplate
from trashsync.schemas import (
    AutoSyncEntry,
    CustomFormatDiff,
    CustomFormatGroupDiff,
    DiffSummary,
    SuggestedCFAddition,
    SuggestedScoreChange,
    TemplateDiffResult,
)
from trashsync.services.cache_manager import TrashCacheManager
from trashsync.services.cf_matching import (
    get_current_score,
    get_recommended_score,
    group_member_ids,
)
from trashsync.services.changelog import get_recent_auto_sync_entry, parse_change_log
from trashsync.services.template_config import load_config_data, score_set_of
from trashsync.services.upstream_fetcher import TrashGitHubFetcher
from trashsync.utils import deep_equal

logger = logging.getLogger(__name__)

DIFF_CONFIG_TYPES = ("CUSTOM_FORMATS", "CF_GROUPS", "QUALITY_PROFILES")


def transform_auto_sync_to_historical_diff(
    template: TrashTemplate,
    target_commit: str,
    entry: AutoSyncEntry,
) -> TemplateDiffResult:
    """Rebuild the diff of a past auto-sync from its changelog entry."""
    diffs = [
        CustomFormatDiff(
            trash_id=cf.trash_id,
            name=cf.name,
            change_type="added",
            new_score=cf.score,
            has_specification_changes=True,
        )
        for cf in entry.custom_formats_added
    ]
    diffs += [
        CustomFormatDiff(trash_id=cf.trash_id, name=cf.name, change_type="removed")
        for cf in entry.custom_formats_removed
    ]
    diffs += [
        CustomFormatDiff(
            trash_id=cf.trash_id,
            name=cf.name,
            change_type="modified",
            has_specification_changes=True,
        )
        for cf in entry.custom_formats_updated
    ]

    score_changes = [
        SuggestedScoreChange(
            trash_id=change.trash_id,
            name=change.name,
            current_score=change.old_score if change.old_score is not None else change.new_score,
            recommended_score=change.new_score,
            score_set="applied",
        )
        for change in entry.score_changes
    ]

    stats = entry.summary_stats
    return TemplateDiffResult(
        template_id=template.id,
        template_name=template.name,
        current_commit=entry.from_commit_hash,
        latest_commit=target_commit,
        summary=DiffSummary(
            total_changes=stats.custom_formats_added + stats.custom_formats_removed + stats.custom_formats_updated,
            added_cfs=stats.custom_formats_added,
            removed_cfs=stats.custom_formats_removed,
            modified_cfs=stats.custom_formats_updated,
            unchanged_cfs=stats.custom_formats_preserved,
        ),
        custom_format_diffs=diffs,
        suggested_score_changes=score_changes,
        has_user_modifications=bool(template.has_user_modifications),
        is_historical=True,
        historical_sync_timestamp=entry.timestamp,
    )


def diff_against_latest(
    template: TrashTemplate,
    config: Dict[str, Any],
    target_commit: str,
    latest_cfs_data: List[Dict[str, Any]],
    latest_groups_data: List[Dict[str, Any]],
    quality_profiles_data: List[Dict[str, Any]],
) -> TemplateDiffResult:
    """Pure comparison of a parsed template config with upstream data."""
    current_cfs = {cf["trashId"]: cf for cf in config.get("customFormats") or []}
    current_groups = {g["trashId"]: g for g in config.get("customFormatGroups") or []}
    latest_cfs = {cf["trash_id"]: cf for cf in latest_cfs_data if cf.get("trash_id")}
    latest_groups = {g["trash_id"]: g for g in latest_groups_data if g.get("trash_id")}
    score_set = score_set_of(config)

    summary = DiffSummary()
    cf_diffs: List[CustomFormatDiff] = []

    for trash_id, latest_cf in latest_cfs.items():
        current_cf = current_cfs.get(trash_id)
        if current_cf is None:
            continue
        current_specs = (current_cf.get("originalConfig") or {}).get("specifications")
        latest_specs = latest_cf.get("specifications")
        changed = not deep_equal(current_specs, latest_specs)
        score = get_current_score(current_cf, score_set)
        cf_diffs.append(CustomFormatDiff(
            trash_id=trash_id,
            name=latest_cf.get("name") or current_cf.get("name", ""),
            change_type="modified" if changed else "unchanged",
            current_score=score,
            new_score=score,
            current_specifications=current_specs or [],
            new_specifications=latest_specs or [],
            has_specification_changes=changed,
        ))
        if changed:
            summary.modified_cfs += 1
        else:
            summary.unchanged_cfs += 1

    for trash_id, current_cf in current_cfs.items():
        if trash_id in latest_cfs:
            continue
        cf_diffs.append(CustomFormatDiff(
            trash_id=trash_id,
            name=current_cf.get("name", ""),
            change_type="removed",
            current_score=get_current_score(current_cf, score_set),
            current_specifications=(current_cf.get("originalConfig") or {}).get("specifications") or [],
        ))
        summary.removed_cfs += 1

    summary.total_changes = summary.added_cfs + summary.removed_cfs + summary.modified_cfs

    group_diffs = [
        CustomFormatGroupDiff(trash_id=trash_id, name=latest_group.get("name", ""), change_type="unchanged")
        for trash_id, latest_group in latest_groups.items()
        if trash_id in current_groups
    ]
    group_diffs += [
        CustomFormatGroupDiff(trash_id=trash_id, name=group.get("name", ""), change_type="removed")
        for trash_id, group in current_groups.items()
        if trash_id not in latest_groups
    ]

    additions: List[SuggestedCFAddition] = []
    suggested = set()

    def suggest(cf_trash_id: str, **source) -> None:
        if cf_trash_id in current_cfs or cf_trash_id in suggested:
            return
        full_cf = latest_cfs.get(cf_trash_id)
        if full_cf is None:
            return
        suggested.add(cf_trash_id)
        additions.append(SuggestedCFAddition(
            trash_id=cf_trash_id,
            name=full_cf.get("name", ""),
            recommended_score=get_recommended_score(full_cf, score_set),
            specifications=full_cf.get("specifications") or [],
            **source,
        ))

    for group_trash_id in current_groups:
        latest_group = latest_groups.get(group_trash_id)
        if not latest_group:
            continue
        for cf_trash_id in group_member_ids(latest_group):
            suggest(cf_trash_id, source="cf_group", source_group_name=latest_group.get("name"))

    if template.source_quality_profile_trash_id:
        profile = next(
            (p for p in quality_profiles_data if p.get("trash_id") == template.source_quality_profile_trash_id),
            None,
        )
        if profile and profile.get("formatItems"):
            for cf_trash_id in profile["formatItems"].values():
                suggest(cf_trash_id, source="quality_profile", source_profile_name=profile.get("name"))

    score_changes: List[SuggestedScoreChange] = []
    for trash_id, current_cf in current_cfs.items():
        latest_cf = latest_cfs.get(trash_id)
        if latest_cf is None or current_cf.get("scoreOverride") is not None:
            continue
        current_score = get_current_score(current_cf, score_set)
        recommended = get_recommended_score(latest_cf, score_set)
        if current_score != recommended:
            score_changes.append(SuggestedScoreChange(
                trash_id=trash_id,
                name=latest_cf.get("name", ""),
                current_score=current_score,
                recommended_score=recommended,
                score_set=score_set,
            ))

    return TemplateDiffResult(
        template_id=template.id,
        template_name=template.name,
        current_commit=template.commit_hash,
        latest_commit=target_commit,
        summary=summary,
        custom_format_diffs=cf_diffs,
        custom_format_group_diffs=group_diffs,
        suggested_additions=additions,
        suggested_score_changes=score_changes,
        has_user_modifications=bool(template.has_user_modifications),
    )


class TemplateDiffer:
    """Diff engine. Read-only with respect to templates; writes only to the cache."""

    def __init__(self, cache_manager: TrashCacheManager, fetcher: TrashGitHubFetcher):
        self.cache_manager = cache_manager
        self.fetcher = fetcher

    async def ensure_cache_at(self, service_type: str, target_commit: str) -> str:
        """Refresh every config type the diff reads when the cache is not at ``target_commit``.

        The fetcher only serves upstream head, so each entry is stored under
        the commit it was actually read at. Returns the commit the custom
        formats in the cache now belong to.
        """
        cached_commit = await self.cache_manager.get_commit_hash(service_type, "CUSTOM_FORMATS")
        if cached_commit == target_commit:
            return target_commit

        commits = {}
        for config_type in DIFF_CONFIG_TYPES:
            try:
                items, fetched_commit = await self.fetcher.fetch_configs(service_type, config_type)
            except (TrashSyncError, ValueError, KeyError) as e:
                raise UpstreamFetchError(config_type, service_type, str(e)) from e
            if fetched_commit != target_commit:
                logger.warning(
                    f"Upstream returned {config_type} at {fetched_commit}, expected {target_commit}"
                )
            await self.cache_manager.set(service_type, config_type, items, fetched_commit)
            commits[config_type] = fetched_commit

        if len(set(commits.values())) > 1:
            logger.warning(f"Upstream moved while refreshing {service_type}: {commits}")
        return commits["CUSTOM_FORMATS"]

    async def compute_template_diff(self, template: TrashTemplate, target_commit: str) -> TemplateDiffResult:
        """Diff a template against upstream at ``target_commit``.

        When the template is already at the target, the diff of the auto-sync
        that brought it there is rebuilt from the changelog instead.
        """
        if template.commit_hash == target_commit:
            entries = parse_change_log(template.change_log, template.id)
            entry = get_recent_auto_sync_entry(entries, target_commit)
            if entry:
                return transform_auto_sync_to_historical_diff(template, target_commit, entry)
            return TemplateDiffResult(
                template_id=template.id,
                template_name=template.name,
                current_commit=template.commit_hash,
                latest_commit=target_commit,
                summary=DiffSummary(),
                has_user_modifications=bool(template.has_user_modifications),
                is_historical=True,
            )

        config = load_config_data(template)
        service_type = template.service_type.upper()
        latest_commit = await self.ensure_cache_at(service_type, target_commit)

        latest_cfs = await self.cache_manager.get(service_type, "CUSTOM_FORMATS") or []
        latest_groups = await self.cache_manager.get(service_type, "CF_GROUPS") or []
        quality_profiles = await self.cache_manager.get(service_type, "QUALITY_PROFILES") or []

        return diff_against_latest(
            template, config, latest_commit, latest_cfs, latest_groups, quality_profiles
        )
