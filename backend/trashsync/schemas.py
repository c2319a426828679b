"""Result types produced by the sync core for the API layer.

All models serialize with camelCase aliases (``model_dump(by_alias=True)``)
and accept either snake_case or camelCase on input.
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ----------------------------------------------------------------------------
# Template changelog
# ----------------------------------------------------------------------------

class ChangeLogCustomFormat(CamelModel):
    trash_id: str
    name: str
    score: Optional[int] = None


class ChangeLogScoreChange(CamelModel):
    trash_id: str
    name: str
    old_score: Optional[int] = None
    new_score: int


class ChangeLogSummaryStats(CamelModel):
    custom_formats_added: int = 0
    custom_formats_removed: int = 0
    custom_formats_updated: int = 0
    custom_formats_preserved: int = 0


class CreatedEntry(CamelModel):
    change_type: Literal["created"] = "created"
    timestamp: datetime
    commit_hash: Optional[str] = None
    source: Optional[str] = None


class ManualEditEntry(CamelModel):
    change_type: Literal["manual_edit"] = "manual_edit"
    timestamp: datetime
    description: Optional[str] = None


class AutoSyncEntry(CamelModel):
    change_type: Literal["auto_sync"] = "auto_sync"
    timestamp: datetime
    from_commit_hash: Optional[str]
    to_commit_hash: str
    custom_formats_added: List[ChangeLogCustomFormat]
    custom_formats_removed: List[ChangeLogCustomFormat]
    custom_formats_updated: List[ChangeLogCustomFormat]
    score_changes: List[ChangeLogScoreChange]
    summary_stats: ChangeLogSummaryStats


ChangeLogEntry = Annotated[
    Union[CreatedEntry, ManualEditEntry, AutoSyncEntry],
    Field(discriminator="change_type"),
]


# ----------------------------------------------------------------------------
# Template diff
# ----------------------------------------------------------------------------

class DiffSummary(CamelModel):
    total_changes: int = 0
    added_cfs: int = Field(0, alias="addedCFs")
    removed_cfs: int = Field(0, alias="removedCFs")
    modified_cfs: int = Field(0, alias="modifiedCFs")
    unchanged_cfs: int = Field(0, alias="unchangedCFs")


class CustomFormatDiff(CamelModel):
    trash_id: str
    name: str
    change_type: Literal["added", "removed", "modified", "unchanged"]
    current_score: Optional[int] = None
    new_score: Optional[int] = None
    current_specifications: List[Dict[str, Any]] = []
    new_specifications: List[Dict[str, Any]] = []
    has_specification_changes: bool = False


class CustomFormatGroupDiff(CamelModel):
    trash_id: str
    name: str
    change_type: Literal["added", "removed", "modified", "unchanged"]
    custom_format_diffs: List[CustomFormatDiff] = []


class SuggestedCFAddition(CamelModel):
    trash_id: str
    name: str
    recommended_score: int
    source: Literal["cf_group", "quality_profile"]
    source_group_name: Optional[str] = None
    source_profile_name: Optional[str] = None
    specifications: List[Dict[str, Any]] = []


class SuggestedScoreChange(CamelModel):
    trash_id: str
    name: str
    current_score: int
    recommended_score: int
    score_set: str


class TemplateDiffResult(CamelModel):
    template_id: str
    template_name: str
    current_commit: Optional[str]
    latest_commit: str
    summary: DiffSummary
    custom_format_diffs: List[CustomFormatDiff] = []
    custom_format_group_diffs: List[CustomFormatGroupDiff] = []
    suggested_additions: List[SuggestedCFAddition] = []
    suggested_score_changes: List[SuggestedScoreChange] = []
    has_user_modifications: bool = False
    is_historical: bool = False
    historical_sync_timestamp: Optional[datetime] = None


class AutoSyncResult(CamelModel):
    success: bool
    template_id: str
    previous_commit: Optional[str]
    new_commit: Optional[str]
    errors: List[str] = []
    entry: Optional[AutoSyncEntry] = None


class TemplateUpdateInfo(CamelModel):
    template_id: str
    template_name: str
    service_type: str
    current_commit: Optional[str]
    latest_commit: str
    has_user_modifications: bool
    can_auto_sync: bool


# ----------------------------------------------------------------------------
# Deployment preview
# ----------------------------------------------------------------------------

ConflictResolution = Literal["use_template", "keep_existing"]


class CustomFormatConflict(CamelModel):
    cf_trash_id: str
    cf_name: str
    conflict_type: Literal["specification_mismatch"] = "specification_mismatch"
    template_value: Any = None
    instance_value: Any = None
    suggested_resolution: ConflictResolution = "use_template"
    resolution: Optional[ConflictResolution] = None


class CustomFormatDeploymentItem(CamelModel):
    trash_id: str
    name: str
    action: Literal["create", "update", "skip"]
    # "name" matches are heuristic and may link the wrong remote CF
    match_method: Optional[Literal["trash_id", "name"]] = None
    template_data: Optional[Dict[str, Any]] = None
    instance_data: Optional[Dict[str, Any]] = None
    conflicts: List[CustomFormatConflict] = []
    has_conflicts: bool = False


class PreviewSummary(CamelModel):
    total_items: int = 0
    new_custom_formats: int = 0
    updated_custom_formats: int = 0
    deleted_custom_formats: int = 0
    skipped_custom_formats: int = 0
    total_conflicts: int = 0
    unresolved_conflicts: int = 0


class DeploymentPreview(CamelModel):
    template_id: str
    template_name: str
    instance_id: str
    instance_label: str
    instance_service_type: str
    summary: PreviewSummary
    custom_formats: List[CustomFormatDeploymentItem] = []
    can_deploy: bool
    requires_conflict_resolution: bool
    instance_reachable: bool
    instance_version: Optional[str] = None


# ----------------------------------------------------------------------------
# Deployment execution
# ----------------------------------------------------------------------------

DeploymentStatus = Literal["PENDING", "BACKING_UP", "APPLYING", "SUCCESS", "PARTIAL_SUCCESS", "FAILED"]


class AppliedConfig(CamelModel):
    trash_id: str
    name: str
    action: Literal["create", "update", "quality_profile"]


class FailedConfig(CamelModel):
    trash_id: str
    name: str
    error: str
    status_code: Optional[int] = None


class ApplyResult(CamelModel):
    deployment_id: Optional[str]
    template_id: str
    instance_id: str
    instance_label: str
    status: DeploymentStatus
    success: bool
    created_count: int = 0
    updated_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    applied_configs: List[AppliedConfig] = []
    failed_configs: List[FailedConfig] = []
    errors: List[str] = []
    backup_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class BulkDeploymentResult(CamelModel):
    template_id: str
    template_name: str
    total_instances: int
    successful_instances: int
    failed_instances: int
    results: List[ApplyResult]


class RollbackResult(CamelModel):
    deployment_id: str
    instance_id: str
    backup_id: str
    sync_history_id: Optional[str] = None
    success: bool
    restored_count: int = 0
    failed_count: int = 0
    errors: List[str] = []


class DeploymentHistoryRecord(CamelModel):
    id: str
    template_id: str
    instance_id: str
    status: str
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    created_count: int
    updated_count: int
    skipped_count: int
    failed_count: int
    backup_id: Optional[str]
    rolled_back: bool
    errors: List[str] = []


# ----------------------------------------------------------------------------
# Backups and cache
# ----------------------------------------------------------------------------

class CleanupStats(CamelModel):
    expired_count: int = 0
    orphaned_count: int = 0
    total_cleaned: int = 0


class BackupStats(CamelModel):
    total_backups: int
    expired_backups: int
    orphaned_backups: int
    oldest_backup: Optional[datetime] = None
    newest_backup: Optional[datetime] = None


class BackupInfo(CamelModel):
    id: str
    instance_id: str
    created_at: datetime
    expires_at: Optional[datetime]
    data_size: int
    config_count: int


class SourceBreakdown(CamelModel):
    official: int
    custom: int


class CacheStatus(CamelModel):
    service_type: str
    config_type: str
    version: int
    commit_hash: Optional[str]
    last_fetched: datetime
    item_count: int
    size_bytes: int
    is_stale: bool
    source_breakdown: Optional[SourceBreakdown] = None


class CacheStats(CamelModel):
    total_entries: int = 0
    stale_entries: int = 0
    total_size_bytes: int = 0
    oldest_entry: Optional[datetime] = None
    newest_entry: Optional[datetime] = None
