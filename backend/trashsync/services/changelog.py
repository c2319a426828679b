"""Template changelog: a JSON array of tagged entries stored on the template."""

import json
import logging
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import TypeAdapter, ValidationError

from trashsync.exceptions import CorruptDataError
from trashsync.schemas import AutoSyncEntry, ChangeLogEntry

logger = logging.getLogger(__name__)

_entry_adapter = TypeAdapter(ChangeLogEntry)


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_change_log(raw: Optional[str], template_id: Optional[str] = None) -> List[ChangeLogEntry]:
    """Parse a stored changelog.

    Entries that fail validation are skipped with a warning. A document that
    is not a JSON array raises CorruptDataError.
    """
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise CorruptDataError(f"Template {template_id} has a corrupt changeLog: {e}", template_id) from e
    if not isinstance(data, list):
        raise CorruptDataError(f"Template {template_id} changeLog is not a list", template_id)

    entries = []
    for index, item in enumerate(data):
        try:
            entries.append(_entry_adapter.validate_python(item))
        except ValidationError as e:
            logger.warning(
                f"Skipping malformed changelog entry {index} on template {template_id}: "
                f"{e.error_count()} validation error(s)"
            )
    return entries


def dump_change_log(entries: List[ChangeLogEntry]) -> str:
    return json.dumps([entry.model_dump(mode="json", by_alias=True) for entry in entries])


def append_entry(raw: Optional[str], entry: ChangeLogEntry, template_id: Optional[str] = None) -> str:
    """Return the serialized changelog with ``entry`` appended."""
    entries = parse_change_log(raw, template_id)
    entries.append(entry)
    return dump_change_log(entries)


def get_recent_auto_sync_entry(
    entries: List[ChangeLogEntry],
    target_commit: str,
) -> Optional[AutoSyncEntry]:
    """Most recent auto-sync entry that moved the template to ``target_commit``."""
    candidates = [
        entry for entry in entries
        if isinstance(entry, AutoSyncEntry) and entry.to_commit_hash == target_commit
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda entry: _naive_utc(entry.timestamp))
