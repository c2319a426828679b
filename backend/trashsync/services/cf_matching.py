"""Custom format identity, specification comparison and score helpers.

Remote instances do not store the upstream ``trash_id`` of a custom format,
so linking a remote format back to a template entry is heuristic:

1. a ``trash_id`` / ``trashId`` field inside one of its specifications,
2. a bracketed UUID suffix in its name, e.g. ``"x265 [0b1d...]"``,
3. the bare name (done by :func:`match_remote_custom_formats`, not here).

Name-only matches can link a renamed or unrelated format, so they are
reported as such and logged.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from trashsync.utils import deep_equal

logger = logging.getLogger(__name__)

TRASH_ID_SUFFIX = re.compile(r"\[([a-f0-9-]{36})\]$", re.IGNORECASE)

MATCH_TRASH_ID = "trash_id"
MATCH_NAME = "name"


def _trash_id_from_fields(fields: Any) -> Optional[str]:
    if isinstance(fields, list):
        for field in fields:
            if isinstance(field, dict) and field.get("name") in ("trash_id", "trashId"):
                value = field.get("value")
                if value not in (None, ""):
                    return str(value)
    elif isinstance(fields, dict):
        for key in ("trash_id", "trashId"):
            value = fields.get(key)
            if value not in (None, ""):
                return str(value)
    return None


def extract_trash_id(remote_cf: Dict[str, Any]) -> Optional[str]:
    """Best-effort upstream id of a remote custom format, or None."""
    direct = remote_cf.get("trash_id") or remote_cf.get("trashId")
    if direct:
        return str(direct)

    for spec in remote_cf.get("specifications") or []:
        if not isinstance(spec, dict):
            continue
        found = _trash_id_from_fields(spec.get("fields"))
        if found:
            return found

    match = TRASH_ID_SUFFIX.search(remote_cf.get("name") or "")
    if match:
        return match.group(1).lower()
    return None


def match_remote_custom_formats(
    template_cfs: Iterable[Dict[str, Any]],
    remote_cfs: List[Dict[str, Any]],
) -> Dict[str, Tuple[Dict[str, Any], str]]:
    """Link template CFs to remote CFs.

    Returns ``{trash_id: (remote_cf, how)}`` where ``how`` is ``"trash_id"``
    or ``"name"``. A remote CF is linked to at most one template CF.
    """
    by_trash_id: Dict[str, Dict[str, Any]] = {}
    by_name: Dict[str, Dict[str, Any]] = {}
    for remote in remote_cfs:
        trash_id = extract_trash_id(remote)
        if trash_id and trash_id not in by_trash_id:
            by_trash_id[trash_id] = remote
        name = remote.get("name")
        if name and name not in by_name:
            by_name[name] = remote

    matches: Dict[str, Tuple[Dict[str, Any], str]] = {}
    used = set()
    for cf in template_cfs:
        trash_id = cf["trashId"]
        remote = by_trash_id.get(trash_id)
        how = MATCH_TRASH_ID
        if remote is None:
            remote = by_name.get(cf.get("name"))
            how = MATCH_NAME
        if remote is None or id(remote) in used:
            continue
        if how == MATCH_NAME:
            logger.warning(f"Custom format {trash_id} matched remote '{remote.get('name')}' by name only")
        used.add(id(remote))
        matches[trash_id] = (remote, how)
    return matches


# ----------------------------------------------------------------------------
# Specifications
# ----------------------------------------------------------------------------

def fields_to_dict(fields: Any) -> Dict[str, Any]:
    """Normalize ``[{name, value}]`` (remote form) or a mapping (upstream form)."""
    if isinstance(fields, dict):
        return dict(fields)
    result = {}
    if isinstance(fields, list):
        for field in fields:
            if isinstance(field, dict) and "name" in field:
                result[field["name"]] = field.get("value")
    return result


def normalize_specification(spec: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "name": spec.get("name") or "",
        "implementation": spec.get("implementation") or "",
        "negate": bool(spec.get("negate")),
        "required": bool(spec.get("required")),
        "fields": fields_to_dict(spec.get("fields")),
    }


def specifications_equal(template_specs: List[Dict], remote_specs: List[Dict]) -> bool:
    """Compare specification lists independent of field representation.

    Order of specifications matters; remote-only attributes (ids, labels,
    field metadata) are ignored.
    """
    return deep_equal(
        [normalize_specification(s) for s in template_specs or []],
        [normalize_specification(s) for s in remote_specs or []],
    )


def transform_fields_to_array(specifications: List[Dict]) -> List[Dict]:
    """Convert mapping-form ``fields`` to the ``[{name, value}]`` list remotes expect."""
    result = []
    for spec in specifications or []:
        spec = dict(spec)
        fields = spec.get("fields")
        if isinstance(fields, dict):
            spec["fields"] = [{"name": name, "value": value} for name, value in fields.items()]
        result.append(spec)
    return result


# ----------------------------------------------------------------------------
# Overrides and scores
# ----------------------------------------------------------------------------

def apply_instance_overrides(
    custom_formats: List[Dict[str, Any]],
    overrides: Optional[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """Layer one instance's overlay on the template's custom formats.

    ``overrides`` holds ``cfOverrides`` (``{trashId: {"enabled": bool}}``) and
    ``scoreOverrides`` (``{trashId: score}``). Disabled CFs are dropped and
    instance scores replace the template's ``scoreOverride``.
    """
    if not overrides:
        return list(custom_formats)

    cf_overrides = overrides.get("cfOverrides") or overrides.get("cfSelectionOverrides") or {}
    score_overrides = overrides.get("scoreOverrides") or overrides.get("cfScoreOverrides") or {}

    result = []
    for cf in custom_formats:
        trash_id = cf.get("trashId")
        selection = cf_overrides.get(trash_id) or {}
        if selection.get("enabled") is False:
            continue
        if trash_id in score_overrides:
            cf = {**cf, "scoreOverride": score_overrides[trash_id]}
        result.append(cf)
    return result


def score_from_set(trash_scores: Optional[Dict[str, Any]], score_set: str) -> int:
    """Score for a named set, falling back to ``default`` and then 0."""
    trash_scores = trash_scores or {}
    if trash_scores.get(score_set) is not None:
        return trash_scores[score_set]
    if trash_scores.get("default") is not None:
        return trash_scores["default"]
    return 0


def get_current_score(template_cf: Dict[str, Any], score_set: str) -> int:
    """Effective score of a template CF: explicit override, then its recorded score set."""
    if template_cf.get("scoreOverride") is not None:
        return template_cf["scoreOverride"]
    original = template_cf.get("originalConfig") or {}
    return score_from_set(original.get("trash_scores"), score_set)


def get_recommended_score(upstream_cf: Dict[str, Any], score_set: str) -> int:
    return score_from_set(upstream_cf.get("trash_scores"), score_set)


def group_member_ids(group: Dict[str, Any]) -> List[str]:
    """Trash ids of a CF group's members (plain strings or ``{trash_id}`` objects)."""
    members = []
    for ref in group.get("custom_formats") or []:
        if isinstance(ref, str):
            members.append(ref)
        elif isinstance(ref, dict) and ref.get("trash_id"):
            members.append(ref["trash_id"])
    return members
