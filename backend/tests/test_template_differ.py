"""Tests for the template diff engine."""

from __future__ import annotations

import json

import pytest

from conftest import (
    CF_A,
    CF_B,
    CF_C,
    CF_D,
    GROUP_1,
    FakeFetcher,
    add_template,
    template_cf,
    upstream_cf,
)

from trashsync.exceptions import CorruptDataError, RemoteUnreachableError, UpstreamFetchError
from trashsync.services.template_differ import TemplateDiffer


def fetcher_with(custom_formats, groups=None, profiles=None, commit="commit-new") -> FakeFetcher:
    return FakeFetcher(commit=commit, configs={
        ("RADARR", "CUSTOM_FORMATS"): custom_formats,
        ("RADARR", "CF_GROUPS"): groups or [],
        ("RADARR", "QUALITY_PROFILES"): profiles or [],
    })


class TestComputeTemplateDiff:
    @pytest.mark.asyncio
    async def test_score_suggestion_skips_overridden_format(self, session_factory, cache_manager) -> None:
        """A (5, no override) gets a 5 -> 8 suggestion; B (override 20) gets none."""
        template = await add_template(session_factory, [
            template_cf(CF_A, "A", score=5),
            template_cf(CF_B, "B", score=10, score_override=20),
        ])
        fetcher = fetcher_with([upstream_cf(CF_A, "A", score=8), upstream_cf(CF_B, "B", score=15)])

        diff = await TemplateDiffer(cache_manager, fetcher).compute_template_diff(template, "commit-new")

        assert [(s.trash_id, s.current_score, s.recommended_score) for s in diff.suggested_score_changes] == [
            (CF_A, 5, 8)
        ]
        assert not diff.is_historical

    @pytest.mark.asyncio
    async def test_modified_unchanged_and_removed(self, session_factory, cache_manager) -> None:
        template = await add_template(session_factory, [
            template_cf(CF_A, "A", score=5, pattern="old"),
            template_cf(CF_B, "B", score=10),
            template_cf(CF_C, "C", score=1),
        ])
        fetcher = fetcher_with([upstream_cf(CF_A, "A", score=5, pattern="new"), upstream_cf(CF_B, "B", score=10)])

        diff = await TemplateDiffer(cache_manager, fetcher).compute_template_diff(template, "commit-new")

        by_id = {d.trash_id: d for d in diff.custom_format_diffs}
        assert by_id[CF_A].change_type == "modified"
        assert by_id[CF_A].has_specification_changes
        assert by_id[CF_B].change_type == "unchanged"
        assert not by_id[CF_B].has_specification_changes
        assert by_id[CF_C].change_type == "removed"
        assert diff.summary.modified_cfs == 1
        assert diff.summary.unchanged_cfs == 1
        assert diff.summary.removed_cfs == 1
        assert diff.summary.added_cfs == 0
        assert diff.summary.total_changes == 2

    @pytest.mark.asyncio
    async def test_new_upstream_formats_are_only_suggestions(self, session_factory, cache_manager) -> None:
        group = {"trashId": GROUP_1, "name": "HDR Formats"}
        template = await add_template(
            session_factory,
            [template_cf(CF_A, "A", score=5)],
            groups=[group],
            source_quality_profile_trash_id="profile-1",
        )
        fetcher = fetcher_with(
            [upstream_cf(CF_A, "A", score=5), upstream_cf(CF_B, "B", score=7), upstream_cf(CF_C, "C", score=3)],
            groups=[{"trash_id": GROUP_1, "name": "HDR Formats", "custom_formats": [{"trash_id": CF_A}, {"trash_id": CF_B}]}],
            profiles=[{"trash_id": "profile-1", "name": "HD Bluray", "formatItems": {"B": CF_B, "C": CF_C, "D": CF_D}}],
        )

        diff = await TemplateDiffer(cache_manager, fetcher).compute_template_diff(template, "commit-new")

        assert all(d.change_type != "added" for d in diff.custom_format_diffs)
        suggestions = [(s.trash_id, s.source, s.recommended_score) for s in diff.suggested_additions]
        assert suggestions == [(CF_B, "cf_group", 7), (CF_C, "quality_profile", 3)]
        assert diff.suggested_additions[0].source_group_name == "HDR Formats"
        assert [g.change_type for g in diff.custom_format_group_diffs] == ["unchanged"]

    @pytest.mark.asyncio
    async def test_removed_group(self, session_factory, cache_manager) -> None:
        template = await add_template(session_factory, [], groups=[{"trashId": GROUP_1, "name": "Gone"}])
        diff = await TemplateDiffer(cache_manager, fetcher_with([])).compute_template_diff(template, "commit-new")
        assert [(g.trash_id, g.change_type) for g in diff.custom_format_group_diffs] == [(GROUP_1, "removed")]

    @pytest.mark.asyncio
    async def test_diff_is_deterministic(self, session_factory, cache_manager) -> None:
        template = await add_template(session_factory, [
            template_cf(CF_A, "A", score=5, pattern="old"),
            template_cf(CF_B, "B", score=10),
        ])
        differ = TemplateDiffer(cache_manager, fetcher_with([upstream_cf(CF_A, "A", score=8, pattern="new")]))

        first = await differ.compute_template_diff(template, "commit-new")
        second = await differ.compute_template_diff(template, "commit-new")

        assert first.model_dump() == second.model_dump()

    @pytest.mark.asyncio
    async def test_cache_refreshed_only_when_commit_differs(self, session_factory, cache_manager) -> None:
        template = await add_template(session_factory, [template_cf(CF_A, "A", score=5)])
        fetcher = fetcher_with([upstream_cf(CF_A, "A", score=5)])
        differ = TemplateDiffer(cache_manager, fetcher)

        await differ.compute_template_diff(template, "commit-new")
        assert len(fetcher.fetches) == 3
        await differ.compute_template_diff(template, "commit-new")
        assert len(fetcher.fetches) == 3
        assert await cache_manager.get_commit_hash("RADARR", "QUALITY_PROFILES") == "commit-new"

    @pytest.mark.asyncio
    async def test_cache_records_commit_actually_fetched(self, session_factory, cache_manager) -> None:
        """Upstream only serves head; the cache must not claim the requested commit."""
        template = await add_template(session_factory, [template_cf(CF_A, "A", score=5)])
        fetcher = fetcher_with([upstream_cf(CF_A, "A", score=5)], commit="commit-head")
        differ = TemplateDiffer(cache_manager, fetcher)

        diff = await differ.compute_template_diff(template, "commit-pinned")

        assert diff.latest_commit == "commit-head"
        assert await cache_manager.get_commit_hash("RADARR", "CUSTOM_FORMATS") == "commit-head"
        await differ.compute_template_diff(template, "commit-pinned")
        assert len(fetcher.fetches) == 6

    @pytest.mark.asyncio
    async def test_fetch_failure_names_config_type(self, session_factory, cache_manager) -> None:
        template = await add_template(session_factory, [template_cf(CF_A, "A")])
        fetcher = fetcher_with([])
        fetcher.error = RemoteUnreachableError("github down")

        with pytest.raises(UpstreamFetchError) as exc_info:
            await TemplateDiffer(cache_manager, fetcher).compute_template_diff(template, "commit-new")
        assert exc_info.value.config_type == "CUSTOM_FORMATS"

    @pytest.mark.asyncio
    async def test_corrupt_config_fails_loudly(self, session_factory, cache_manager) -> None:
        template = await add_template(session_factory, config_data="{not json")
        with pytest.raises(CorruptDataError) as exc_info:
            await TemplateDiffer(cache_manager, fetcher_with([])).compute_template_diff(template, "commit-new")
        assert exc_info.value.record_id == template.id
        assert template.id in str(exc_info.value)


class TestHistoricalDiff:
    @pytest.mark.asyncio
    async def test_rebuilt_from_changelog_without_fetching(self, session_factory, cache_manager) -> None:
        change_log = json.dumps([{
            "changeType": "auto_sync",
            "timestamp": "2024-03-01T10:00:00",
            "fromCommitHash": "commit-old",
            "toCommitHash": "commit-new",
            "customFormatsAdded": [{"trashId": CF_C, "name": "C", "score": 4}],
            "customFormatsRemoved": [{"trashId": CF_D, "name": "D"}],
            "customFormatsUpdated": [{"trashId": CF_A, "name": "A"}],
            "scoreChanges": [{"trashId": CF_A, "name": "A", "oldScore": 5, "newScore": 8}],
            "summaryStats": {
                "customFormatsAdded": 1,
                "customFormatsRemoved": 1,
                "customFormatsUpdated": 1,
                "customFormatsPreserved": 2,
            },
        }])
        template = await add_template(
            session_factory, [template_cf(CF_A, "A", score=8)], commit_hash="commit-new", change_log=change_log
        )
        fetcher = fetcher_with([])

        diff = await TemplateDiffer(cache_manager, fetcher).compute_template_diff(template, "commit-new")

        assert diff.is_historical
        assert diff.current_commit == "commit-old"
        assert fetcher.fetches == []
        assert {d.trash_id: d.change_type for d in diff.custom_format_diffs} == {
            CF_C: "added",
            CF_D: "removed",
            CF_A: "modified",
        }
        assert diff.summary.total_changes == 3
        assert diff.summary.unchanged_cfs == 2
        assert diff.suggested_score_changes[0].recommended_score == 8
        assert diff.historical_sync_timestamp.year == 2024

    @pytest.mark.asyncio
    async def test_empty_when_no_matching_entry(self, session_factory, cache_manager) -> None:
        template = await add_template(session_factory, [template_cf(CF_A, "A")], commit_hash="commit-new")
        diff = await TemplateDiffer(cache_manager, fetcher_with([])).compute_template_diff(template, "commit-new")

        assert diff.is_historical
        assert diff.custom_format_diffs == []
        assert diff.summary.total_changes == 0
