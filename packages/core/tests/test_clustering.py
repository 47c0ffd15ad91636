"""Tests for change-unit clustering."""

import random

import pytest

from prsteps_core.clustering import (
    cluster_hunks,
    hunk_text,
    merge_nearby,
    step_id,
    to_review_steps,
)
from prsteps_core.errors import ClusteringError
from prsteps_core.utils.diff import parse_patch
from prsteps_store.models import Hunk

CONFIG = {"proximity_lines": 10, "max_step_lines": 400, "symbol_fanout_limit": 8}

AUTH_PATCH = (
    "@@ -10,6 +10,6 @@ def refresh_token(user):\n"
    "     session = load(user)\n"
    "-    return old_token(session)\n"
    "+    return new_token(session)\n"
    "     # done\n"
    "     \n"
    "     \n"
)

AUTH_TEST_PATCH = (
    "@@ -3,6 +3,6 @@\n"
    "     user = make_user()\n"
    "-    assert refresh_token(user) == 1\n"
    "+    assert refresh_token(user) == 2\n"
    "     \n"
    "     \n"
    "     \n"
)


def _added(path, start, count, word="line", status="modified"):
    body = "".join(f"+{word}{i} = {i}\n" for i in range(count))
    return parse_patch(path, f"@@ -{start},0 +{start},{count} @@\n{body}", file_status=status)[0]


def _all_keys(plans):
    return [h.key for plan in plans for h in plan.hunks]


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


class TestScenarios:
    def test_shared_symbol_joins_files(self):
        hunks = parse_patch("auth.py", AUTH_PATCH) + parse_patch("auth_test.py", AUTH_TEST_PATCH)
        plans = cluster_hunks(hunks, CONFIG)
        assert len(plans) == 1
        assert plans[0].file_scope == [["auth.py", 10, 15], ["auth_test.py", 3, 8]]
        assert plans[0].symbols[0] == "refresh_token"
        assert plans[0].title.startswith("auth.py, auth_test.py: refresh_token")

    def test_unrelated_files_ordered_by_path(self):
        hunks = parse_patch("b.txt", "@@ -1 +1 @@\n-foo\n+bar\n") + parse_patch(
            "a.txt", "@@ -1 +1 @@\n-hello\n+world\n"
        )
        plans = cluster_hunks(hunks, CONFIG)
        assert [p.hunks[0].path for p in plans] == ["a.txt", "b.txt"]

    def test_empty_input_yields_no_steps(self):
        assert cluster_hunks([], CONFIG) == []


# ---------------------------------------------------------------------------
# Passes
# ---------------------------------------------------------------------------


class TestMergeNearby:
    def test_close_hunks_merge(self):
        hunks = [_added("app.py", 1, 3), _added("app.py", 10, 3, word="other")]
        assert len(merge_nearby(hunks, 10)) == 1

    def test_distant_hunks_stay_apart(self):
        hunks = [_added("app.py", 1, 3), _added("app.py", 50, 3, word="other")]
        assert len(merge_nearby(hunks, 10)) == 2

    def test_never_merges_across_files(self):
        hunks = [_added("a.py", 1, 3), _added("b.py", 1, 3)]
        assert len(merge_nearby(hunks, 100)) == 2


class TestGrouping:
    def test_distant_same_file_hunks_not_linked_by_name(self):
        hunks = [_added("app.py", 1, 2, word="shared"), _added("app.py", 200, 2, word="shared")]
        assert len(cluster_hunks(hunks, CONFIG)) == 2

    def test_generic_identifier_over_fanout_ignored(self):
        hunks = [_added(f"mod{i}.py", 1, 1, word="common_flag") for i in range(3)]
        assert len(cluster_hunks(hunks, {**CONFIG, "symbol_fanout_limit": 2})) == 3
        assert len(cluster_hunks(hunks, CONFIG)) == 1


class TestSizeCap:
    def test_large_group_split_below_cap(self):
        hunks = [_added("app.py", start, 30, word=f"w{start}_") for start in (1, 40, 80)]
        plans = cluster_hunks(hunks, {**CONFIG, "max_step_lines": 50, "proximity_lines": 100})
        assert len(plans) == 3
        assert all(p.changed_lines <= 50 for p in plans)

    def test_single_oversized_hunk_emitted_alone(self):
        plans = cluster_hunks([_added("big.py", 1, 60)], {**CONFIG, "max_step_lines": 50})
        assert len(plans) == 1
        assert "oversized" in plans[0].risk_tags
        assert "high-impact" in plans[0].risk_tags
        assert plans[0].complexity == "M"


class TestInvariants:
    def _hunks(self):
        hunks = parse_patch("auth.py", AUTH_PATCH) + parse_patch("auth_test.py", AUTH_TEST_PATCH)
        hunks += [_added("docs/readme.md", 1, 2, word="intro"), _added("web/app.js", 5, 4, word="render")]
        hunks += [_added("web/app.js", 300, 2, word="footer")]
        return hunks

    def test_every_hunk_in_exactly_one_step(self):
        hunks = self._hunks()
        keys = _all_keys(cluster_hunks(hunks, CONFIG))
        assert sorted(keys) == sorted(h.key for h in hunks)

    def test_deterministic_regardless_of_input_order(self):
        hunks = self._hunks()
        shuffled = list(hunks)
        random.Random(7).shuffle(shuffled)
        first = cluster_hunks(hunks, CONFIG)
        second = cluster_hunks(shuffled, CONFIG)
        assert [(p.title, _all_keys([p])) for p in first] == [(p.title, _all_keys([p])) for p in second]

    def test_steps_ordered_by_first_path_and_line(self):
        plans = cluster_hunks(self._hunks(), CONFIG)
        keys = [p.sort_key[:2] for p in plans]
        assert keys == sorted(keys)

    def test_duplicate_hunk_is_malformed(self):
        hunk = _added("a.py", 1, 1)
        with pytest.raises(ClusteringError):
            cluster_hunks([hunk, hunk], CONFIG)

    def test_patch_without_header_is_malformed(self):
        bad = Hunk(path="a.py", old_start=1, old_lines=1, new_start=1, new_lines=1, patch="+x")
        with pytest.raises(ClusteringError):
            cluster_hunks([bad], CONFIG)

    def test_negative_range_is_malformed(self):
        bad = Hunk(path="a.py", old_start=-1, old_lines=1, new_start=1, new_lines=1, patch="@@ -1 +1 @@\n+x")
        with pytest.raises(ClusteringError):
            cluster_hunks([bad], CONFIG)


class TestMetadata:
    def test_new_file_category(self):
        plans = cluster_hunks([_added("new.py", 1, 2, status="added")], CONFIG)
        assert plans[0].category == "New File"
        assert plans[0].complexity == "S"

    def test_hunk_text_includes_scope(self):
        hunk = parse_patch("auth.py", AUTH_PATCH)[0]
        text = hunk_text(hunk)
        assert "def refresh_token(user):" in text
        assert "new_token" in text
        assert "load(user)" not in text


class TestReviewSteps:
    def test_step_ids_are_stable(self):
        assert step_id("snap-1", 0) == step_id("snap-1", 0)
        assert step_id("snap-1", 0) != step_id("snap-1", 1)
        assert step_id("snap-1", 0) != step_id("snap-2", 0)

    def test_to_review_steps_binds_session(self):
        hunks = parse_patch("a.txt", "@@ -1 +1 @@\n-hello\n+world\n")
        steps = to_review_steps(cluster_hunks(hunks, CONFIG), "session-1", "snap-1")
        assert len(steps) == 1
        step = steps[0]
        assert step.id == step_id("snap-1", 0)
        assert step.session_id == "session-1"
        assert step.snapshot_id == "snap-1"
        assert step.order_index == 0
        assert step.changed_lines == 2
        assert step.status == "pending"
