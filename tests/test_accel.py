# Copyright (c) Syntropy Systems
"""Tests for the batch accelerator."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from batchaccel.accel import (
    AcceleratorError,
    AppLookup,
    is_eligible,
    plan_workunit,
    run_pass,
)
from batchaccel.db import (
    create_app,
    create_batch,
    create_result,
    create_workunit,
    format_timestamp,
    get_batch,
    get_result,
    get_workunit,
    get_workunit_results,
    set_batch_state,
    set_canonical_result,
    set_error_mask,
)
from batchaccel.models.db import AppRecord, ResultRecord, WorkunitRecord

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _ago(seconds: float) -> str:
    return format_timestamp(NOW - timedelta(seconds=seconds))


def _workunit(**kwargs: object) -> WorkunitRecord:
    data: dict[str, object] = {"id": 1, "batch_id": 1, "app_id": 1}
    data.update(kwargs)
    return WorkunitRecord.model_validate(data)


def _result(result_id: int, state: str, sent_time: str | None = None, priority: int = 0) -> ResultRecord:
    return ResultRecord(
        id=result_id,
        workunit_id=1,
        batch_id=1,
        server_state=state,
        sent_time=sent_time,
        priority=priority,
    )


class TestEligibility:
    """Tests for the batch eligibility rule."""

    def test_mostly_done_batch(self) -> None:
        assert is_eligible(0.9, 100)

    def test_small_batch(self) -> None:
        assert is_eligible(0.0, 19)

    def test_neither(self) -> None:
        assert not is_eligible(0.5, 100)

    def test_thresholds_are_exclusive(self) -> None:
        """Exactly at either threshold does not qualify."""
        assert not is_eligible(0.85, 20)
        assert not is_eligible(0.85, 100)
        assert not is_eligible(0.0, 20)

    def test_custom_thresholds(self) -> None:
        assert is_eligible(0.6, 100, min_frac_done=0.5, max_not_done=5)
        assert not is_eligible(0.4, 5, min_frac_done=0.5, max_not_done=5)
        assert is_eligible(0.4, 4, min_frac_done=0.5, max_not_done=5)


class TestAppLookup:
    """Tests for the per-pass app lookup."""

    def test_from_apps(self) -> None:
        lookup = AppLookup.from_apps([
            AppRecord(id=1, name="a", n_size_classes=0),
            AppRecord(id=2, name="b", n_size_classes=4),
        ])
        assert lookup.accelerable(1) is False
        assert lookup.accelerable(2) is True
        assert len(lookup) == 2
        assert dict(lookup) == {1: False, 2: True}

    def test_unknown_app_is_fatal(self) -> None:
        lookup = AppLookup({})
        with pytest.raises(AcceleratorError, match="App 7 not found"):
            lookup.accelerable(7)

    def test_read_only(self) -> None:
        source = {1: True}
        lookup = AppLookup(source)
        source[1] = False
        assert lookup[1] is True
        with pytest.raises(TypeError):
            lookup._accelerable[1] = False  # type: ignore[index]


class TestPlanWorkunit:
    """Tests for the per-job decision."""

    def test_no_results(self) -> None:
        """A job with no results gets one and is raised to high priority."""
        plan = plan_workunit(_workunit(max_total_results=1), [], NOW, 3600)
        assert plan.add_result is True
        assert plan.raise_priority is True
        assert plan.boost_result_ids == ()

    def test_unsent_result_is_boosted(self) -> None:
        """An unsent result is boosted instead of adding another."""
        plan = plan_workunit(
            _workunit(max_total_results=3),
            [_result(10, "unsent")],
            NOW,
            3600,
        )
        assert plan.add_result is False
        assert plan.boost_result_ids == (10,)

    def test_unsent_high_priority_result(self) -> None:
        """An unsent result already at high priority is left alone."""
        plan = plan_workunit(
            _workunit(max_total_results=3, priority=1),
            [_result(10, "unsent", priority=1)],
            NOW,
            3600,
        )
        assert plan.is_noop

    def test_unsent_result_boosted_at_result_limit(self) -> None:
        """Boosting an unsent result does not depend on the result limit."""
        plan = plan_workunit(
            _workunit(max_total_results=1),
            [_result(10, "unsent")],
            NOW,
            3600,
        )
        assert plan.add_result is False
        assert plan.boost_result_ids == (10,)

    def test_recent_in_progress_result(self) -> None:
        """A recently sent result holds back a new one but not the priority."""
        plan = plan_workunit(
            _workunit(max_total_results=3),
            [_result(10, "in_progress", sent_time=_ago(10))],
            NOW,
            3600,
        )
        assert plan.add_result is False
        assert plan.raise_priority is True

    def test_stale_in_progress_result(self) -> None:
        """A result sent longer ago than the expiry gets a competitor."""
        plan = plan_workunit(
            _workunit(max_total_results=3),
            [_result(10, "in_progress", sent_time=_ago(7200))],
            NOW,
            3600,
        )
        assert plan.add_result is True

    def test_age_equal_to_expiry_is_stale(self) -> None:
        plan = plan_workunit(
            _workunit(max_total_results=3),
            [_result(10, "in_progress", sent_time=_ago(3600))],
            NOW,
            3600,
        )
        assert plan.add_result is True

    def test_in_progress_without_sent_time(self) -> None:
        plan = plan_workunit(
            _workunit(max_total_results=3),
            [_result(10, "in_progress")],
            NOW,
            3600,
        )
        assert plan.add_result is True

    def test_result_limit_reached(self) -> None:
        """No new result once the job has its maximum number of results."""
        plan = plan_workunit(
            _workunit(max_total_results=2),
            [
                _result(10, "over"),
                _result(11, "in_progress", sent_time=_ago(7200)),
            ],
            NOW,
            3600,
        )
        assert plan.add_result is False
        assert plan.raise_priority is True

    def test_over_results_do_not_block(self) -> None:
        plan = plan_workunit(
            _workunit(max_total_results=3),
            [_result(10, "over"), _result(11, "over")],
            NOW,
            3600,
        )
        assert plan.add_result is True

    def test_already_high_priority(self) -> None:
        plan = plan_workunit(_workunit(priority=1, max_total_results=1), [], NOW, 3600)
        assert plan.raise_priority is False
        assert plan.add_result is True

    def test_naive_now_treated_as_utc(self) -> None:
        plan = plan_workunit(
            _workunit(max_total_results=3),
            [_result(10, "in_progress", sent_time=_ago(10))],
            NOW.replace(tzinfo=None),
            3600,
        )
        assert plan.add_result is False


def _make_batch(
    conn: sqlite3.Connection,
    n_size_classes: int = 1,
    expire_time: float = 3600,
    n_jobs: int = 1,
) -> tuple[int, list[int]]:
    app_id = create_app(conn, f"app-{n_size_classes}-{n_jobs}", n_size_classes=n_size_classes)
    batch_id = create_batch(conn, app_id, expire_time=expire_time)
    wu_ids = [create_workunit(conn, batch_id) for _ in range(n_jobs)]
    return batch_id, wu_ids


class TestRunPass:
    """Tests for a full accelerator pass against the job store."""

    def test_job_without_results(self, db_connection: sqlite3.Connection) -> None:
        """A job with no results gets one more and high priority."""
        _, (wu_id,) = _make_batch(db_connection)

        summary = run_pass(db_connection, now=NOW)

        wu = get_workunit(db_connection, wu_id)
        assert wu is not None
        assert wu.target_nresults == 2
        assert wu.max_total_results == 2
        assert wu.priority == 1
        assert wu.transition_time == format_timestamp(NOW)
        assert summary.batches_accelerated == 1
        assert summary.results_added == 1
        assert summary.workunits_boosted == 1

    def test_unsent_result(self, db_connection: sqlite3.Connection) -> None:
        """An unsent result is boosted and no replica is added."""
        _, (wu_id,) = _make_batch(db_connection)
        result_id = create_result(db_connection, wu_id)

        summary = run_pass(db_connection, now=NOW)

        result = get_result(db_connection, result_id)
        assert result is not None
        assert result.priority == 1
        wu = get_workunit(db_connection, wu_id)
        assert wu is not None
        assert wu.target_nresults == 1
        assert wu.max_total_results == 1
        assert summary.results_added == 0
        assert summary.results_boosted == 1

    def test_recent_in_progress_result(self, db_connection: sqlite3.Connection) -> None:
        """A fresh in-progress result: no replica, but priority still raised."""
        _, (wu_id,) = _make_batch(db_connection)
        with db_connection:
            db_connection.execute(
                "UPDATE workunits SET max_total_results = 4 WHERE id = ?", (wu_id,)
            )
        _ = create_result(db_connection, wu_id, server_state="in_progress", sent_time=_ago(10))

        run_pass(db_connection, now=NOW)

        wu = get_workunit(db_connection, wu_id)
        assert wu is not None
        assert wu.max_total_results == 4
        assert wu.target_nresults == 1
        assert wu.priority == 1

    def test_stale_in_progress_result(self, db_connection: sqlite3.Connection) -> None:
        """A stale in-progress result gets a competing replica."""
        _, (wu_id,) = _make_batch(db_connection)
        with db_connection:
            db_connection.execute(
                "UPDATE workunits SET max_total_results = 4 WHERE id = ?", (wu_id,)
            )
        _ = create_result(db_connection, wu_id, server_state="in_progress", sent_time=_ago(7200))

        run_pass(db_connection, now=NOW)

        wu = get_workunit(db_connection, wu_id)
        assert wu is not None
        assert wu.max_total_results == 5
        assert wu.target_nresults == 2

    def test_non_accelerable_app_resets_priorities(self, db_connection: sqlite3.Connection) -> None:
        """Jobs and results of a non-accelerable app go back to normal."""
        batch_id, wu_ids = _make_batch(db_connection, n_size_classes=0, n_jobs=2)
        with db_connection:
            db_connection.execute("UPDATE workunits SET priority = 1 WHERE batch_id = ?", (batch_id,))
        result_id = create_result(db_connection, wu_ids[0], priority=1)

        summary = run_pass(db_connection, now=NOW)

        for wu_id in wu_ids:
            wu = get_workunit(db_connection, wu_id)
            assert wu is not None
            assert wu.priority == 0
            assert wu.max_total_results == 1
        result = get_result(db_connection, result_id)
        assert result is not None
        assert result.priority == 0
        assert summary.batches_reset == 1
        assert summary.batches_accelerated == 0

    def test_second_pass_is_idempotent(self, db_connection: sqlite3.Connection) -> None:
        """High priority job with an unsent result: nothing more to do."""
        _, (wu_id,) = _make_batch(db_connection)
        result_id = create_result(db_connection, wu_id, priority=1)
        with db_connection:
            db_connection.execute("UPDATE workunits SET priority = 1 WHERE id = ?", (wu_id,))

        summary = run_pass(db_connection, now=NOW)

        wu = get_workunit(db_connection, wu_id)
        assert wu is not None
        assert wu.priority == 1
        assert wu.target_nresults == 1
        assert wu.max_total_results == 1
        assert len(get_workunit_results(db_connection, wu_id)) == 1
        result = get_result(db_connection, result_id)
        assert result is not None
        assert result.priority == 1
        assert summary.results_added == 0
        assert summary.workunits_boosted == 0
        assert summary.results_boosted == 0
        assert summary.conflicts == 0

    def test_repeat_pass_with_recent_result(self, db_connection: sqlite3.Connection) -> None:
        """Running twice does not escalate a job whose result is still fresh."""
        _, (wu_id,) = _make_batch(db_connection)
        with db_connection:
            db_connection.execute(
                "UPDATE workunits SET max_total_results = 4 WHERE id = ?", (wu_id,)
            )
        _ = create_result(db_connection, wu_id, server_state="in_progress", sent_time=_ago(10))

        run_pass(db_connection, now=NOW)
        first = get_workunit(db_connection, wu_id)
        run_pass(db_connection, now=NOW)
        second = get_workunit(db_connection, wu_id)

        assert first == second

    def test_finished_jobs_are_skipped(self, db_connection: sqlite3.Connection) -> None:
        """Validated and failed jobs are not accelerated."""
        _, wu_ids = _make_batch(db_connection, n_jobs=3)
        done_result = create_result(db_connection, wu_ids[0], server_state="over")
        set_canonical_result(db_connection, wu_ids[0], done_result)
        set_error_mask(db_connection, wu_ids[1], 4)

        summary = run_pass(db_connection, now=NOW)

        for wu_id in wu_ids[:2]:
            wu = get_workunit(db_connection, wu_id)
            assert wu is not None
            assert wu.priority == 0
            assert wu.max_total_results == 1
        pending = get_workunit(db_connection, wu_ids[2])
        assert pending is not None
        assert pending.priority == 1
        assert summary.workunits_examined == 1

    def test_ineligible_batch_untouched(self, db_connection: sqlite3.Connection) -> None:
        """A large batch far from done is left alone."""
        _, wu_ids = _make_batch(db_connection, n_jobs=25)

        summary = run_pass(db_connection, now=NOW)

        assert summary.batches_ineligible == 1
        for wu_id in wu_ids:
            wu = get_workunit(db_connection, wu_id)
            assert wu is not None
            assert wu.priority == 0

    def test_large_batch_nearly_done(self, db_connection: sqlite3.Connection) -> None:
        """A large batch past the completion threshold is accelerated."""
        _, wu_ids = _make_batch(db_connection, n_jobs=200)
        for wu_id in wu_ids[:180]:
            result_id = create_result(db_connection, wu_id, server_state="over")
            set_canonical_result(db_connection, wu_id, result_id)

        summary = run_pass(db_connection, now=NOW)

        assert summary.batches_accelerated == 1
        assert summary.workunits_examined == 20

    def test_custom_thresholds(self, db_connection: sqlite3.Connection) -> None:
        """Thresholds passed to the pass override the defaults."""
        _, (wu_id,) = _make_batch(db_connection)

        summary = run_pass(db_connection, min_frac_done=0.5, max_not_done=1, now=NOW)

        assert summary.batches_ineligible == 1
        wu = get_workunit(db_connection, wu_id)
        assert wu is not None
        assert wu.priority == 0

    def test_completed_batch_is_skipped(self, db_connection: sqlite3.Connection) -> None:
        """A batch whose jobs all finished is marked complete, not accelerated."""
        batch_id, (wu_id,) = _make_batch(db_connection)
        result_id = create_result(db_connection, wu_id, server_state="over")
        set_canonical_result(db_connection, wu_id, result_id)

        summary = run_pass(db_connection, now=NOW)

        batch = get_batch(db_connection, batch_id)
        assert batch is not None
        assert batch.state == "complete"
        assert batch.fraction_done == 1.0
        assert summary.batches_skipped == 1
        assert summary.batches_accelerated == 0

    def test_batches_in_other_states_ignored(self, db_connection: sqlite3.Connection) -> None:
        batch_id, (wu_id,) = _make_batch(db_connection)
        set_batch_state(db_connection, batch_id, "aborted")

        summary = run_pass(db_connection, now=NOW)

        assert summary.batches_seen == 0
        wu = get_workunit(db_connection, wu_id)
        assert wu is not None
        assert wu.priority == 0

    def test_empty_batch_not_evaluated(self, db_connection: sqlite3.Connection) -> None:
        """A batch with no jobs is skipped and stays in progress."""
        app_id = create_app(db_connection, "app", n_size_classes=1)
        batch_id = create_batch(db_connection, app_id)

        summary = run_pass(db_connection, now=NOW)

        assert summary.batches_skipped == 1
        batch = get_batch(db_connection, batch_id)
        assert batch is not None
        assert batch.state == "in_progress"

    def test_unknown_app_aborts(self, db_connection: sqlite3.Connection) -> None:
        """A batch that refers to a missing app aborts the pass."""
        db_connection.execute("INSERT INTO batches (app_id, state) VALUES (99, 'in_progress')")

        with pytest.raises(AcceleratorError, match="App 99 not found"):
            run_pass(db_connection, now=NOW)
