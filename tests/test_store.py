"""Tests for the sqlite run store."""

import uuid

import pytest

from shipline_common.db import RunStore
from shipline_common.errors import RunAlreadyActive
from shipline_common.state import (
    Artifact, CANCELLED, FAILED, PipelineRun, RETRYING, RUNNING, StageResult, SUCCEEDED, TagRecord,
)
from shipline_common.utils import utc_now_iso


def _run(source_ref="abc123"):
    return PipelineRun(id=str(uuid.uuid4()), source_ref=source_ref, stages={"build": "pending"})


def _result(stage, attempt, status, **kw):
    now = utc_now_iso()
    return StageResult(stage, attempt, status, started_at=now, finished_at=now, **kw)


def test_runs_round_trip_with_results_in_append_order(store):
    run, created = store.create_run_for_trigger(_run())
    assert created
    store.start_run(run.id)
    store.append_result(run.id, _result("build", 1, RETRYING, error="registry_unreachable", error_kind="transient"))
    store.append_result(run.id, _result("build", 2, SUCCEEDED, artifact=Artifact("build", "/out", "sha256:1")))

    loaded = store.get_run(run.id)

    assert loaded.status == RUNNING
    assert [(r.stage, r.attempt, r.status) for r in loaded.results] == [
        ("build", 1, RETRYING),
        ("build", 2, SUCCEEDED),
    ]
    assert loaded.results[1].artifact == Artifact("build", "/out", "sha256:1")
    assert loaded.results[0].seq < loaded.results[1].seq
    assert loaded.failure is None


def test_terminal_run_is_immutable(store):
    run, _ = store.create_run_for_trigger(_run())
    store.update_run(run.id, status=FAILED, error="boom")

    with pytest.raises(RuntimeError, match="run_terminal"):
        store.update_run(run.id, status=SUCCEEDED)
    with pytest.raises(RuntimeError, match="run_terminal"):
        store.append_result(run.id, _result("build", 1, SUCCEEDED))
    assert store.get_run(run.id).status == FAILED


def test_start_run_is_claimed_once(store):
    run, _ = store.create_run_for_trigger(_run())
    assert store.start_run(run.id) is True
    assert store.start_run(run.id) is False
    with pytest.raises(KeyError):
        store.start_run("missing")


def test_active_revision_blocks_new_runs_across_store_instances(tmp_path):
    path = str(tmp_path / "shared.db")
    first = RunStore(path)
    second = RunStore(path)
    run, _ = first.create_run_for_trigger(_run("shared1"))

    with pytest.raises(RunAlreadyActive):
        second.create_run_for_trigger(_run("shared1"))


def test_cancel_request_is_ignored_for_terminal_runs(store):
    live, _ = store.create_run_for_trigger(_run("live"))
    done, _ = store.create_run_for_trigger(_run("done"))
    store.start_run(live.id)
    store.update_run(done.id, status=SUCCEEDED)

    assert store.request_cancel(live.id).cancel_requested is True
    assert store.request_cancel(done.id).cancel_requested is False
    assert store.cancel_requested(live.id) is True
    assert store.get_run(live.id).status == RUNNING


def test_cancelling_a_pending_run_finishes_it(store):
    run, _ = store.create_run_for_trigger(_run("queued"))

    cancelled = store.request_cancel(run.id)

    assert cancelled.status == CANCELLED
    assert cancelled.stages == {"build": CANCELLED}
    assert cancelled.finished_at
    assert store.start_run(run.id) is False
    again, created = store.create_run_for_trigger(_run("queued"), rerun=True)
    assert created and again.id != run.id


def test_discard_pending_frees_the_revision(store):
    run, _ = store.create_run_for_trigger(_run("unlaunched"))

    assert store.discard_pending(run.id) is True
    with pytest.raises(KeyError):
        store.get_run(run.id)
    retry, created = store.create_run_for_trigger(_run("unlaunched"))
    assert created

    store.start_run(retry.id)
    assert store.discard_pending(retry.id) is False
    assert store.get_run(retry.id).status == RUNNING


def test_list_runs_filters_by_revision(store):
    a, _ = store.create_run_for_trigger(_run("aaa"))
    store.create_run_for_trigger(_run("bbb"))

    assert [r.id for r in store.list_runs("aaa")] == [a.id]
    assert len(store.list_runs()) == 2


def test_convergence_is_stamped_on_the_record(store):
    record = store.activate_tag_record(TagRecord("run-1", "v1", "repo@sha256:1", "rev1", utc_now_iso()))

    store.mark_converged(record.id, "2026-10-19T12:00:00+00:00")

    assert store.active_tag_record().converged_at == "2026-10-19T12:00:00+00:00"
