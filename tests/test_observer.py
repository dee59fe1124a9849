"""Tests for the reconciliation observer."""

from conftest import FakeReconciler
from shipline_common.errors import TransientError
from shipline_common.state import TagRecord
from shipline_common.utils import utc_now_iso
from shipline_worker.observer import CONVERGED, TIMED_OUT, ReconciliationObserver


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


def _record(tag="v2", record_id=None):
    return TagRecord("run-1", tag, "registry.test/app/web@sha256:1", "rev", utc_now_iso(), id=record_id)


def _observer(reconciler, store=None, interval_s=10.0):
    clock = FakeClock()
    return ReconciliationObserver(reconciler, store, interval_s=interval_s, clock=clock, sleep=clock.sleep)


def test_converges_once_the_cluster_reports_the_tag():
    reconciler = FakeReconciler("v1", "v1", "v2")

    result = _observer(reconciler).await_convergence(_record("v2"), timeout_s=60)

    assert result.status == CONVERGED
    assert result.observed_tag == "v2"
    assert result.waited_s == 20.0
    assert reconciler.polls == 3


def test_times_out_with_the_last_observed_tag():
    result = _observer(FakeReconciler("v1")).await_convergence(_record("v2"), timeout_s=25)

    assert result.status == TIMED_OUT
    assert result.observed_tag == "v1"
    assert result.waited_s == 25.0


def test_transient_poll_failures_are_tolerated():
    reconciler = FakeReconciler(TransientError("reconciler_unreachable"), None, "v2")

    result = _observer(reconciler).await_convergence(_record("v2"), timeout_s=60)

    assert result.status == CONVERGED


def test_convergence_is_recorded_on_the_tag_record(store):
    record = store.activate_tag_record(_record("v2"))

    _observer(FakeReconciler("v2"), store).await_convergence(record, timeout_s=5)

    assert store.active_tag_record().converged_at is not None
