"""Shared test fixtures."""

import pytest

from shipline_common.db import RunStore
from shipline_common.schemas import PipelineConfig, RetryPolicy, StageSpec
from shipline_worker.engine import PipelineEngine


def stage(name, needs=(), attempts=1, backoff_s=0.0, timeout_s=None):
    return StageSpec(
        name=name,
        needs=list(needs),
        retry=RetryPolicy(max_attempts=attempts, backoff_s=backoff_s, backoff_factor=1.0),
        timeout_s=timeout_s,
    )


class FakeReconciler:
    """Returns queued tags one poll at a time, then repeats the last one."""

    def __init__(self, *tags):
        self.tags = list(tags)
        self.polls = 0

    def applied_tag(self):
        self.polls += 1
        value = self.tags.pop(0) if len(self.tags) > 1 else self.tags[0]
        if isinstance(value, Exception):
            raise value
        return value


@pytest.fixture
def store(tmp_path):
    return RunStore(str(tmp_path / "shipline.db"))


@pytest.fixture
def make_engine(store):
    """Engine that never launches on its own; tests call execute()."""
    def _make(stages, executors, launcher=None, sleeps=None, **config):
        cfg = PipelineConfig(stages=list(stages), **config)
        sleep = sleeps.append if sleeps is not None else (lambda s: None)
        return PipelineEngine(cfg, executors, store, launcher=launcher or (lambda run_id: None), sleep=sleep)
    return _make
