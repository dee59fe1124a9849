"""Tests for wiring the default deployment from settings."""

from types import MappingProxyType

import pytest

from shipline_common import settings
from shipline_common.config_store import GitConfigStore, GitHubContentsStore, MemoryConfigStore
from shipline_common.errors import DeterministicError
from shipline_common.state import Artifact, StageContext
from shipline_worker.pipeline import build_deployment, input_of_kind, make_config_store, rq_launcher


def test_config_backend_selects_the_store(monkeypatch):
    monkeypatch.setattr(settings, "CONFIG_BACKEND", "github")
    monkeypatch.setattr(settings, "CONFIG_GITHUB_REPO", "acme/deploy")
    github = make_config_store()
    assert isinstance(github, GitHubContentsStore)
    assert (github.owner, github.repo) == ("acme", "deploy")

    monkeypatch.setattr(settings, "CONFIG_BACKEND", "git")
    monkeypatch.setattr(settings, "CONFIG_REPO_URL", "https://github.com/acme/deploy.git")
    assert isinstance(make_config_store(), GitConfigStore)


def test_unconfigured_store_is_an_error(monkeypatch):
    monkeypatch.setattr(settings, "CONFIG_BACKEND", "git")
    monkeypatch.setattr(settings, "CONFIG_REPO_URL", "")
    with pytest.raises(RuntimeError, match="config_store_not_configured"):
        make_config_store()


def test_build_deployment_uses_settings(monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "DB_PATH", str(tmp_path / "shipline.db"))
    monkeypatch.setattr(settings, "RECONCILER_URL", "")

    deployment = build_deployment(launcher=lambda run_id: None, config_store=MemoryConfigStore())

    assert deployment.engine.dag.order() == ["build", "publish", "propagate"]
    assert deployment.observer is None
    assert deployment.propagator.store is not None


def test_missing_input_is_deterministic():
    ctx = StageContext(run_id="r", source_ref="abc", stage="publish", attempt=1, idempotency_key="r:publish",
                       inputs=MappingProxyType({"build": Artifact("image", "x")}))
    with pytest.raises(DeterministicError, match="missing_input"):
        input_of_kind(ctx, "build")


def test_rq_launcher_enqueues_once_per_run():
    class FakeQueue:
        def __init__(self):
            self.jobs = []

        def enqueue(self, func, *args, **kwargs):
            self.jobs.append((func, args, kwargs))

    queue = FakeQueue()
    rq_launcher(queue)("run-123")

    assert queue.jobs == [("shipline_worker.jobs.execute_run", ("run-123",), {"job_id": "run-run-123"})]
