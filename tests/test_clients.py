"""Tests for the external-system clients with HTTP and CLI calls stubbed."""

import base64
import json

import pytest
import requests

from shipline_common import config_store, reconciler, registry
from shipline_common.config_store import GitHubContentsStore, MemoryConfigStore
from shipline_common.errors import CommandFailed, ConflictError, FatalError, TransientError
from shipline_common.reconciler import ReconcilerClient
from shipline_common.registry import RegistryClient

DIGEST = "sha256:" + "e" * 64


class FakeResponse:
    def __init__(self, status_code=200, body=None, headers=None):
        self.status_code = status_code
        self._body = body if body is not None else {}
        self.headers = headers or {}
        self.text = json.dumps(self._body)

    def json(self):
        return self._body


def test_memory_store_rejects_stale_revision():
    cfg = MemoryConfigStore({"image": {"tag": "a"}})
    first = cfg.read()
    cfg.write({"image": {"tag": "b"}}, first.revision, "one")

    with pytest.raises(ConflictError):
        cfg.write({"image": {"tag": "c"}}, first.revision, "two")
    assert cfg.read().document["image"]["tag"] == "b"


def test_github_contents_store_uses_blob_sha_as_revision(monkeypatch):
    calls = []
    encoded = base64.b64encode(b'{"image": {"tag": "old"}}').decode()

    def fake_get(token, url, params=None):
        calls.append(("GET", url, params))
        return {"content": encoded, "sha": "blob1"}

    def fake_put(token, url, payload):
        calls.append(("PUT", url, payload))
        return {"content": {"sha": "blob2"}}

    monkeypatch.setattr(config_store, "gh_get", fake_get)
    monkeypatch.setattr(config_store, "gh_put", fake_put)
    monkeypatch.setattr(config_store, "read_secret", lambda path: "ghp_test")
    cfg = GitHubContentsStore("acme", "deploy", "charts/web/values.json", "main", "/secrets/token")

    current = cfg.read()
    revision = cfg.write({"image": {"tag": "new"}}, current.revision, "deploy new")

    assert current.document == {"image": {"tag": "old"}}
    assert current.revision == "blob1"
    assert revision == "blob2"
    put = calls[1][2]
    assert put["sha"] == "blob1"
    assert put["branch"] == "main"
    assert json.loads(base64.b64decode(put["content"])) == {"image": {"tag": "new"}}


def test_registry_manifest_lookup(monkeypatch):
    responses = {
        "missing": FakeResponse(404),
        "present": FakeResponse(200, {"config": {"digest": "sha256:cfg"}}, {"Docker-Content-Digest": DIGEST}),
    }
    monkeypatch.setattr(registry.requests, "get", lambda url, **kw: responses[url.rsplit("/", 1)[-1]])
    client = RegistryClient("https://registry.test")

    assert client.manifest("app/web", "missing") is None
    assert client.manifest("app/web", "present")["digest"] == DIGEST
    assert client.image_name("app/web") == "registry.test/app/web"


@pytest.mark.parametrize("outcome,error", [
    (FakeResponse(401), FatalError),
    (FakeResponse(503), TransientError),
    (requests.ConnectionError("refused"), TransientError),
])
def test_registry_failures_are_classified(monkeypatch, outcome, error):
    def fake_get(url, **kw):
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(registry.requests, "get", fake_get)
    with pytest.raises(error):
        RegistryClient("https://registry.test").manifest("app/web", "t")


def test_registry_push_reads_digest(monkeypatch):
    monkeypatch.setattr(registry, "run_cmd", lambda args, timeout=None: f"t1: digest: {DIGEST} size: 528\n")
    assert RegistryClient("https://registry.test").push("registry.test/app/web:t1") == DIGEST


def test_registry_push_auth_failure_is_fatal(monkeypatch):
    def fail(args, timeout=None):
        raise CommandFailed(args, 1, "unauthorized: authentication required")

    monkeypatch.setattr(registry, "run_cmd", fail)
    with pytest.raises(FatalError):
        RegistryClient("https://registry.test").push("registry.test/app/web:t1")


def _app(sync="Synced", health="Healthy", images=()):
    return {"status": {
        "sync": {"status": sync},
        "health": {"status": health},
        "summary": {"images": list(images)},
    }}


@pytest.mark.parametrize("body,expected", [
    (_app(images=["registry.test/app/web:v2", "redis:7"]), "v2"),
    (_app(sync="OutOfSync", images=["registry.test/app/web:v2"]), None),
    (_app(health="Progressing", images=["registry.test/app/web:v2"]), None),
    (_app(images=["registry.test/other:v2"]), None),
])
def test_reconciler_applied_tag(monkeypatch, body, expected):
    monkeypatch.setattr(reconciler.requests, "get", lambda url, **kw: FakeResponse(200, body))
    client = ReconcilerClient("https://argocd.test", "web", "registry.test/app/web")
    assert client.applied_tag() == expected
