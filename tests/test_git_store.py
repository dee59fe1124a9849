"""GitConfigStore against a local bare repository."""

import json
import shutil
import subprocess

import pytest

from shipline_common.config_store import GitConfigStore
from shipline_common.errors import ConflictError, FatalError

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _git(*args, cwd=None):
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)


@pytest.fixture
def remote(tmp_path):
    origin = tmp_path / "origin.git"
    _git("init", "--bare", "--initial-branch=main", str(origin))
    seed = tmp_path / "seed"
    _git("clone", str(origin), str(seed))
    (seed / "chart").mkdir()
    (seed / "chart" / "values.json").write_text(json.dumps({"image": {"tag": "old"}, "replicaCount": 2}))
    _git("add", "-A", cwd=seed)
    _git("-c", "user.name=t", "-c", "user.email=t@t", "commit", "-m", "values", cwd=seed)
    _git("push", "origin", "HEAD:main", cwd=seed)
    return origin


def _store(remote, workdir):
    return GitConfigStore(str(remote), str(workdir), "chart/values.json", branch="main")


def test_write_commits_and_pushes_a_new_revision(remote, tmp_path):
    store = _store(remote, tmp_path / "a")

    current = store.read()
    current.document["image"]["tag"] = "v2"
    revision = store.write(current.document, current.revision, "deploy v2")

    assert revision != current.revision
    fresh = _store(remote, tmp_path / "b").read()
    assert fresh.revision == revision
    assert fresh.document == {"image": {"tag": "v2"}, "replicaCount": 2}


def test_stale_revision_is_a_conflict(remote, tmp_path):
    mine = _store(remote, tmp_path / "a")
    theirs = _store(remote, tmp_path / "b")
    stale = mine.read()

    other = theirs.read()
    other.document["replicaCount"] = 5
    theirs.write(other.document, other.revision, "scale web to 5")

    stale.document["image"]["tag"] = "v2"
    with pytest.raises(ConflictError):
        mine.write(stale.document, stale.revision, "deploy v2")

    retry = mine.read()
    assert retry.document["replicaCount"] == 5
    assert retry.document["image"]["tag"] == "old"


def test_missing_values_file_is_fatal(remote, tmp_path):
    store = GitConfigStore(str(remote), str(tmp_path / "a"), "chart/missing.json", branch="main")
    with pytest.raises(FatalError, match="values_file_missing"):
        store.read()
