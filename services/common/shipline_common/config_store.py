"""Versioned configuration stores (chart values) with conditional writes.

Every store exposes the same two calls:

    read()  -> Revisioned(document, revision)
    write(document, expected_revision, message) -> new revision

``write`` raises ConflictError when the store has moved past
``expected_revision``, TransientError when the store cannot be reached.
"""

from __future__ import annotations

import base64, copy, json, os, subprocess, threading
from dataclasses import dataclass

from .errors import CommandFailed, ConflictError, FatalError, TransientError
from .github import API, clone_repo, commit_all, fetch_reset, gh_get, gh_put, head_sha, push_branch
from .utils import read_secret

_PUSH_REJECTED = ("rejected", "non-fast-forward", "fetch first", "stale info")


@dataclass
class Revisioned:
    document: dict
    revision: str


class ConfigStore:
    def read(self) -> Revisioned:
        raise NotImplementedError

    def write(self, document: dict, expected_revision: str, message: str = "") -> str:
        raise NotImplementedError


class MemoryConfigStore(ConfigStore):
    """In-process store; the revision is a counter bumped on every write."""

    def __init__(self, document: dict = None):
        self._lock = threading.Lock()
        self._document = copy.deepcopy(document or {})
        self._revision = 1
        self.history = []

    def read(self) -> Revisioned:
        with self._lock:
            return Revisioned(copy.deepcopy(self._document), str(self._revision))

    def write(self, document: dict, expected_revision: str, message: str = "") -> str:
        with self._lock:
            if str(expected_revision) != str(self._revision):
                raise ConflictError(
                    f"revision_mismatch expected={expected_revision} current={self._revision}"
                )
            self._document = copy.deepcopy(document)
            self._revision += 1
            self.history.append((str(self._revision), message))
            return str(self._revision)


class GitConfigStore(ConfigStore):
    """Values file in a git repository; the revision is the commit sha.

    The conditional write is the push itself: a push that is not a
    fast-forward of the revision we read is rejected by the remote.
    """

    def __init__(self, repo_url: str, workdir: str, values_path: str, branch: str = "main",
                 token_file: str = "", author_name: str = "shipline-bot",
                 author_email: str = "shipline-bot@localhost", timeout: int = 120):
        self.repo_url = repo_url
        self.workdir = workdir
        self.values_path = values_path
        self.branch = branch
        self.token_file = token_file
        self.author_name = author_name
        self.author_email = author_email
        self.timeout = timeout
        self._lock = threading.Lock()

    def _ensure_clone(self):
        if not os.path.isdir(os.path.join(self.workdir, ".git")):
            os.makedirs(os.path.dirname(self.workdir) or ".", exist_ok=True)
            clone_repo(self.repo_url, self.workdir, self.token_file, self.branch)

    def _values_file(self) -> str:
        return os.path.join(self.workdir, self.values_path)

    def read(self) -> Revisioned:
        with self._lock:
            try:
                self._ensure_clone()
                fetch_reset(self.workdir, self.token_file, self.branch)
                rev = head_sha(self.workdir)
            except (CommandFailed, subprocess.TimeoutExpired) as e:
                raise TransientError(f"config_repo_unreachable url={self.repo_url}: {e}") from e
            path = self._values_file()
            if not os.path.exists(path):
                raise FatalError(f"values_file_missing path={self.values_path}")
            with open(path, "r", encoding="utf-8") as f:
                return Revisioned(json.load(f), rev)

    def write(self, document: dict, expected_revision: str, message: str = "") -> str:
        with self._lock:
            try:
                if head_sha(self.workdir) != expected_revision:
                    raise ConflictError(f"revision_mismatch expected={expected_revision}")
                with open(self._values_file(), "w", encoding="utf-8") as f:
                    f.write(json.dumps(document, indent=2) + "\n")
                if not commit_all(self.workdir, message or "shipline: update values",
                                  self.author_name, self.author_email):
                    return expected_revision
                push_branch(self.workdir, self.token_file, self.branch)
                return head_sha(self.workdir)
            except CommandFailed as e:
                if any(marker in e.output for marker in _PUSH_REJECTED):
                    raise ConflictError(f"push_rejected branch={self.branch}") from e
                raise TransientError(f"config_repo_write_failed: {e}") from e
            except subprocess.TimeoutExpired as e:
                raise TransientError(f"config_repo_timeout: {e}") from e


class GitHubContentsStore(ConfigStore):
    """Values file edited through the GitHub contents API.

    The blob sha is the revision; GitHub refuses a PUT whose sha is stale.
    """

    def __init__(self, owner: str, repo: str, path: str, branch: str, token_file: str):
        self.owner = owner
        self.repo = repo
        self.path = path
        self.branch = branch
        self.token_file = token_file

    @property
    def url(self) -> str:
        return f"{API}/repos/{self.owner}/{self.repo}/contents/{self.path}"

    def read(self) -> Revisioned:
        data = gh_get(read_secret(self.token_file), self.url, params={"ref": self.branch})
        raw = base64.b64decode(data.get("content") or "").decode("utf-8")
        return Revisioned(json.loads(raw or "{}"), data["sha"])

    def write(self, document: dict, expected_revision: str, message: str = "") -> str:
        content = base64.b64encode((json.dumps(document, indent=2) + "\n").encode("utf-8")).decode("ascii")
        data = gh_put(read_secret(self.token_file), self.url, {
            "message": message or "shipline: update values",
            "content": content,
            "sha": expected_revision,
            "branch": self.branch,
        })
        return (data.get("content") or {}).get("sha", "")
