import os, shutil, tempfile
from contextlib import contextmanager

import requests

from .errors import ConflictError, FatalError, TransientError
from .utils import run_cmd, read_secret

API = "https://api.github.com"


def gh_headers(token: str) -> dict:
    return {
        "Authorization": f"Bearer {token}",
        "Accept": "application/vnd.github+json",
    }


def _check(r, method: str, url: str):
    if r.status_code in (401, 403):
        raise FatalError(f"github_auth_failed {method} {url} -> {r.status_code}")
    if r.status_code == 409 or (r.status_code == 422 and "sha" in r.text):
        raise ConflictError(f"github_conflict {method} {url} -> {r.status_code}")
    if r.status_code >= 500:
        raise TransientError(f"github_unavailable {method} {url} -> {r.status_code}")
    if r.status_code >= 400:
        raise FatalError(f"github_error {method} {url} -> {r.status_code} {r.text[:500]}")


def gh_request(token: str, method: str, url: str, payload: dict = None, params: dict = None):
    try:
        r = requests.request(method, url, headers=gh_headers(token), json=payload, params=params, timeout=30)
    except (requests.ConnectionError, requests.Timeout) as e:
        raise TransientError(f"github_unreachable {method} {url}: {e}") from e
    _check(r, method, url)
    return r.json()


def gh_get(token: str, url: str, params: dict = None):
    return gh_request(token, "GET", url, params=params)


def gh_put(token: str, url: str, payload: dict):
    return gh_request(token, "PUT", url, payload=payload)


@contextmanager
def _askpass(token_file: str):
    """Yield git env that answers credential prompts from ``token_file``.

    The script lives outside the working copy so ``git add -A`` never sees it.
    """
    if not token_file or not os.path.exists(token_file):
        yield {}
        return
    script_dir = tempfile.mkdtemp(prefix="shipline-askpass-")
    # Git calls askpass with prompt text in $1.
    # We return username for Username prompts, token for Password prompts.
    path = f"{script_dir}/askpass.sh"
    with open(path, "w", encoding="utf-8") as f:
        f.write("#!/bin/sh\n")
        f.write("case \"$1\" in\n")
        f.write("  *Username*) echo \"x-access-token\" ;;\n")
        f.write(f"  *) cat \"{token_file}\" ;;\n")
        f.write("esac\n")
    os.chmod(path, 0o700)
    try:
        yield {"GIT_ASKPASS": path, "GIT_TERMINAL_PROMPT": "0"}
    finally:
        shutil.rmtree(script_dir, ignore_errors=True)


def _redactions(token_file: str) -> list:
    if token_file and os.path.exists(token_file):
        return [read_secret(token_file)]
    return []


def clone_repo(url: str, dst: str, token_file: str = "", branch: str = ""):
    # No token in remote URL, avoids leaking token into git config.
    args = ["git", "clone"]
    if branch:
        args += ["--branch", branch]
    with _askpass(token_file) as env:
        run_cmd(args + [url, dst], env=env, redact=_redactions(token_file))


def checkout(repo_dir: str, ref: str):
    run_cmd(["git", "checkout", "--detach", ref], cwd=repo_dir)


def fetch_reset(repo_dir: str, token_file: str, branch: str):
    """Move the working copy to the remote tip of ``branch``."""
    with _askpass(token_file) as env:
        run_cmd(["git", "fetch", "origin", branch], cwd=repo_dir, env=env, redact=_redactions(token_file))
    run_cmd(["git", "checkout", "-B", branch, f"origin/{branch}"], cwd=repo_dir)
    run_cmd(["git", "reset", "--hard", f"origin/{branch}"], cwd=repo_dir)


def head_sha(repo_dir: str) -> str:
    return run_cmd(["git", "rev-parse", "HEAD"], cwd=repo_dir).strip()


def commit_all(repo_dir: str, message: str, author_name: str, author_email: str):
    run_cmd(["git", "config", "user.name", author_name], cwd=repo_dir)
    run_cmd(["git", "config", "user.email", author_email], cwd=repo_dir)
    run_cmd(["git", "add", "-A"], cwd=repo_dir)
    st = run_cmd(["git", "status", "--porcelain"], cwd=repo_dir)
    if not st.strip():
        return False
    run_cmd(["git", "commit", "-m", message], cwd=repo_dir)
    return True


def push_branch(repo_dir: str, token_file: str, branch: str):
    with _askpass(token_file) as env:
        run_cmd(["git", "push", "origin", f"HEAD:{branch}"], cwd=repo_dir, env=env, redact=_redactions(token_file))
