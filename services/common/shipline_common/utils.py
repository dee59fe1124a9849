import os, re, subprocess, json, time
from datetime import datetime, timezone
from pathlib import Path

from .errors import CommandFailed


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def read_secret(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read().strip()


def read_secret_optional(path: str) -> str:
    if not path or not os.path.exists(path):
        return ""
    return read_secret(path)


def sanitize_text(text: str) -> str:
    if not text:
        return text
    s = text
    s = re.sub(r"gh[pousr]_[A-Za-z0-9_]+", "[REDACTED_GITHUB_TOKEN]", s)
    s = re.sub(r"x-access-token:[^@\s]+@", "x-access-token:[REDACTED]@", s)
    s = re.sub(r"(Authorization:\s*Bearer\s+)([^\s]+)", r"\1[REDACTED]", s, flags=re.I)
    return s


def run_cmd(args, cwd=None, env=None, timeout=900, redact=None) -> str:
    """
    Run command safely (no shell), capture output.
    redact: list[str] to redact from output.
    Raises CommandFailed on non-zero exit; subprocess.TimeoutExpired propagates.
    """
    env2 = os.environ.copy()
    if env:
        env2.update(env)
    env2["GIT_TERMINAL_PROMPT"] = "0"
    p = subprocess.run(
        args,
        cwd=cwd,
        env=env2,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        timeout=timeout,
        text=True,
        check=False,
    )
    out = p.stdout or ""
    if redact:
        for r in redact:
            if r:
                out = out.replace(r, "***REDACTED***")
    if p.returncode != 0:
        raise CommandFailed(args, p.returncode, sanitize_text(out))
    return out


def append_log(root: str, run_id: str, rel: str, text: str):
    p = Path(root) / run_id / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("a", encoding="utf-8") as f:
        f.write(sanitize_text(text))
        if not text.endswith("\n"):
            f.write("\n")


def write_artifact(root: str, run_id: str, rel: str, text: str):
    p = Path(root) / run_id / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(sanitize_text(text), encoding="utf-8")


def sleep_s(seconds: float):
    time.sleep(seconds)


def jdump(obj) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True)
