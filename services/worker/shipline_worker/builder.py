"""Artifact Builder: compile and test the application unit at a source ref."""

from __future__ import annotations

import hashlib
import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from shipline_common.errors import BuildError, CommandFailed, DETERMINISTIC, TRANSIENT
from shipline_common.github import checkout, clone_repo
from shipline_common.state import Artifact
from shipline_common.utils import append_log, run_cmd

logger = logging.getLogger(__name__)

# Output fragments that point at the network rather than the code.
TRANSIENT_MARKERS = (
    "could not resolve host",
    "temporary failure in name resolution",
    "connection reset by peer",
    "connection refused",
    "read timed out",
    "connect timeout",
    "tls handshake timeout",
    "502 bad gateway",
    "503 service unavailable",
    "504 gateway time-out",
    "econnreset",
    "etimedout",
)


def classify_failure(output: str) -> str:
    low = (output or "").lower()
    if any(m in low for m in TRANSIENT_MARKERS):
        return TRANSIENT
    return DETERMINISTIC


def tree_digest(path: Path) -> str:
    h = hashlib.sha256()
    if path.is_file():
        h.update(path.read_bytes())
        return "sha256:" + h.hexdigest()
    for p in sorted(path.rglob("*")):
        if p.is_file():
            h.update(str(p.relative_to(path)).encode("utf-8"))
            h.update(b"\0")
            h.update(p.read_bytes())
    return "sha256:" + h.hexdigest()


@dataclass
class ApplicationUnit:
    build_cmd: List[str]
    test_cmd: List[str]
    output_dir: str = "."
    source_dir: str = ""
    repo_url: str = ""
    token_file: str = ""
    timeout: int = 900
    env: dict = field(default_factory=dict)


class ArtifactBuilder:
    def __init__(self, unit: ApplicationUnit, workspaces_root: str, artifact_root: str = ""):
        self.unit = unit
        self.workspaces_root = Path(workspaces_root)
        self.artifact_root = artifact_root

    def build(self, source_ref: str, run_id: str = "") -> Artifact:
        workdir = self._prepare(source_ref, run_id)
        self._step("build", self.unit.build_cmd, workdir, run_id)
        self._step("test", self.unit.test_cmd, workdir, run_id)

        out = workdir / self.unit.output_dir
        if not out.exists():
            raise BuildError(f"build_output_missing path={self.unit.output_dir}")
        digest = tree_digest(out)
        logger.info("Built %s at %s (%s)", source_ref, out, digest)
        return Artifact(
            kind="build",
            ref=str(out),
            digest=digest,
            metadata={"source_ref": source_ref, "workdir": str(workdir)},
        )

    def _prepare(self, source_ref: str, run_id: str) -> Path:
        if not self.unit.repo_url:
            src = Path(self.unit.source_dir)
            if not self.unit.source_dir or not src.is_dir():
                raise BuildError(f"source_dir_missing path={self.unit.source_dir}")
            return src

        ws = self.workspaces_root / (run_id or source_ref)
        if ws.exists():
            shutil.rmtree(ws)
        ws.parent.mkdir(parents=True, exist_ok=True)
        try:
            clone_repo(self.unit.repo_url, str(ws), self.unit.token_file)
        except (CommandFailed, subprocess.TimeoutExpired) as e:
            raise BuildError(f"source_clone_failed url={self.unit.repo_url}", kind=TRANSIENT) from e
        try:
            checkout(str(ws), source_ref)
        except CommandFailed as e:
            raise BuildError(f"source_ref_unknown ref={source_ref}") from e
        return ws

    def _step(self, step: str, cmd: List[str], cwd: Path, run_id: str):
        try:
            out = run_cmd(cmd, cwd=str(cwd), env=self.unit.env, timeout=self.unit.timeout)
        except subprocess.TimeoutExpired as e:
            self._log(run_id, step, f"$ {' '.join(cmd)}\ntimeout after {self.unit.timeout}s\n")
            raise BuildError(f"{step}_timeout after={self.unit.timeout}s", kind=TRANSIENT) from e
        except CommandFailed as e:
            self._log(run_id, step, f"$ {' '.join(cmd)}\nrc={e.returncode}\n{e.output}")
            kind = classify_failure(e.output)
            tail = e.output.strip().splitlines()[-1:] or [""]
            raise BuildError(f"{step}_failed rc={e.returncode} {tail[0][:300]}", kind=kind) from e
        self._log(run_id, step, f"$ {' '.join(cmd)}\nrc=0\n{out}")

    def _log(self, run_id: str, step: str, text: str):
        if self.artifact_root and run_id:
            append_log(self.artifact_root, run_id, f"logs/{step}.log", text)
