from __future__ import annotations

from dataclasses import asdict, dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

# run statuses
PENDING = "pending"
RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"
CANCELLED = "cancelled"

ACTIVE_RUN_STATUSES = frozenset({PENDING, RUNNING})
TERMINAL_RUN_STATUSES = frozenset({SUCCEEDED, FAILED, CANCELLED})

# stage result statuses (one per attempt)
RETRYING = "retrying"

# stage summary statuses
SKIPPED = "skipped"


@dataclass(frozen=True)
class Artifact:
    kind: str
    ref: str
    digest: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict | None) -> Optional["Artifact"]:
        if not data:
            return None
        return cls(
            kind=data["kind"],
            ref=data["ref"],
            digest=data.get("digest"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class ImageRef:
    repository: str
    tag: str
    digest: str

    @property
    def ref(self) -> str:
        return f"{self.repository}@{self.digest}"

    def to_artifact(self) -> Artifact:
        return Artifact(kind="image", ref=self.ref, digest=self.digest,
                        metadata={"repository": self.repository, "tag": self.tag})

    @classmethod
    def from_artifact(cls, artifact: Artifact) -> "ImageRef":
        if artifact.kind != "image":
            raise ValueError(f"not_an_image_artifact kind={artifact.kind}")
        return cls(
            repository=artifact.metadata["repository"],
            tag=artifact.metadata["tag"],
            digest=artifact.digest or "",
        )


@dataclass
class TagRecord:
    run_id: str
    tag: str
    image: str
    config_revision: str
    recorded_at: str
    active: bool = True
    converged_at: Optional[str] = None
    id: Optional[int] = None

    def to_artifact(self) -> Artifact:
        return Artifact(kind="tag_record", ref=self.tag, digest=self.config_revision,
                        metadata={"run_id": self.run_id, "image": self.image})


@dataclass
class StageResult:
    stage: str
    attempt: int
    status: str
    artifact: Optional[Artifact] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    started_at: str = ""
    finished_at: str = ""
    seq: Optional[int] = None

    def to_dict(self) -> dict:
        d = asdict(self)
        d["artifact"] = self.artifact.to_dict() if self.artifact else None
        return d


@dataclass
class StageContext:
    """What an executor sees for one attempt of one stage."""
    run_id: str
    source_ref: str
    stage: str
    attempt: int
    idempotency_key: str
    inputs: Mapping[str, Artifact] = field(default_factory=lambda: MappingProxyType({}))
    trigger: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PipelineRun:
    id: str
    source_ref: str
    trigger: Dict[str, Any] = field(default_factory=dict)
    status: str = PENDING
    stages: Dict[str, str] = field(default_factory=dict)
    results: List[StageResult] = field(default_factory=list)
    error: Optional[str] = None
    cancel_requested: bool = False
    created_at: str = ""
    updated_at: str = ""
    finished_at: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    @property
    def failure(self) -> Optional[StageResult]:
        for r in self.results:
            if r.status == FAILED:
                return r
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_ref": self.source_ref,
            "trigger": self.trigger,
            "status": self.status,
            "stages": dict(self.stages),
            "results": [r.to_dict() for r in self.results],
            "error": self.error,
            "cancel_requested": self.cancel_requested,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "finished_at": self.finished_at,
        }
