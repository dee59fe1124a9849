from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class RetryPolicy(BaseModel):
    max_attempts: int = Field(default=1, ge=1, le=20)
    backoff_s: float = Field(default=1.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1.0, description="1.0 gives fixed backoff")
    max_backoff_s: float = Field(default=60.0, ge=0)

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        d = self.backoff_s * (self.backoff_factor ** max(attempt - 1, 0))
        return min(d, self.max_backoff_s)


class StageSpec(BaseModel):
    name: str
    needs: List[str] = Field(default_factory=list)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    timeout_s: Optional[float] = Field(default=None, gt=0)

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("stage name must not be blank")
        return v.strip()


class PipelineConfig(BaseModel):
    stages: List[StageSpec] = Field(default_factory=list)
    max_concurrency: int = Field(default=4, ge=1)
    fail_fast: bool = True

    def stage(self, name: str) -> StageSpec:
        for s in self.stages:
            if s.name == name:
                return s
        raise KeyError(name)

    def graph(self) -> dict:
        return {s.name: set(s.needs) for s in self.stages}


class Trigger(BaseModel):
    source_ref: str = Field(..., description="Commit sha (or ref) that changed.")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    repository: str = ""
    branch: str = ""
    actor: str = ""
    rerun: bool = Field(default=False, description="Start a new run even if this revision already finished.")
