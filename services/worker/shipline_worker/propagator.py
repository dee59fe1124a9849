"""Tag Propagator: record a new image tag in the chart values.

Read-modify-write against a versioned ConfigStore. Only the tag field is
rewritten, and each write is conditional on the revision that was read, so
concurrent edits to other fields are never lost.
"""

from __future__ import annotations

import copy
import logging

from shipline_common.config_store import ConfigStore
from shipline_common.errors import (
    ConflictError, DETERMINISTIC, FATAL, PropagationError, StageError, TransientError,
)
from shipline_common.state import ImageRef, SUCCEEDED, TagRecord
from shipline_common.utils import sleep_s, utc_now_iso

logger = logging.getLogger(__name__)


def get_field(document: dict, path: str):
    node = document
    for key in path.split("."):
        if not isinstance(node, dict) or key not in node:
            return None
        node = node[key]
    return node


def set_field(document: dict, path: str, value):
    keys = path.split(".")
    node = document
    for key in keys[:-1]:
        child = node.setdefault(key, {})
        if not isinstance(child, dict):
            raise PropagationError(f"tag_field_not_mapping path={path} at={key}", kind=DETERMINISTIC)
        node = child
    node[keys[-1]] = value


class TagPropagator:
    def __init__(self, store: ConfigStore, run_store=None, field: str = "image.tag",
                 max_attempts: int = 5, backoff_s: float = 0.5, sleep=sleep_s):
        self.store = store
        self.run_store = run_store
        self.field = field
        self.max_attempts = max_attempts
        self.backoff_s = backoff_s
        self._sleep = sleep

    def propagate(self, image: ImageRef, run_id: str) -> TagRecord:
        if self.run_store is not None:
            run = self.run_store.get_run(run_id)
            if run.terminal and run.status != SUCCEEDED:
                raise PropagationError(f"run_terminal run_id={run_id} status={run.status}", kind=FATAL)
        revision = self._write_tag(image.tag, f"shipline: deploy {image.tag} (run {run_id})")
        record = TagRecord(
            run_id=run_id,
            tag=image.tag,
            image=image.ref,
            config_revision=revision,
            recorded_at=utc_now_iso(),
        )
        if self.run_store is not None:
            record = self.run_store.activate_tag_record(record)
        logger.info("Propagated %s=%s at revision %s (run %s)", self.field, image.tag, revision, run_id)
        return record

    def rollback(self, run_id: str) -> TagRecord:
        """Point the values back at the image an earlier succeeded run published."""
        if self.run_store is None:
            raise RuntimeError("rollback_requires_run_store")
        run = self.run_store.get_run(run_id)
        if run.status != SUCCEEDED:
            raise ValueError(f"rollback_target_not_succeeded run_id={run_id} status={run.status}")
        records = self.run_store.tag_records(run_id)
        if not records:
            raise ValueError(f"rollback_target_has_no_tag run_id={run_id}")
        last = records[-1]
        repository, _, digest = last.image.partition("@")
        return self.propagate(ImageRef(repository=repository, tag=last.tag, digest=digest), run_id)

    def _write_tag(self, tag: str, message: str) -> str:
        last = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                current = self.store.read()
                if get_field(current.document, self.field) == tag:
                    return current.revision
                document = copy.deepcopy(current.document)
                set_field(document, self.field, tag)
                return self.store.write(document, current.revision, message)
            except (ConflictError, TransientError) as e:
                last = e
                logger.warning("Propagation attempt %d/%d: %s", attempt, self.max_attempts, e)
                if attempt < self.max_attempts:
                    self._sleep(self.backoff_s * attempt)
            except PropagationError:
                raise
            except StageError as e:
                raise PropagationError(e.reason, kind=e.kind) from e
        raise PropagationError(
            f"propagation_retries_exhausted attempts={self.max_attempts} last_error={last}",
            kind=FATAL,
        )
