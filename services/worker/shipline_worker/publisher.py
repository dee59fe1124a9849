"""Image Publisher: package a build artifact as an image under a per-run tag."""

from __future__ import annotations

import logging
import re

from shipline_common.errors import FATAL, PublishError, StageError
from shipline_common.registry import RegistryClient
from shipline_common.state import Artifact, ImageRef

logger = logging.getLogger(__name__)

RUN_LABEL = "org.shipline.run-id"
REVISION_LABEL = "org.opencontainers.image.revision"

_TAG_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


def image_tag(source_ref: str, run_id: str, prefix: str = "") -> str:
    """Tag unique to one run: ``<prefix><ref[:12]>-<run[:8]>``."""
    ref = _TAG_UNSAFE.sub("-", source_ref.strip())[:12]
    return f"{prefix}{ref}-{run_id[:8]}"[:128]


class ImagePublisher:
    def __init__(self, registry: RegistryClient, repository: str, tag_prefix: str = ""):
        self.registry = registry
        self.repository = repository
        self.tag_prefix = tag_prefix

    def publish(self, artifact: Artifact, run_id: str, source_ref: str) -> ImageRef:
        tag = image_tag(source_ref, run_id, self.tag_prefix)
        name = self.registry.image_name(self.repository)
        try:
            existing = self.registry.manifest(self.repository, tag)
            if existing is not None:
                return self._reuse(existing, name, tag, run_id)

            image = f"{name}:{tag}"
            self.registry.build(artifact.ref, image, labels={
                RUN_LABEL: run_id,
                REVISION_LABEL: source_ref,
            })
            digest = self.registry.push(image)
        except PublishError:
            raise
        except StageError as e:
            raise PublishError(e.reason, kind=e.kind) from e

        logger.info("Pushed %s:%s (%s) for run %s", name, tag, digest, run_id)
        return ImageRef(repository=name, tag=tag, digest=digest)

    def _reuse(self, existing: dict, name: str, tag: str, run_id: str) -> ImageRef:
        # Tags are immutable. One already present is only acceptable when an
        # earlier attempt of this same run pushed it.
        labels = self.registry.labels(self.repository, existing["manifest"])
        if labels.get(RUN_LABEL) != run_id:
            raise PublishError(
                f"tag_collision tag={tag} owner={labels.get(RUN_LABEL, 'unknown')} run_id={run_id}",
                kind=FATAL,
            )
        logger.info("Reusing %s:%s already pushed by run %s", name, tag, run_id)
        return ImageRef(repository=name, tag=tag, digest=existing["digest"])
