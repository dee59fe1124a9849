"""Default deployment pipeline: build -> publish -> propagate, wired from settings."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from shipline_common import settings
from shipline_common.config_store import ConfigStore, GitConfigStore, GitHubContentsStore
from shipline_common.db import RunStore
from shipline_common.errors import DeterministicError
from shipline_common.reconciler import ReconcilerClient
from shipline_common.registry import RegistryClient
from shipline_common.schemas import PipelineConfig
from shipline_common.state import Artifact, ImageRef, StageContext

from .builder import ApplicationUnit, ArtifactBuilder
from .engine import PipelineEngine
from .observer import ReconciliationObserver
from .propagator import TagPropagator
from .publisher import ImagePublisher


@dataclass
class Deployment:
    engine: PipelineEngine
    propagator: TagPropagator
    store: RunStore
    observer: Optional[ReconciliationObserver] = None


def input_of_kind(ctx: StageContext, kind: str) -> Artifact:
    for artifact in ctx.inputs.values():
        if artifact.kind == kind:
            return artifact
    raise DeterministicError(f"missing_input stage={ctx.stage} kind={kind}")


def stage_executors(builder: ArtifactBuilder, publisher: ImagePublisher, propagator: TagPropagator) -> dict:
    def build(ctx: StageContext) -> Artifact:
        return builder.build(ctx.source_ref, run_id=ctx.run_id)

    def publish(ctx: StageContext) -> Artifact:
        image = publisher.publish(input_of_kind(ctx, "build"), ctx.run_id, ctx.source_ref)
        return image.to_artifact()

    def propagate(ctx: StageContext) -> Artifact:
        image = ImageRef.from_artifact(input_of_kind(ctx, "image"))
        return propagator.propagate(image, ctx.run_id).to_artifact()

    return {"build": build, "publish": publish, "propagate": propagate}


def make_config_store() -> ConfigStore:
    if settings.CONFIG_BACKEND == "github":
        owner, _, repo = settings.CONFIG_GITHUB_REPO.partition("/")
        if not owner or not repo:
            raise RuntimeError("config_store_not_configured set SHIPLINE_CONFIG_GITHUB_REPO=owner/name")
        return GitHubContentsStore(owner, repo, settings.CONFIG_VALUES_PATH, settings.CONFIG_BRANCH,
                                   settings.GIT_TOKEN_FILE)
    if not settings.CONFIG_REPO_URL:
        raise RuntimeError("config_store_not_configured set SHIPLINE_CONFIG_REPO_URL")
    return GitConfigStore(
        repo_url=settings.CONFIG_REPO_URL,
        workdir=f"{settings.WORKSPACES_ROOT}/_config",
        values_path=settings.CONFIG_VALUES_PATH,
        branch=settings.CONFIG_BRANCH,
        token_file=settings.GIT_TOKEN_FILE,
        author_name=settings.GIT_AUTHOR_NAME,
        author_email=settings.GIT_AUTHOR_EMAIL,
    )


def make_observer(store: RunStore) -> Optional[ReconciliationObserver]:
    if not settings.RECONCILER_URL:
        return None
    registry = RegistryClient(settings.REGISTRY_URL)
    client = ReconcilerClient(
        settings.RECONCILER_URL,
        settings.RECONCILER_APP,
        repository=registry.image_name(settings.REGISTRY_REPOSITORY),
        token_file=settings.RECONCILER_TOKEN_FILE,
    )
    return ReconciliationObserver(client, store, interval_s=settings.CONVERGENCE_INTERVAL_S)


def build_deployment(launcher=None, config: PipelineConfig = None, config_store: ConfigStore = None) -> Deployment:
    store = RunStore(settings.DB_PATH)
    unit = ApplicationUnit(
        build_cmd=settings.APP_BUILD_CMD,
        test_cmd=settings.APP_TEST_CMD,
        output_dir=settings.APP_OUTPUT_DIR,
        source_dir=settings.APP_SOURCE_DIR,
        repo_url=settings.APP_REPO_URL,
        token_file=settings.GIT_TOKEN_FILE,
        timeout=settings.APP_CMD_TIMEOUT,
    )
    builder = ArtifactBuilder(unit, settings.WORKSPACES_ROOT, settings.ARTIFACT_ROOT)
    registry = RegistryClient(
        settings.REGISTRY_URL,
        username=settings.REGISTRY_USERNAME,
        password_file=settings.REGISTRY_PASSWORD_FILE,
    )
    publisher = ImagePublisher(registry, settings.REGISTRY_REPOSITORY, settings.TAG_PREFIX)
    propagator = TagPropagator(
        config_store or make_config_store(),
        run_store=store,
        field=settings.CONFIG_TAG_FIELD,
        max_attempts=settings.PROPAGATE_ATTEMPTS,
    )
    engine = PipelineEngine(
        config or settings.load_pipeline_config(),
        stage_executors(builder, publisher, propagator),
        store,
        launcher=launcher,
    )
    return Deployment(engine=engine, propagator=propagator, store=store, observer=make_observer(store))


def rq_launcher(queue):
    """Launcher that hands execution to an rq worker."""
    def _launch(run_id: str):
        # job_id dedupes a second enqueue of the same run
        queue.enqueue("shipline_worker.jobs.execute_run", run_id, job_id=f"run-{run_id}")
    return _launch
