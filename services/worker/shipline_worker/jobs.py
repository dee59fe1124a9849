import logging
from dataclasses import asdict

from shipline_common.errors import RunAlreadyActive, StageError
from shipline_common.schemas import Trigger
from shipline_common.settings import ARTIFACT_ROOT, CONVERGENCE_TIMEOUT_S
from shipline_common.state import SUCCEEDED
from shipline_common.utils import jdump, write_artifact

from .pipeline import Deployment, build_deployment

logger = logging.getLogger(__name__)


def _no_launch(run_id: str):
    # the calling job executes the run itself
    return None


def summarize(run) -> dict:
    failure = run.failure
    return {
        "id": run.id,
        "source_ref": run.source_ref,
        "status": run.status,
        "stages": run.stages,
        "error": run.error,
        "failed_stage": failure.stage if failure else None,
        "failed_attempt": failure.attempt if failure else None,
    }


def observe(deployment: Deployment, run):
    """Advisory convergence check; never changes the run."""
    if deployment.observer is None or run.status != SUCCEEDED:
        return None
    records = deployment.store.tag_records(run.id)
    if not records:
        return None
    try:
        result = deployment.observer.await_convergence(records[-1], CONVERGENCE_TIMEOUT_S)
    except StageError as e:
        logger.warning("Convergence check for run %s gave up: %s", run.id, e)
        return None
    write_artifact(ARTIFACT_ROOT, run.id, "CONVERGENCE.json", jdump(asdict(result)))
    return result


def execute_run(run_id: str, deployment: Deployment = None) -> dict:
    deployment = deployment or build_deployment(launcher=_no_launch)
    try:
        run = deployment.engine.execute(run_id)
    finally:
        final = deployment.store.get_run(run_id)
        write_artifact(ARTIFACT_ROOT, run_id, "SUMMARY.json", jdump(summarize(final)))
    observe(deployment, run)
    return summarize(run)


def handle_trigger(payload: dict, deployment: Deployment = None) -> dict:
    """Entry point for triggers delivered through the queue (at-least-once)."""
    deployment = deployment or build_deployment(launcher=_no_launch)
    trigger = Trigger.model_validate(payload)
    try:
        run = deployment.engine.submit(trigger)
    except RunAlreadyActive as e:
        logger.info("Dropping duplicate trigger for %s; run %s is active", e.source_ref, e.run_id)
        return {"id": e.run_id, "source_ref": e.source_ref, "status": "already_active"}
    if run.terminal:
        return summarize(run)
    return execute_run(run.id, deployment)
