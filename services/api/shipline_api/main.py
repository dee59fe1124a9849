import logging

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException
from redis import Redis
from rq import Queue

from shipline_common.auth import load_api_key, api_key_ok
from shipline_common.errors import InvalidTrigger, PropagationError, RunAlreadyActive
from shipline_common.schemas import Trigger
from shipline_common.settings import API_KEY_FILE, QUEUE_NAME, REDIS_URL
from shipline_worker.pipeline import Deployment, build_deployment, rq_launcher

logger = logging.getLogger(__name__)


def _run_view(run) -> dict:
    body = run.to_dict()
    failure = run.failure
    body["failure"] = failure.to_dict() if failure else None
    return body


def _record_view(record) -> dict:
    return {
        "id": record.id,
        "run_id": record.run_id,
        "tag": record.tag,
        "image": record.image,
        "config_revision": record.config_revision,
        "recorded_at": record.recorded_at,
        "active": record.active,
        "converged_at": record.converged_at,
    }


def create_app(deployment: Deployment = None, api_key: str = None) -> FastAPI:
    if deployment is None:
        redis = Redis.from_url(REDIS_URL)
        q = Queue(QUEUE_NAME, connection=redis, default_timeout=7200)
        deployment = build_deployment(launcher=rq_launcher(q))
    expected_key = api_key if api_key is not None else load_api_key(API_KEY_FILE)
    engine = deployment.engine

    def require_key(x_shipline_key: str | None = Header(default=None)):
        if not api_key_ok(x_shipline_key, expected_key):
            raise HTTPException(status_code=401, detail="unauthorized")

    app = FastAPI(title="Shipline", version="0.1.0")
    router = APIRouter(prefix="/v1", dependencies=[Depends(require_key)])

    @app.get("/health")
    def health():
        return {"ok": True}

    @router.post("/runs", status_code=202)
    def submit(trigger: Trigger):
        try:
            run = engine.submit(trigger)
        except InvalidTrigger as e:
            raise HTTPException(status_code=422, detail=str(e))
        except RunAlreadyActive as e:
            raise HTTPException(status_code=409, detail={"error": "run_already_active", "run_id": e.run_id})
        except Exception:
            # the engine already discarded the run
            raise HTTPException(status_code=503, detail="launch_failed")
        return _run_view(run)

    @router.get("/runs")
    def list_runs(source_ref: str = "", limit: int = 50):
        runs = deployment.store.list_runs(source_ref or None, limit=min(max(limit, 1), 500))
        return {"runs": [
            {"id": r.id, "source_ref": r.source_ref, "status": r.status, "created_at": r.created_at,
             "finished_at": r.finished_at}
            for r in runs
        ]}

    @router.get("/runs/{run_id}")
    def status(run_id: str):
        try:
            return _run_view(engine.status(run_id))
        except KeyError:
            raise HTTPException(status_code=404, detail="not found")

    @router.post("/runs/{run_id}/cancel")
    def cancel(run_id: str):
        try:
            run = engine.cancel(run_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="not found")
        return {"id": run.id, "status": run.status, "cancel_requested": run.cancel_requested}

    @router.post("/runs/{run_id}/rollback")
    def rollback(run_id: str):
        try:
            record = deployment.propagator.rollback(run_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="not found")
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except PropagationError as e:
            logger.error("Rollback to run %s failed: %s", run_id, e)
            raise HTTPException(status_code=502, detail=str(e))
        return _record_view(record)

    @router.get("/tags/active")
    def active_tag():
        record = deployment.store.active_tag_record()
        if record is None:
            raise HTTPException(status_code=404, detail="no active tag")
        return _record_view(record)

    app.include_router(router)
    return app
