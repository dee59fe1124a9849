"""Pipeline Engine: runs a stage DAG for one trigger at a time per revision.

The engine is the single writer of run state. ``submit`` records a pending
run and hands its id to a launcher (an rq enqueue in the service, a thread
when used in-process); ``execute`` then drives that run to a terminal state.
Cancellation and duplicate triggers are resolved through the run store, so
several engine instances can share one database.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Dict, Optional

from shipline_common.dag import StageDAG
from shipline_common.db import RunStore
from shipline_common.errors import FATAL, FatalError, InvalidPipeline, InvalidTrigger, StageError, TransientError
from shipline_common.schemas import PipelineConfig, StageSpec, Trigger
from shipline_common.state import (
    Artifact, CANCELLED, FAILED, PENDING, RETRYING, RUNNING, SKIPPED, SUCCEEDED,
    PipelineRun, StageContext, StageResult,
)
from shipline_common.utils import sleep_s, utc_now_iso

logger = logging.getLogger(__name__)

Executor = Callable[[StageContext], Optional[Artifact]]


@dataclass
class _Outcome:
    status: str
    artifact: Optional[Artifact] = None
    error: Optional[str] = None


@dataclass
class _RunState:
    run_id: str
    source_ref: str
    trigger: dict
    stages: Dict[str, str]
    artifacts: Dict[str, Artifact] = field(default_factory=dict)
    halted: Optional[str] = None
    error: Optional[str] = None
    lock: threading.Lock = field(default_factory=threading.Lock)


class PipelineEngine:
    def __init__(self, config: PipelineConfig, executors: Dict[str, Executor], store: RunStore,
                 launcher: Callable[[str], None] = None, sleep=sleep_s):
        self.config = config
        self.dag = StageDAG.from_config(config)
        missing = sorted(n for n in self.dag.names if n not in executors)
        if missing:
            raise InvalidPipeline(f"missing_executor stages={missing}")
        self.executors = dict(executors)
        self.store = store
        self.launcher = launcher or self._launch_thread
        self._sleep = sleep

    def submit(self, trigger: Trigger) -> PipelineRun:
        source_ref = (trigger.source_ref or "").strip()
        if not source_ref:
            raise InvalidTrigger("source_ref_required")
        run = PipelineRun(
            id=str(uuid.uuid4()),
            source_ref=source_ref,
            trigger=trigger.model_dump(mode="json"),
            stages={name: PENDING for name in self.dag.order()},
        )
        run, created = self.store.create_run_for_trigger(run, rerun=trigger.rerun)
        if not created:
            logger.info("Trigger for %s matches finished run %s (%s)", source_ref, run.id, run.status)
            return run
        logger.info("Accepted run %s for %s", run.id, source_ref)
        try:
            self.launcher(run.id)
        except Exception:
            # a run nobody will execute must not hold the revision
            logger.exception("Launch of run %s failed; discarding it", run.id)
            self.store.discard_pending(run.id)
            raise
        return run

    def status(self, run_id: str) -> PipelineRun:
        return self.store.get_run(run_id)

    def cancel(self, run_id: str) -> PipelineRun:
        run = self.store.request_cancel(run_id)
        if not run.terminal:
            logger.info("Cancel requested for run %s", run_id)
        elif run.status == CANCELLED and not run.results:
            logger.info("Run %s cancelled before it started", run_id)
        return run

    def wait(self, run_id: str, timeout_s: float = 3600, poll_s: float = 0.5) -> PipelineRun:
        deadline = time.monotonic() + timeout_s
        while True:
            run = self.store.get_run(run_id)
            if run.terminal or time.monotonic() >= deadline:
                return run
            self._sleep(poll_s)

    def _launch_thread(self, run_id: str):
        t = threading.Thread(target=self.execute, args=(run_id,), name=f"run-{run_id[:8]}", daemon=True)
        t.start()

    def execute(self, run_id: str) -> PipelineRun:
        run = self.store.get_run(run_id)
        if run.terminal:
            return run
        if not self.store.start_run(run_id):
            logger.info("Run %s is already executing", run_id)
            return self.store.get_run(run_id)

        state = _RunState(
            run_id=run.id,
            source_ref=run.source_ref,
            trigger=run.trigger,
            stages={name: run.stages.get(name, PENDING) for name in self.dag.order()},
        )
        logger.info("Run %s started for %s", run_id, run.source_ref)
        try:
            self._drive(state)
        except Exception as e:
            logger.exception("Run %s crashed", run_id)
            with state.lock:
                state.halted = state.halted or FAILED
                state.error = state.error or f"engine_error: {e}"
            self._finalize(state)
            raise
        return self._finalize(state)

    def _drive(self, state: _RunState):
        in_flight = {}
        with ThreadPoolExecutor(max_workers=self.config.max_concurrency,
                                thread_name_prefix=f"run-{state.run_id[:8]}") as pool:
            while True:
                if state.halted is None and self.store.cancel_requested(state.run_id):
                    with state.lock:
                        state.halted = CANCELLED
                    logger.info("Run %s halting for cancellation", state.run_id)
                self.advance(state, pool, in_flight)
                if not in_flight:
                    return
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    name = in_flight.pop(fut)
                    self._complete(state, name, fut.result())

    def advance(self, state: _RunState, pool: ThreadPoolExecutor, in_flight: dict) -> list:
        """Dispatch every stage whose dependencies have all succeeded."""
        if state.halted == CANCELLED or (state.halted == FAILED and self.config.fail_fast):
            return []
        with state.lock:
            succeeded = {n for n, s in state.stages.items() if s == SUCCEEDED}
            started = {n for n, s in state.stages.items() if s != PENDING}
        dispatched = []
        for name in self.dag.ready(succeeded, started):
            if len(in_flight) >= self.config.max_concurrency:
                break
            with state.lock:
                state.stages[name] = RUNNING
                inputs = MappingProxyType({
                    dep: state.artifacts[dep] for dep in self.dag.needs(name) if dep in state.artifacts
                })
                self.store.update_run(state.run_id, stages=dict(state.stages))
            in_flight[pool.submit(self._run_stage, state, self.config.stage(name), inputs)] = name
            dispatched.append(name)
            logger.info("Run %s dispatched stage %s", state.run_id, name)
        return dispatched

    def _run_stage(self, state: _RunState, spec: StageSpec, inputs) -> _Outcome:
        attempt = 0
        while True:
            attempt += 1
            ctx = StageContext(
                run_id=state.run_id,
                source_ref=state.source_ref,
                stage=spec.name,
                attempt=attempt,
                idempotency_key=f"{state.run_id}:{spec.name}",
                inputs=inputs,
                trigger=state.trigger,
            )
            started = utc_now_iso()
            try:
                artifact = self._attempt(spec, ctx)
            except StageError as e:
                err = e
            except Exception as e:
                logger.exception("Stage %s of run %s raised", spec.name, state.run_id)
                err = FatalError(f"unexpected_error {type(e).__name__}: {e}")
            else:
                self._record(state, StageResult(spec.name, attempt, SUCCEEDED, artifact=artifact,
                                                started_at=started, finished_at=utc_now_iso()))
                return _Outcome(SUCCEEDED, artifact=artifact)

            err.stage = err.stage or spec.name
            if err.retryable and attempt < spec.retry.max_attempts:
                if self.store.cancel_requested(state.run_id):
                    self._record(state, StageResult(spec.name, attempt, CANCELLED, error=str(err), error_kind=err.kind,
                                                    started_at=started, finished_at=utc_now_iso()))
                    logger.info("Stage %s of run %s not retried: cancel requested", spec.name, state.run_id)
                    return _Outcome(CANCELLED)
                self._record(state, StageResult(spec.name, attempt, RETRYING, error=str(err), error_kind=err.kind,
                                                started_at=started, finished_at=utc_now_iso()))
                delay = spec.retry.delay(attempt)
                logger.warning("Stage %s attempt %d/%d failed (%s); retrying in %.1fs",
                               spec.name, attempt, spec.retry.max_attempts, err, delay)
                self._sleep(delay)
                continue

            if err.retryable:
                detail = f"retries_exhausted stage={spec.name} attempts={attempt} last_error={err}"
                kind = FATAL
            else:
                detail = f"{err.kind}_error stage={spec.name} attempt={attempt}: {err}"
                kind = err.kind
            self._record(state, StageResult(spec.name, attempt, FAILED, error=detail, error_kind=kind,
                                            started_at=started, finished_at=utc_now_iso()))
            logger.error("Stage %s of run %s failed: %s", spec.name, state.run_id, detail)
            return _Outcome(FAILED, error=detail)

    def _attempt(self, spec: StageSpec, ctx: StageContext) -> Optional[Artifact]:
        fn = self.executors[spec.name]
        if not spec.timeout_s:
            return fn(ctx)
        # Past the timeout the attempt is waited out, never cut short; the next
        # attempt starts only after it ends. A late success is kept.
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{spec.name}-attempt") as runner:
            fut = runner.submit(fn, ctx)
            try:
                return fut.result(timeout=spec.timeout_s)
            except FutureTimeout:
                logger.warning("Stage %s attempt %d of run %s passed its %ss timeout; waiting for it to end",
                               spec.name, ctx.attempt, ctx.run_id, spec.timeout_s)
            exc = fut.exception()
        if exc is None:
            logger.warning("Stage %s attempt %d of run %s finished late; keeping its result",
                           spec.name, ctx.attempt, ctx.run_id)
            return fut.result()
        raise TransientError(f"stage_timeout stage={spec.name} after={spec.timeout_s}s: {exc}",
                             stage=spec.name) from exc

    def _record(self, state: _RunState, result: StageResult):
        with state.lock:
            self.store.append_result(state.run_id, result)

    def _complete(self, state: _RunState, name: str, outcome: _Outcome):
        with state.lock:
            state.stages[name] = outcome.status
            if outcome.status == SUCCEEDED:
                if outcome.artifact is not None:
                    state.artifacts[name] = outcome.artifact
            elif outcome.status == FAILED:
                state.error = state.error or outcome.error
                state.halted = state.halted or FAILED
                for downstream in self.dag.descendants(name):
                    if state.stages[downstream] == PENDING:
                        state.stages[downstream] = SKIPPED
            elif outcome.status == CANCELLED:
                state.halted = state.halted or CANCELLED
            self.store.update_run(state.run_id, stages=dict(state.stages))
        logger.info("Run %s stage %s -> %s", state.run_id, name, outcome.status)

    def _finalize(self, state: _RunState) -> PipelineRun:
        with state.lock:
            leftover = CANCELLED if state.halted == CANCELLED else SKIPPED
            for name, status in state.stages.items():
                if status in (PENDING, RUNNING):
                    state.stages[name] = leftover
            final = state.halted or SUCCEEDED
            self.store.update_run(state.run_id, status=final, stages=dict(state.stages),
                                  error=state.error, finished_at=utc_now_iso())
        logger.info("Run %s finished: %s", state.run_id, final)
        return self.store.get_run(state.run_id)
