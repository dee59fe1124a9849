"""Error taxonomy shared by the engine and the stage executors.

Every stage failure is a ``StageError`` carrying a ``kind``. The engine only
looks at the kind to decide whether an attempt may be retried:

- transient     network trouble, timeouts; retried per the stage policy
- conflict      optimistic-concurrency mismatch; retried with a fresh read
- deterministic compile/test/config failure; never retried
- fatal         auth failure, tag collision, exhausted retries; ends the run
"""

TRANSIENT = "transient"
CONFLICT = "conflict"
DETERMINISTIC = "deterministic"
FATAL = "fatal"

RETRYABLE_KINDS = frozenset({TRANSIENT, CONFLICT})


class StageError(RuntimeError):
    kind = FATAL

    def __init__(self, reason: str, kind: str | None = None, stage: str | None = None):
        super().__init__(reason)
        self.reason = reason
        if kind is not None:
            self.kind = kind
        self.stage = stage

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def __str__(self) -> str:
        return self.reason


class TransientError(StageError):
    kind = TRANSIENT


class ConflictError(StageError):
    kind = CONFLICT


class DeterministicError(StageError):
    kind = DETERMINISTIC


class FatalError(StageError):
    kind = FATAL


class BuildError(StageError):
    kind = DETERMINISTIC


class PublishError(StageError):
    kind = FATAL


class PropagationError(StageError):
    kind = FATAL


class CommandFailed(RuntimeError):
    def __init__(self, args, returncode: int, output: str):
        super().__init__(f"cmd_failed rc={returncode} cmd={args}\n{output}")
        self.cmd = list(args)
        self.returncode = returncode
        self.output = output


class InvalidPipeline(ValueError):
    pass


class InvalidTrigger(ValueError):
    pass


class RunAlreadyActive(RuntimeError):
    def __init__(self, run_id: str, source_ref: str):
        super().__init__(f"run_already_active run_id={run_id} source_ref={source_ref}")
        self.run_id = run_id
        self.source_ref = source_ref
