"""Reconciliation Observer: advisory check that the cluster applied a tag."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional

from shipline_common.errors import TransientError
from shipline_common.state import TagRecord
from shipline_common.utils import sleep_s

logger = logging.getLogger(__name__)

CONVERGED = "converged"
TIMED_OUT = "timed_out"


@dataclass
class ConvergenceResult:
    status: str
    tag: str
    observed_tag: Optional[str]
    waited_s: float


class ReconciliationObserver:
    def __init__(self, reconciler, run_store=None, interval_s: float = 10.0,
                 clock=time.monotonic, sleep=sleep_s):
        self.reconciler = reconciler
        self.run_store = run_store
        self.interval_s = interval_s
        self._clock = clock
        self._sleep = sleep

    def await_convergence(self, record: TagRecord, timeout_s: float) -> ConvergenceResult:
        start = self._clock()
        observed = None
        while True:
            try:
                observed = self.reconciler.applied_tag()
            except TransientError as e:
                logger.warning("Reconciler poll failed: %s", e)
            waited = self._clock() - start
            if observed == record.tag:
                if self.run_store is not None and record.id is not None:
                    self.run_store.mark_converged(record.id)
                logger.info("Cluster converged on %s after %.1fs", record.tag, waited)
                return ConvergenceResult(CONVERGED, record.tag, observed, waited)
            if waited >= timeout_s:
                logger.warning("Cluster still on %s after %.1fs (want %s)", observed, waited, record.tag)
                return ConvergenceResult(TIMED_OUT, record.tag, observed, waited)
            self._sleep(min(self.interval_s, timeout_s - waited))
