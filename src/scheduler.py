"""
Execution scheduler: runs detectors over (contract, detector) work items.

- Contracts that failed linearization are skipped; the pipeline reports them.
- Items whose applicability predicate is false are skipped and counted.
- Every invocation is isolated: an exception becomes a DetectorExecutionError
  and the scan continues.
- With workers > 1 items run on a thread pool with a bounded number in flight.
  Each item writes only its own buffer; buffers are merged after the join.
- A global deadline stops submission of new items; in-flight items run to
  completion bounded by the per-detector timeout. Contracts with unscheduled
  items yield a PartialScanError.
- The per-detector timeout counts from the moment an item starts running.
  Overrunning items are abandoned on their thread; once such threads hold
  every worker, the rest of the work moves to a fresh pool.
- RuntimeError on submit (thread exhaustion) is retried once with half the
  workers before the remaining work is reported as partial.
"""

from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Sequence, Tuple

from analysis.fact_index import FactIndex
from core.config import EngineConfig
from core.errors import DetectorExecutionError, KestrelError, PartialScanError
from core.utils import debug, warn
from model.ir import Contract, ProgramModel
from rules.eval_context import DetectorContext
from rules.ir import Detector, Finding, clamp_severity

# In-flight items per worker
IN_FLIGHT_PER_WORKER = 2
# Lower bound on how long the pool loop waits between timeout checks
MIN_POLL_INTERVAL = 0.01


@dataclass(frozen=True)
class WorkItem:
    """One detector applied to one contract. `seq` is the item's position in the work list."""

    seq: int
    contract: Contract
    detector: Detector
    detector_order: int


@dataclass
class _Outcome:
    findings: List[Finding] = field(default_factory=list)
    error: Optional[DetectorExecutionError] = None
    skipped: bool = False


@dataclass
class ScheduleResult:
    """Ordered findings plus everything that kept the scan from being complete."""

    findings: List[Finding] = field(default_factory=list)
    errors: List[KestrelError] = field(default_factory=list)
    executed: int = 0
    skipped: int = 0


class _SubmitFailed(Exception):
    """Internal: the pool refused a submission; carries the items not yet submitted."""

    def __init__(self, remaining: List[WorkItem], cause: RuntimeError):
        super().__init__(str(cause))
        self.remaining = remaining
        self.cause = cause


class Scheduler:
    """Runs a detector selection against the indexed contracts of one Program Model."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()
        self.clock = self.config.clock
        self._deadline_at: Optional[float] = None

    # =========================================================================
    # Public API
    # =========================================================================

    def run(
        self,
        program: ProgramModel,
        index: FactIndex,
        detectors: Sequence[Detector],
        deadline_at: Optional[float] = None,
    ) -> ScheduleResult:
        """
        Run every (contract, detector) item of one Program Model.

        `deadline_at` is an absolute clock reading shared by a whole scan; when
        omitted, the configured deadline counts from this call.
        """
        start = self.clock()
        if deadline_at is None and self.config.deadline is not None:
            deadline_at = start + self.config.deadline
        self._deadline_at = deadline_at

        items = self.work_items(program, index, detectors)
        outcomes: Dict[int, _Outcome] = {}
        unscheduled: List[Tuple[WorkItem, str]] = []

        ctx_by_contract = {c.id: DetectorContext(program, index, c) for c in program.contracts if index.is_indexed(c.id)}

        workers = self.config.workers
        if workers <= 1:
            unscheduled += self._run_inline(items, ctx_by_contract, outcomes)
        else:
            try:
                unscheduled += self._run_pool(items, ctx_by_contract, outcomes, workers)
            except _SubmitFailed as e:
                retry_workers = max(1, workers // 2)
                warn(f"scheduler: worker pool failed ({e.cause}); retrying with {retry_workers} worker(s)")
                try:
                    if retry_workers == 1:
                        unscheduled += self._run_inline(e.remaining, ctx_by_contract, outcomes)
                    else:
                        unscheduled += self._run_pool(e.remaining, ctx_by_contract, outcomes, retry_workers)
                except _SubmitFailed as again:
                    warn(f"scheduler: worker pool failed again ({again.cause}); reporting remaining work as partial")
                    unscheduled += [(item, "worker pool unavailable") for item in again.remaining]

        result = self._collect(items, outcomes, unscheduled)
        debug(
            f"scheduler: {result.executed} item(s) run, {result.skipped} skipped, "
            f"{len(result.findings)} finding(s), {len(result.errors)} error(s) in {self.clock() - start:.3f}s"
        )
        return result

    @staticmethod
    def work_items(program: ProgramModel, index: FactIndex, detectors: Sequence[Detector]) -> List[WorkItem]:
        """(contract, detector) pairs for every indexed contract, contract-major."""
        items = []
        for contract in program.contracts:
            if not index.is_indexed(contract.id):
                continue
            for order, detector in enumerate(detectors):
                items.append(WorkItem(len(items), contract, detector, order))
        return items

    # =========================================================================
    # Execution
    # =========================================================================

    def _expired(self) -> bool:
        return self._deadline_at is not None and self.clock() >= self._deadline_at

    def _execute(self, item: WorkItem, ctx: DetectorContext, starts: Optional[Dict[int, float]] = None) -> _Outcome:
        """Run one work item in isolation. `starts` receives the item's start time."""
        detector = item.detector
        started = self.clock()
        if starts is not None:
            starts[item.seq] = started
        try:
            if not detector.applies(ctx):
                return _Outcome(skipped=True)
            raw_findings = list(detector.evaluate(ctx) or ())
        except Exception as e:
            err = DetectorExecutionError(detector.id, item.contract.name, e)
            warn(str(err))
            return _Outcome(error=err)

        timeout = self.config.detector_timeout
        elapsed = self.clock() - started
        if timeout is not None and elapsed > timeout:
            return _Outcome(error=self._timeout_error(item, elapsed))

        findings = []
        for raw in raw_findings:
            severity = clamp_severity(raw.severity, detector.severity, raw.evidence)
            if severity != raw.severity:
                debug(f"scheduler: {detector.id} finding clamped {raw.severity.value} -> {severity.value}")
            findings.append(Finding.from_raw(raw, detector, severity))
        return _Outcome(findings=findings)

    def _timeout_error(self, item: WorkItem, elapsed: Optional[float] = None) -> DetectorExecutionError:
        limit = self.config.detector_timeout
        detail = f" after {elapsed:.2f}s" if elapsed is not None else ""
        err = DetectorExecutionError(
            item.detector.id,
            item.contract.name,
            TimeoutError(f"exceeded {limit}s per-detector timeout{detail}"),
        )
        warn(str(err))
        return err

    def _run_inline(
        self,
        items: Sequence[WorkItem],
        contexts: Dict[int, DetectorContext],
        outcomes: Dict[int, _Outcome],
    ) -> List[Tuple[WorkItem, str]]:
        for pos, item in enumerate(items):
            if self._expired():
                return [(rest, "deadline exceeded") for rest in items[pos:]]
            outcomes[item.seq] = self._execute(item, contexts[item.contract.id])
        return []

    def _run_pool(
        self,
        items: Sequence[WorkItem],
        contexts: Dict[int, DetectorContext],
        outcomes: Dict[int, _Outcome],
        workers: int,
    ) -> List[Tuple[WorkItem, str]]:
        """
        Run items on a thread pool, keeping at most workers * IN_FLIGHT_PER_WORKER in flight.

        Only items that actually started and ran past the per-detector timeout
        are abandoned; queued ones stay pending. When abandoned threads hold
        every worker, the pool is replaced and the queued items move over.

        Returns items left unscheduled by the deadline. Raises _SubmitFailed
        (after draining what was already submitted) if the pool refuses work.
        """
        queue: Deque[WorkItem] = deque(items)
        in_flight: Dict[Future, WorkItem] = {}
        starts: Dict[int, float] = {}
        abandoned: List[Future] = []
        limit = workers * IN_FLIGHT_PER_WORKER
        timeout = self.config.detector_timeout
        unscheduled: List[Tuple[WorkItem, str]] = []
        failure: Optional[RuntimeError] = None

        pool = self._new_pool(workers)
        try:
            while queue or in_flight:
                while queue and len(in_flight) < limit and failure is None:
                    if self._expired():
                        unscheduled += [(rest, "deadline exceeded") for rest in queue]
                        queue.clear()
                        break
                    item = queue[0]
                    try:
                        future = pool.submit(self._execute, item, contexts[item.contract.id], starts)
                    except RuntimeError as e:
                        failure = e
                        break
                    queue.popleft()
                    in_flight[future] = item

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), timeout=self._poll_interval(in_flight, starts), return_when=FIRST_COMPLETED)
                for future in done:
                    item = in_flight.pop(future)
                    outcomes[item.seq] = future.result()

                if timeout is not None:
                    now = self.clock()
                    for future, item in list(in_flight.items()):
                        started = starts.get(item.seq)
                        if future.done() or started is None or now - started <= timeout:
                            continue
                        # the thread keeps running; its result is discarded
                        del in_flight[future]
                        abandoned.append(future)
                        outcomes[item.seq] = _Outcome(error=self._timeout_error(item, now - started))

                abandoned = [f for f in abandoned if not f.done()]
                if len(abandoned) >= workers and (queue or in_flight):
                    pool = self._replace_pool(pool, workers, queue, in_flight)
                    abandoned = []

                if failure is not None and not in_flight:
                    break
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        if failure is not None:
            raise _SubmitFailed(list(queue), failure)
        return unscheduled

    def _new_pool(self, workers: int) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=workers, thread_name_prefix="kestrel-detector")

    def _replace_pool(
        self,
        pool: ThreadPoolExecutor,
        workers: int,
        queue: Deque[WorkItem],
        in_flight: Dict[Future, WorkItem],
    ) -> ThreadPoolExecutor:
        """Move items that never started back to the queue and continue on a fresh pool."""
        requeue = []
        for future, item in list(in_flight.items()):
            if future.cancel():
                del in_flight[future]
                requeue.append(item)
        queue.extendleft(sorted(requeue, key=lambda i: i.seq, reverse=True))
        warn(f"scheduler: all {workers} worker(s) hold timed-out detectors; starting a fresh pool")
        pool.shutdown(wait=False, cancel_futures=True)
        return self._new_pool(workers)

    def _poll_interval(self, in_flight: Dict[Future, WorkItem], starts: Dict[int, float]) -> Optional[float]:
        """Seconds until the earliest running item overruns its timeout."""
        timeout = self.config.detector_timeout
        if timeout is None:
            return None
        now = self.clock()
        running = [starts[item.seq] for item in in_flight.values() if item.seq in starts]
        if not running:
            return timeout
        return max(MIN_POLL_INTERVAL, min(running) + timeout - now)


    # =========================================================================
    # Merge
    # =========================================================================

    def _collect(
        self,
        items: Sequence[WorkItem],
        outcomes: Dict[int, _Outcome],
        unscheduled: List[Tuple[WorkItem, str]],
    ) -> ScheduleResult:
        result = ScheduleResult()
        ordered: List[Tuple[Tuple, Finding]] = []
        for item in items:
            outcome = outcomes.get(item.seq)
            if outcome is None:
                continue
            if outcome.skipped:
                result.skipped += 1
                continue
            result.executed += 1
            if outcome.error is not None:
                result.errors.append(outcome.error)
            for pos, finding in enumerate(outcome.findings):
                span = finding.location.span
                key = (item.detector_order, span.file, span.start, span.end, item.contract.id, pos)
                ordered.append((key, finding))
        ordered.sort(key=lambda pair: pair[0])
        result.findings = [f for _, f in ordered]

        # one PartialScanError per contract, in contract order
        pending: Dict[int, Tuple[Contract, int, str]] = {}
        for item, reason in unscheduled:
            contract, count, _ = pending.get(item.contract.id, (item.contract, 0, reason))
            pending[item.contract.id] = (contract, count + 1, reason)
        for contract_id in sorted(pending):
            contract, count, reason = pending[contract_id]
            err = PartialScanError(contract.name, count, reason)
            warn(str(err))
            result.errors.append(err)
        return result
