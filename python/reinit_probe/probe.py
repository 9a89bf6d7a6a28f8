"""
Initializer probe: can the target's initializer be called again, and did
that second call hand over enough control to change the target?

    PENDING --(no code at probe height)--------------------> INCONCLUSIVE
    PENDING --(initializer reverts)------------------------> REINIT_BLOCKED
    PENDING --(initializer ok, marker fails)---------------> INCONCLUSIVE
    PENDING --(initializer ok, marker ok, no change seen)--> INCONCLUSIVE
    PENDING --(initializer ok, marker ok, code/slot diff)--> REINIT_SUCCEEDED

A successful second initialize() on its own is only reported as the
necessary condition; REINIT_SUCCEEDED needs every marker step to succeed and
the marker to change the target's code or a tracked slot, compared with a
snapshot taken right after the initializer.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .artifacts import ArtifactStore
from .config import DEFAULT_CALLER, DEFAULT_PROBE_TIMEOUT, Endpoint, checksum
from .errors import ProbeError, ProbeTimeoutError, StepFailedError
from .fork import ForkSession, ForkSessionManager
from .sequencer import CallResult, CallSequencer, CallStep

logger = logging.getLogger(__name__)


class Verdict(str, Enum):
    REINIT_BLOCKED = "REINIT_BLOCKED"
    REINIT_SUCCEEDED = "REINIT_SUCCEEDED"
    INCONCLUSIVE = "INCONCLUSIVE"


@dataclass(frozen=True)
class Evidence:
    kind: str  # "revert" | "code" | "storage"
    before: Optional[str] = None
    after: Optional[str] = None
    slot: Optional[int] = None
    detail: Optional[str] = None


@dataclass(frozen=True)
class ProbeVerdict:
    verdict: Verdict
    target: str
    reason: str
    evidence: Tuple[Evidence, ...] = ()
    log: Tuple[CallResult, ...] = ()
    session_id: Optional[str] = None
    block_height: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.verdict is Verdict.REINIT_SUCCEEDED


def to_hex(value: bytes) -> str:
    return "0x" + value.hex()


def as_steps(steps: Union[CallStep, Sequence[CallStep]]) -> Tuple[CallStep, ...]:
    if isinstance(steps, CallStep):
        return (steps,)
    return tuple(steps)


class InitializerProbe:
    def __init__(self, artifacts: Optional[ArtifactStore] = None, default_caller: str = DEFAULT_CALLER,
                 cancel: Optional[threading.Event] = None):
        self.artifacts = artifacts
        self.default_caller = default_caller
        self.cancel = cancel

    def probe(self, session: ForkSession, target: str, initializer: CallStep,
              marker: Union[CallStep, Sequence[CallStep]],
              setup: Sequence[CallStep] = (), tracked_slots: Sequence[int] = ()) -> ProbeVerdict:
        target = checksum(target, "target address")
        client = session.client

        def verdict(kind: Verdict, reason: str, evidence=(), log=()) -> ProbeVerdict:
            logger.info("Verdict for %s: %s (%s)", target, kind.value, reason)
            return ProbeVerdict(kind, target, reason, tuple(evidence), tuple(log),
                                session_id=session.session_id, block_height=session.block_height)

        code_before = client.read_code(target, session.block_tag)
        if not code_before:
            return verdict(Verdict.INCONCLUSIVE, "no code")

        sequencer = CallSequencer(session, self.artifacts, default_caller=self.default_caller, cancel=self.cancel)
        sequencer.bind("target", target)

        if setup:
            logger.info("Running %d setup step(s)", len(setup))
            sequencer.run(setup)

        # a reverting initializer must end the probe here
        init_step = replace(initializer, target=initializer.target or target, continue_on_failure=False)
        try:
            sequencer.run([init_step])
        except StepFailedError as e:
            return verdict(Verdict.REINIT_BLOCKED, "initializer reverted",
                           [Evidence("revert", detail=e.reason)], sequencer.log)

        # marker evidence is measured from here, so the initializer's own writes do not count
        code_mid = client.read_code(target, "latest")
        slots_mid: Dict[int, bytes] = {slot: client.read_storage_slot(target, slot, "latest") for slot in tracked_slots}

        markers = as_steps(marker)
        try:
            results = sequencer.run(markers)
        except StepFailedError as e:
            return verdict(Verdict.INCONCLUSIVE, f"initializer accepted a second call but marker step {e.step_index} failed: {e.reason}",
                           log=sequencer.log)
        failed = [r for r in results if not r.ok]
        if failed:
            return verdict(Verdict.INCONCLUSIVE, f"initializer accepted a second call but marker step {failed[0].index} "
                           f"failed: {failed[0].revert_reason}", log=sequencer.log)

        evidence: List[Evidence] = []
        code_after = client.read_code(target, "latest")
        if code_after != code_mid:
            evidence.append(Evidence("code", before=to_hex(code_mid), after=to_hex(code_after),
                                     detail="code removed" if not code_after else "code replaced"))
        for slot, before in slots_mid.items():
            after = client.read_storage_slot(target, slot, "latest")
            if after != before:
                evidence.append(Evidence("storage", before=to_hex(before), after=to_hex(after), slot=slot))

        if not evidence:
            return verdict(Verdict.INCONCLUSIVE, "initializer accepted a second call but the marker changed no code or tracked storage",
                           log=sequencer.log)
        return verdict(Verdict.REINIT_SUCCEEDED, "initializer replayed and marker changed target state",
                       evidence, sequencer.log)


# -------------------------
# Runs with a wall-clock ceiling
# -------------------------
@dataclass(frozen=True)
class ProbeJob:
    endpoint: Endpoint
    target: str
    initializer: CallStep
    marker: Tuple[CallStep, ...]
    block: Optional[int] = None
    setup: Tuple[CallStep, ...] = ()
    tracked_slots: Tuple[int, ...] = field(default=())


class ProbeRunner:
    def __init__(self, manager: ForkSessionManager, artifacts: Optional[ArtifactStore] = None,
                 default_caller: str = DEFAULT_CALLER, timeout: float = DEFAULT_PROBE_TIMEOUT):
        self.manager = manager
        self.artifacts = artifacts
        self.default_caller = default_caller
        self.timeout = timeout

    def _work(self, job: ProbeJob, cancel: threading.Event, holder: dict) -> ProbeVerdict:
        with self.manager.session(job.endpoint, job.block) as session:
            holder["session"] = session
            if cancel.is_set():
                raise ProbeTimeoutError(f"probe of {job.target} cancelled before it started")
            probe = InitializerProbe(self.artifacts, self.default_caller, cancel)
            return probe.probe(session, job.target, job.initializer, job.marker,
                               setup=job.setup, tracked_slots=job.tracked_slots)

    @staticmethod
    def _abandoned(job: ProbeJob, future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.debug("Timed-out probe of %s ended with %s: %s", job.target, type(exc).__name__, exc)
        else:
            logger.debug("Timed-out probe of %s finished late; result discarded", job.target)

    def run(self, job: ProbeJob) -> ProbeVerdict:
        cancel = threading.Event()
        holder: dict = {}
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="probe")
        future = executor.submit(self._work, job, cancel, holder)
        try:
            return future.result(timeout=self.timeout)
        except FuturesTimeout:
            cancel.set()
            future.add_done_callback(lambda f: self._abandoned(job, f))
            session = holder.get("session")
            if session is not None:
                # the worker's own exit path closes it again; close is idempotent
                self.manager.close(session)
            raise ProbeTimeoutError(f"probe of {job.target} exceeded {self.timeout:.0f}s") from None
        finally:
            executor.shutdown(wait=False)

    def run_many(self, jobs: Sequence[ProbeJob], max_workers: int = 4) -> List[Union[ProbeVerdict, ProbeError]]:
        """Independent jobs in parallel, one session each. Errors are returned in place."""
        results: List[Union[ProbeVerdict, ProbeError]] = []
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="probe-run") as executor:
            futures = [executor.submit(self.run, job) for job in jobs]
            for future in futures:
                try:
                    results.append(future.result())
                except ProbeError as e:
                    results.append(e)
        return results
