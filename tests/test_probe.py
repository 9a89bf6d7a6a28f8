import logging
import threading
import time

import pytest

from conftest import ATTACKER, BRIDGE, EMPTY
from fakechain import Behavior, addr
from reinit_probe.errors import ForkUnavailableError, ProbeTimeoutError, RPCError, StepFailedError
from reinit_probe.probe import InitializerProbe, ProbeJob, ProbeRunner, Verdict
from reinit_probe.sequencer import INVOKE, CallStep

INITIALIZE = CallStep(INVOKE, function="initialize(address)", args=("$target",))
DESTROY = CallStep(INVOKE, target="$target", function="destroy()")
PING = CallStep(INVOKE, target="$target", function="ping()")


def sent_methods(chain):
    return [m for m, _ in chain.calls if m in ("eth_call", "eth_sendTransaction")]


@pytest.fixture
def prober(artifacts):
    return InitializerProbe(artifacts, default_caller=ATTACKER)


def test_guarded_initializer_is_blocked(prober, session, backend):
    result = prober.probe(session, BRIDGE, INITIALIZE, DESTROY)
    assert result.verdict is Verdict.REINIT_BLOCKED
    assert not result.succeeded
    assert [e.kind for e in result.evidence] == ["revert"]
    assert result.evidence[0].detail == "Initializable: contract is already initialized"
    assert len(result.log) == 1 and not result.log[0].ok
    # the marker never ran and nothing was sent
    assert backend.started[0].sent == []
    assert session.client.read_code(BRIDGE) != b""


def test_unguarded_initializer_with_destroy_marker_succeeds(vulnerable_chain, prober, session):
    result = prober.probe(session, BRIDGE, INITIALIZE, DESTROY)
    assert result.verdict is Verdict.REINIT_SUCCEEDED
    assert result.succeeded
    code = [e for e in result.evidence if e.kind == "code"]
    assert len(code) == 1
    assert code[0].before.startswith("0x") and len(code[0].before) > 2
    assert code[0].after == "0x"
    assert [r.ok for r in result.log] == [True, True]
    assert result.session_id == session.session_id
    assert result.block_height == 1000


def test_probe_at_height_beyond_head_is_fork_unavailable(manager, chain, endpoint, artifacts):
    runner = ProbeRunner(manager, artifacts, default_caller=ATTACKER)
    job = ProbeJob(endpoint, BRIDGE, INITIALIZE, (DESTROY,), block=1001)
    with pytest.raises(ForkUnavailableError):
        runner.run(job)
    assert sent_methods(chain) == []
    assert manager.open_sessions == 0


def test_no_code_at_target_is_inconclusive(prober, session, chain):
    result = prober.probe(session, EMPTY, INITIALIZE, DESTROY)
    assert result.verdict is Verdict.INCONCLUSIVE
    assert result.reason == "no code"
    assert result.log == ()
    assert sent_methods(chain) == []


def test_marker_without_visible_change_is_inconclusive(vulnerable_chain, prober, session):
    result = prober.probe(session, BRIDGE, INITIALIZE, PING)
    assert result.verdict is Verdict.INCONCLUSIVE
    assert result.evidence == ()
    assert len(result.log) == 2


def test_failing_marker_is_inconclusive(vulnerable_chain, prober, session):
    marker = CallStep(INVOKE, target="$target", function="destroy()", caller=addr(0xBEEF))
    result = prober.probe(session, BRIDGE, INITIALIZE, marker)
    assert result.verdict is Verdict.INCONCLUSIVE
    assert "Ownable: caller is not the owner" in result.reason
    assert [r.ok for r in result.log] == [True, False]


def test_initializer_writes_do_not_count_as_marker_evidence(vulnerable_chain, prober, session):
    # initialize() rewrites slot 1 (owner) but ping() touches nothing
    result = prober.probe(session, BRIDGE, INITIALIZE, PING, tracked_slots=(1,))
    assert result.verdict is Verdict.INCONCLUSIVE
    assert result.evidence == ()
    assert session.client.read_storage_slot(BRIDGE, 1)[-20:] == bytes.fromhex(ATTACKER[2:])


def test_tracked_slot_written_by_marker_counts_as_evidence(vulnerable_chain, prober, session):
    marker = CallStep(INVOKE, target="$target", function="setFactory(address)", args=(addr(0xF00),))
    result = prober.probe(session, BRIDGE, INITIALIZE, marker, tracked_slots=(1, 2))
    assert result.verdict is Verdict.REINIT_SUCCEEDED
    (evidence,) = result.evidence
    assert evidence.kind == "storage" and evidence.slot == 2
    # measured against slot 2 as the initializer left it, not as it was at the fork height
    assert evidence.before == "0x" + bytes.fromhex(BRIDGE[2:]).rjust(32, b"\x00").hex()
    assert evidence.after.endswith("f00")


def test_initializer_cannot_continue_past_a_revert(prober, session, backend):
    init = CallStep(INVOKE, function="initialize(address)", args=("$target",), continue_on_failure=True)
    result = prober.probe(session, BRIDGE, init, DESTROY)
    assert result.verdict is Verdict.REINIT_BLOCKED
    assert len(result.log) == 1
    assert backend.started[0].sent == []


def test_marker_step_failure_is_inconclusive_even_when_allowed(vulnerable_chain, prober, session):
    lenient = CallStep(INVOKE, target="$target", function="destroy()", caller=addr(0xBEEF), continue_on_failure=True)
    result = prober.probe(session, BRIDGE, INITIALIZE, [lenient, PING])
    assert result.verdict is Verdict.INCONCLUSIVE
    assert "marker step 1 failed: Ownable: caller is not the owner" in result.reason
    assert [r.ok for r in result.log] == [True, False, True]
    assert result.evidence == ()


def test_node_error_is_raised_instead_of_a_verdict(vulnerable_chain, prober, session):
    vulnerable_chain.broken["eth_call"] = {"jsonrpc": "2.0", "id": 1, "error": {
        "code": -32603, "message": "failed to get storage: HTTP error 429 Too Many Requests"}}
    with pytest.raises(RPCError):
        prober.probe(session, BRIDGE, INITIALIZE, DESTROY)


def test_setup_steps_run_first_and_failures_propagate(vulnerable_chain, prober, session):
    setup = [CallStep(INVOKE, target="$target", function="setFactory(address)", args=(ATTACKER,))]
    with pytest.raises(StepFailedError) as info:
        prober.probe(session, BRIDGE, INITIALIZE, DESTROY, setup=setup)
    assert info.value.step_index == 0
    assert info.value.reason == "Ownable: caller is not the owner"


def test_setup_deploy_is_visible_to_initializer(vulnerable_chain, prober, session):
    setup = [CallStep("deploy", target="TokenFactory", args=(1,), name="factory")]
    init = CallStep(INVOKE, function="initialize(address)", args=("$factory",))
    result = prober.probe(session, BRIDGE, init, DESTROY, setup=setup)
    assert result.verdict is Verdict.REINIT_SUCCEEDED
    assert [r.step.kind for r in result.log] == ["deploy", "invoke", "invoke"]


# -------------------------
# Runner
# -------------------------
class Stall(Behavior):
    functions = {"stall()": "stall"}

    def __init__(self, gate):
        self.gate = gate

    def stall(self, state, address, caller):
        self.gate.wait(5)


def test_runner_closes_session_after_verdict(manager, backend, endpoint, artifacts):
    runner = ProbeRunner(manager, artifacts, default_caller=ATTACKER)
    result = runner.run(ProbeJob(endpoint, BRIDGE, INITIALIZE, (DESTROY,)))
    assert result.verdict is Verdict.REINIT_BLOCKED
    assert result.block_height == 1000
    assert manager.open_sessions == 0
    assert backend.stopped == backend.started


def test_runner_timeout_tears_down_session(chain, manager, backend, endpoint, artifacts, caplog):
    caplog.set_level(logging.DEBUG, logger="reinit_probe.probe")
    gate = threading.Event()
    chain.state.behaviors[BRIDGE] = Stall(gate)
    runner = ProbeRunner(manager, artifacts, default_caller=ATTACKER, timeout=0.2)
    job = ProbeJob(endpoint, BRIDGE, CallStep(INVOKE, function="stall()"), (PING,))
    try:
        with pytest.raises(ProbeTimeoutError):
            runner.run(job)
        assert manager.open_sessions == 0
        assert len(backend.stopped) == 1
        assert backend.started[0].closed
    finally:
        gate.set()
    # the abandoned worker still reports how it ended
    deadline = time.monotonic() + 5
    while "Timed-out probe of" not in caplog.text and time.monotonic() < deadline:
        time.sleep(0.05)
    assert f"Timed-out probe of {BRIDGE}" in caplog.text


def test_run_many_returns_errors_in_place(manager, endpoint, artifacts):
    runner = ProbeRunner(manager, artifacts, default_caller=ATTACKER)
    jobs = [
        ProbeJob(endpoint, BRIDGE, INITIALIZE, (DESTROY,), block=1000),
        ProbeJob(endpoint, BRIDGE, INITIALIZE, (DESTROY,), block=1001),
        ProbeJob(endpoint, EMPTY, INITIALIZE, (DESTROY,)),
    ]
    results = runner.run_many(jobs, max_workers=2)
    assert results[0].verdict is Verdict.REINIT_BLOCKED
    assert isinstance(results[1], ForkUnavailableError)
    assert results[2].verdict is Verdict.INCONCLUSIVE
    assert manager.open_sessions == 0
