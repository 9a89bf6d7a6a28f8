"""
Runs an ordered list of deploy/invoke steps against one fork session.

Steps execute strictly in order. Each step is preflighted with eth_call
(so a revert comes back with its reason), then sent as a transaction from
an impersonated caller. The first failing step halts the run with
StepFailedError unless it is marked continue_on_failure; whatever earlier
steps did stays in the fork overlay. Only contract reverts count as step
failures: other JSON-RPC errors (rate limits, missing state, no signer)
propagate as RPCError, and an unresolved `$symbol` is a ConfigError.

Deploy steps may bind a name (`"as": "tokenFactory"`); later steps refer to
the deployed address as `$tokenFactory` in their target or arguments. The
name table lives and dies with the sequencer.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from hexbytes import HexBytes

from .artifacts import ABIEntry, Artifact, ArtifactStore, decode_output, decode_revert, encode_call, encode_deploy, find_function
from .config import DEFAULT_CALLER, DEFAULT_CALLER_BALANCE, checksum
from .errors import ConfigError, ProbeTimeoutError, RPCError, StepFailedError
from .fork import ForkSession
from .ledger import RECEIPT_TIMEOUT, decode_data

logger = logging.getLogger(__name__)

DEPLOY = "deploy"
INVOKE = "invoke"
SYMBOL_PREFIX = "$"


@dataclass(frozen=True)
class CallStep:
    kind: str
    target: Optional[str] = None  # artifact name (deploy) or address / $symbol (invoke)
    function: Optional[str] = None
    args: Tuple[Any, ...] = ()
    caller: Optional[str] = None
    name: Optional[str] = None
    artifact: Optional[str] = None  # ABI source for invokes
    value: int = 0
    continue_on_failure: bool = False

    def __post_init__(self):
        if self.kind not in (DEPLOY, INVOKE):
            raise ConfigError(f"unknown step kind {self.kind!r}")
        if self.kind == DEPLOY and not self.target:
            raise ConfigError("deploy step needs an artifact name")
        if self.kind == INVOKE and not self.function:
            raise ConfigError("invoke step needs a function")
        if self.value < 0:
            raise ConfigError(f"negative call value {self.value}")
        object.__setattr__(self, "args", tuple(self.args))

    @property
    def label(self) -> str:
        if self.kind == DEPLOY:
            return f"deploy {self.target}" + (f" as ${self.name}" if self.name else "")
        return f"{self.function} on {self.target or '$target'}"


@dataclass(frozen=True)
class CallResult:
    index: int
    step: CallStep
    ok: bool
    return_data: bytes = b""
    revert_reason: Optional[str] = None
    gas_used: int = 0
    contract_address: Optional[str] = None
    tx_hash: Optional[str] = None
    decoded: Optional[Tuple[Any, ...]] = None


class UnresolvedSymbol(KeyError):
    pass


def revert_data(error: RPCError) -> Optional[str]:
    data = error.data
    if isinstance(data, dict):
        data = data.get("data")
    if isinstance(data, str) and data[:2].lower() == "0x":
        return data
    return None


def is_revert(error: RPCError) -> bool:
    """True when the node reports the call itself reverted, not a node-side failure."""
    if error.code == 3:
        return True
    data = revert_data(error)
    if data is not None and len(data) >= 10:
        return True
    return (error.message or "").lower().startswith("execution reverted")


def is_symbol(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(SYMBOL_PREFIX) and len(value) > 1


def symbols_in(value: Any) -> Set[str]:
    if is_symbol(value):
        return {value[1:]}
    if isinstance(value, (list, tuple)):
        return set().union(*(symbols_in(v) for v in value)) if value else set()
    if isinstance(value, dict):
        return set().union(*(symbols_in(v) for v in value.values())) if value else set()
    return set()


class CallSequencer:
    def __init__(self, session: ForkSession, artifacts: Optional[ArtifactStore] = None,
                 default_caller: str = DEFAULT_CALLER, caller_balance: int = DEFAULT_CALLER_BALANCE,
                 cancel: Optional[threading.Event] = None, receipt_timeout: float = RECEIPT_TIMEOUT):
        self.session = session
        self.artifacts = artifacts
        self.default_caller = checksum(default_caller, "caller")
        self.caller_balance = caller_balance
        self.cancel = cancel
        self.receipt_timeout = receipt_timeout
        self.names: Dict[str, str] = {}
        self.log: List[CallResult] = []
        self._prepared: Set[str] = set()

    # -------------------------
    # Symbols
    # -------------------------
    def bind(self, name: str, address: str) -> None:
        self.names[name.lstrip(SYMBOL_PREFIX)] = checksum(address)

    def resolve(self, value: Any) -> Any:
        if is_symbol(value):
            try:
                return self.names[value[1:]]
            except KeyError:
                raise UnresolvedSymbol(value) from None
        if isinstance(value, (list, tuple)):
            return [self.resolve(v) for v in value]
        if isinstance(value, dict):
            return {k: self.resolve(v) for k, v in value.items()}
        return value

    # -------------------------
    # Running
    # -------------------------
    def run(self, steps: Sequence[CallStep]) -> List[CallResult]:
        results: List[CallResult] = []
        for step in steps:
            if self.cancel is not None and self.cancel.is_set():
                raise ProbeTimeoutError(f"run cancelled before step {len(self.log)}")
            result = self.execute(step)
            self.log.append(result)
            results.append(result)
            if result.ok:
                logger.info("[%d] %s -> OK (gas %d)%s", result.index, step.label, result.gas_used,
                            f" at {result.contract_address}" if result.contract_address else "")
                continue
            logger.info("[%d] %s -> FAILED: %s", result.index, step.label, result.revert_reason)
            if not step.continue_on_failure:
                raise StepFailedError(result.index, result.revert_reason or "failed",
                                      results=self.log, target=step.target)
        return results

    def execute(self, step: CallStep) -> CallResult:
        index = len(self.log)
        try:
            caller = checksum(self.resolve(step.caller) if step.caller else self.default_caller, "caller")
            to, data, artifact, fn = self._build(step)
        except UnresolvedSymbol as e:
            raise ConfigError(f"step {index} ({step.label}): unresolved symbol {e.args[0]}") from None

        tx: Dict[str, Any] = {"from": caller, "data": "0x" + data.hex()}
        if to:
            tx["to"] = to
        if step.value:
            tx["value"] = hex(step.value)

        self._prepare_caller(caller)

        # only contract reverts fail a step; any other node error propagates
        try:
            returned = self.session.client.rpc("eth_call", [tx, "latest"])
        except RPCError as e:
            if not is_revert(e):
                raise
            return CallResult(index, step, ok=False, revert_reason=self.revert_reason(e, artifact))

        try:
            tx_hash = self.session.client.rpc("eth_sendTransaction", [tx])
        except RPCError as e:
            if not is_revert(e):
                raise
            return CallResult(index, step, ok=False, revert_reason=self.revert_reason(e, artifact))

        receipt = self.session.client.wait_for_receipt(tx_hash, timeout=self.receipt_timeout)
        if receipt["status"] != 1:
            return CallResult(index, step, ok=False, revert_reason="reverted on-chain after a successful preflight",
                              gas_used=receipt["gas_used"], tx_hash=tx_hash)

        if step.kind == DEPLOY:
            address = receipt["contract_address"]
            if step.name and address:
                self.bind(step.name, address)
            return CallResult(index, step, ok=True, gas_used=receipt["gas_used"],
                              contract_address=address, tx_hash=tx_hash)

        return_data = decode_data(returned, "eth_call") if returned else b""
        return CallResult(index, step, ok=True, return_data=return_data, gas_used=receipt["gas_used"],
                          tx_hash=tx_hash, decoded=decode_output(fn, return_data) if fn else None)

    # -------------------------
    # Helpers
    # -------------------------
    def _artifact(self, name: str) -> Artifact:
        if self.artifacts is None:
            raise ConfigError(f"step needs artifact {name!r} but no artifact directory is configured")
        return self.artifacts.get(name)

    def _build(self, step: CallStep) -> Tuple[Optional[str], bytes, Optional[Artifact], Optional[ABIEntry]]:
        args = self.resolve(list(step.args))
        if step.kind == DEPLOY:
            artifact = self._artifact(step.target)
            return None, encode_deploy(artifact, args), artifact, None

        if not step.target:
            raise ConfigError(f"invoke step {step.function!r} has no target")
        to = checksum(self.resolve(step.target), "call target")
        artifact = self._artifact(step.artifact) if step.artifact else None
        fn = find_function(artifact.abi if artifact else [], step.function, len(args))
        return to, encode_call(fn, args), artifact, fn

    def _prepare_caller(self, caller: str) -> None:
        if caller in self._prepared:
            return
        self.session.impersonate(caller)
        if self.session.client.get_balance(caller) == 0:
            self.session.set_balance(caller, self.caller_balance)
        self._prepared.add(caller)

    @staticmethod
    def revert_reason(error: RPCError, artifact: Optional[Artifact] = None) -> str:
        data = revert_data(error)
        if data is not None:
            try:
                reason = decode_revert(bytes(HexBytes(data)), artifact)
            except ValueError:
                reason = None
            if reason:
                return reason
        return error.message or f"rpc error {error.code}"
