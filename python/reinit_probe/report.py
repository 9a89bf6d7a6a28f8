"""
Rendering of probe outcomes. Pure functions: the caller decides where the
text or JSON ends up.
"""

from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any, Dict, Sequence

from .probe import Evidence, ProbeVerdict
from .sequencer import DEPLOY, CallResult

CODE_PREVIEW = 34  # hex chars shown for code evidence in text reports


def to_jsonable(obj):
    """Recursively convert dataclasses, enums and bytes (HexBytes included) into JSON-serializable types."""
    if isinstance(obj, Enum):
        return obj.value
    if is_dataclass(obj) and not isinstance(obj, type):
        return to_jsonable(asdict(obj))
    if isinstance(obj, dict):
        return {k: to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_jsonable(x) for x in obj]
    if isinstance(obj, (bytes, bytearray)):
        return "0x" + bytes(obj).hex()
    return obj


def short_hex(value: str) -> str:
    if value is None or len(value) <= CODE_PREVIEW:
        return value
    return f"{value[:CODE_PREVIEW]}... ({(len(value) - 2) // 2} bytes)"


def render_step(result: CallResult) -> str:
    status = "OK" if result.ok else "FAILED"
    line = f"  [{result.index}] {result.step.kind:<6} {result.step.label:<48} {status:<6} gas={result.gas_used}"
    if result.step.kind == DEPLOY and result.contract_address:
        line += f" address={result.contract_address}"
    if not result.ok and result.revert_reason:
        line += f" reason={result.revert_reason!r}"
    return line


def render_evidence(ev: Evidence) -> str:
    if ev.kind == "revert":
        return f"  revert: {ev.detail!r}"
    if ev.kind == "code":
        return f"  code: before={short_hex(ev.before)} after={short_hex(ev.after)}"
    return f"  storage slot {hex(ev.slot)}: before={ev.before} after={ev.after}"


def render(verdict: ProbeVerdict, log: Sequence[CallResult]) -> str:
    lines = [
        f"==== Initializer probe: {verdict.target} ====",
        f"verdict : {verdict.verdict.value}",
        f"reason  : {verdict.reason}",
    ]
    if verdict.session_id:
        lines.append(f"session : {verdict.session_id} @ block {verdict.block_height}")

    lines.append(f"-- steps ({len(log)}) --")
    if log:
        lines += [render_step(r) for r in log]
    else:
        lines.append("  (no steps executed)")

    lines.append("-- evidence --")
    if verdict.evidence:
        lines += [render_evidence(ev) for ev in verdict.evidence]
    else:
        lines.append("  (none)")
    return "\n".join(lines)


def render_json(verdict: ProbeVerdict, log: Sequence[CallResult]) -> Dict[str, Any]:
    return {
        "target": verdict.target,
        "verdict": verdict.verdict.value,
        "reason": verdict.reason,
        "session_id": verdict.session_id,
        "block_height": verdict.block_height,
        "evidence": to_jsonable(list(verdict.evidence)),
        "steps": [
            {
                "index": r.index,
                "kind": r.step.kind,
                "label": r.step.label,
                "ok": r.ok,
                "gas_used": r.gas_used,
                "contract_address": r.contract_address,
                "revert_reason": r.revert_reason,
                "tx_hash": r.tx_hash,
                "return_data": to_jsonable(r.return_data),
            }
            for r in log
        ],
    }
