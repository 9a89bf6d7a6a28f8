"""
Call-script loading.

A call script is a JSON document describing the scenario to replay:

    {
      "target": "0x868964b90589d1695c08cd54dcd44092929662f9",
      "caller": "0xc437DF90B37C1dB6657339E31BfE54627f0e7181",
      "tracked_slots": [0, "0x33"],
      "setup": [
        {"deploy": "SimpleTokenFactoryAttack", "as": "tokenFactory"}
      ],
      "initializer": {"call": "initialize", "abi": "CrossChainBridge_R1",
                      "args": ["0xc437...", "$tokenFactory", ...]},
      "marker": [
        {"call": "factoryPeggedBond", "abi": "CrossChainBridge_R1", "args": [2, {...}]}
      ]
    }

Everything that can be checked without a node is checked here, so a bad
script fails with ConfigError before any network call.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .artifacts import ArtifactStore, encode_call, encode_deploy, find_function
from .config import checksum, parse_int, parse_slot
from .errors import ConfigError
from .sequencer import DEPLOY, INVOKE, CallStep, is_symbol, symbols_in

STEP_KEYS = {"deploy", "call", "as", "on", "abi", "args", "from", "value", "continue_on_failure"}
SCRIPT_KEYS = {"target", "caller", "tracked_slots", "setup", "initializer", "marker", "description"}
PLACEHOLDER_ADDRESS = "0x0000000000000000000000000000000000000001"


@dataclass(frozen=True)
class ProbeScript:
    initializer: CallStep
    marker: Tuple[CallStep, ...]
    setup: Tuple[CallStep, ...] = ()
    target: Optional[str] = None
    caller: Optional[str] = None
    tracked_slots: Tuple[int, ...] = ()
    description: Optional[str] = None


def parse_step(raw: Any, where: str) -> CallStep:
    if not isinstance(raw, dict):
        raise ConfigError(f"{where}: step must be an object, got {raw!r}")
    unknown = set(raw) - STEP_KEYS
    if unknown:
        raise ConfigError(f"{where}: unknown keys {sorted(unknown)}")
    if ("deploy" in raw) == ("call" in raw):
        raise ConfigError(f"{where}: step needs exactly one of 'deploy' or 'call'")

    args = raw.get("args", [])
    if not isinstance(args, list):
        raise ConfigError(f"{where}: 'args' must be a list")
    caller = raw.get("from")
    if caller is not None and not is_symbol(caller):
        caller = checksum(caller, f"{where} caller")
    value = parse_int(raw.get("value", 0), f"{where} value")
    continue_on_failure = raw.get("continue_on_failure", False)
    if not isinstance(continue_on_failure, bool):
        raise ConfigError(f"{where}: 'continue_on_failure' must be true or false")

    if "deploy" in raw:
        for key in ("on", "abi"):
            if key in raw:
                raise ConfigError(f"{where}: '{key}' does not apply to deploy steps")
        return CallStep(DEPLOY, target=str(raw["deploy"]), args=tuple(args), caller=caller,
                        name=raw.get("as"), value=value, continue_on_failure=continue_on_failure)

    if "as" in raw:
        raise ConfigError(f"{where}: 'as' only applies to deploy steps")
    target = raw.get("on")
    if target is not None and not is_symbol(target):
        target = checksum(target, f"{where} target")
    return CallStep(INVOKE, target=target, function=str(raw["call"]), args=tuple(args), caller=caller,
                    artifact=raw.get("abi"), value=value, continue_on_failure=continue_on_failure)


def _placeholders(value: Any) -> Any:
    if is_symbol(value):
        return PLACEHOLDER_ADDRESS
    if isinstance(value, (list, tuple)):
        return [_placeholders(v) for v in value]
    if isinstance(value, dict):
        return {k: _placeholders(v) for k, v in value.items()}
    return value


def validate(script: ProbeScript, artifacts: Optional[ArtifactStore]) -> None:
    """Check symbols, artifacts and argument encoding for every step."""
    defined = {"target"}
    sections: List[Tuple[str, CallStep]] = [(f"setup[{i}]", s) for i, s in enumerate(script.setup)]
    sections.append(("initializer", script.initializer))
    sections += [(f"marker[{i}]", s) for i, s in enumerate(script.marker)]

    for where, step in sections:
        used = symbols_in(list(step.args)) | symbols_in(step.target if step.kind == INVOKE else None) | symbols_in(step.caller)
        missing = used - defined
        if missing:
            raise ConfigError(f"{where}: unknown symbol(s) {sorted('$' + m for m in missing)}")

        args = _placeholders(list(step.args))
        if step.kind == DEPLOY:
            if artifacts is None:
                raise ConfigError(f"{where}: deploy needs an artifact directory")
            encode_deploy(artifacts.get(step.target), args)
            if step.name:
                defined.add(step.name)
            continue

        if step.artifact:
            if artifacts is None:
                raise ConfigError(f"{where}: 'abi' needs an artifact directory")
            abi = artifacts.get(step.artifact).abi
        elif "(" not in step.function:
            raise ConfigError(f"{where}: call {step.function!r} needs an 'abi' artifact or a full signature")
        else:
            abi = []
        encode_call(find_function(abi, step.function, len(args)), args)


def parse_script(data: Dict[str, Any], artifacts: Optional[ArtifactStore] = None) -> ProbeScript:
    if not isinstance(data, dict):
        raise ConfigError("call script must be a JSON object")
    unknown = set(data) - SCRIPT_KEYS
    if unknown:
        raise ConfigError(f"call script: unknown keys {sorted(unknown)}")
    if "initializer" not in data:
        raise ConfigError("call script: 'initializer' is required")
    if "marker" not in data:
        raise ConfigError("call script: 'marker' is required")

    initializer = parse_step(data["initializer"], "initializer")
    if initializer.kind != INVOKE:
        raise ConfigError("initializer: must be a 'call' step")
    if initializer.continue_on_failure:
        raise ConfigError("initializer: 'continue_on_failure' is not allowed; a reverting initializer ends the probe")

    raw_marker = data["marker"]
    raw_marker = raw_marker if isinstance(raw_marker, list) else [raw_marker]
    if not raw_marker:
        raise ConfigError("marker: at least one step is required")
    marker = tuple(parse_step(s, f"marker[{i}]") for i, s in enumerate(raw_marker))

    raw_setup = data.get("setup", [])
    if not isinstance(raw_setup, list):
        raise ConfigError("setup: must be a list of steps")
    setup = tuple(parse_step(s, f"setup[{i}]") for i, s in enumerate(raw_setup))

    raw_slots = data.get("tracked_slots", [])
    if not isinstance(raw_slots, list):
        raise ConfigError("tracked_slots: must be a list")

    script = ProbeScript(
        initializer=initializer,
        marker=marker,
        setup=setup,
        target=checksum(data["target"], "script target") if data.get("target") else None,
        caller=checksum(data["caller"], "script caller") if data.get("caller") else None,
        tracked_slots=tuple(parse_slot(s) for s in raw_slots),
        description=data.get("description"),
    )
    validate(script, artifacts)
    return script


def load_script(path: Union[str, Path], artifacts: Optional[ArtifactStore] = None) -> ProbeScript:
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"call script not found: {path}") from None
    except json.JSONDecodeError as e:
        raise ConfigError(f"call script {path} is not valid JSON: {e}") from None
    return parse_script(data, artifacts)
