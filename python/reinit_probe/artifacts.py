"""
Compiled contract artifacts and the ABI plumbing built on them.

Artifacts are read, never compiled: run `forge build` (or `npx hardhat
compile`) first. Name `Foo` is looked up as

    <dir>/Foo.sol/Foo.json          Foundry out/
    <dir>/**/Foo.sol/Foo.json       Hardhat artifacts/contracts/
    <dir>/Foo.json                  plain {abi, bytecode} dump

Calldata is built through web3's contract layer from the artifact ABI. A
call given only as a full signature gets a one-entry ABI built from that
signature.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from eth_abi import decode
from eth_abi.exceptions import ABITypeError, DecodingError, EncodingError, ParseError
from eth_abi.grammar import TupleType, normalize, parse
from eth_utils import to_checksum_address
from eth_utils.abi import abi_to_signature, function_signature_to_4byte_selector, get_abi_output_types
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import Web3Exception

from .config import checksum, parse_int
from .errors import ConfigError

logger = logging.getLogger(__name__)

ERROR_STRING_SELECTOR = bytes.fromhex("08c379a0")  # Error(string)
PANIC_SELECTOR = bytes.fromhex("4e487b71")  # Panic(uint256)

ABIEntry = Dict[str, Any]

_w3: Optional[Web3] = None


def offline_web3() -> Web3:
    """A provider-less Web3 used only for its contract encoding layer."""
    global _w3
    if _w3 is None:
        _w3 = Web3()
    return _w3


@dataclass(frozen=True)
class Artifact:
    name: str
    abi: List[ABIEntry] = field(default_factory=list, hash=False)
    bytecode: str = "0x"

    def constructor_inputs(self) -> List[ABIEntry]:
        for entry in self.abi:
            if entry.get("type") == "constructor":
                return list(entry.get("inputs", []))
        return []

    def find_function(self, name: str, n_args: Optional[int] = None) -> ABIEntry:
        return find_function(self.abi, name, n_args)

    def error_name(self, sel: bytes) -> Optional[str]:
        for entry in self.abi:
            if entry.get("type") != "error":
                continue
            sig = abi_to_signature(entry)
            if function_signature_to_4byte_selector(sig) == sel:
                return sig
        return None


# -------------------------
# Loading
# -------------------------
def load_artifact(path: Path, name: Optional[str] = None) -> Artifact:
    """Load ABI + creation bytecode from a Foundry or Hardhat artifact file."""
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"artifact not found: {path}") from None
    except json.JSONDecodeError as e:
        raise ConfigError(f"artifact {path} is not valid JSON: {e}") from None

    # Some artifact formats wrap ABI under "abi", some under "output"
    abi = data.get("abi")
    if abi is None:
        abi = data.get("output", {}).get("abi")
    if not isinstance(abi, list):
        raise ConfigError(f"ABI not found in artifact {path}")

    bytecode = data.get("bytecode")
    if isinstance(bytecode, dict):
        bytecode = bytecode.get("object")
    bytecode = bytecode or "0x"
    if not bytecode.startswith("0x"):
        bytecode = "0x" + bytecode

    return Artifact(name=name or Path(path).stem, abi=abi, bytecode=bytecode)


class ArtifactStore:
    def __init__(self, directory):
        self.directory = Path(directory)
        self._cache: Dict[str, Artifact] = {}

    def path_for(self, name: str) -> Optional[Path]:
        candidates = [
            self.directory / f"{name}.sol" / f"{name}.json",
            self.directory / f"{name}.json",
        ]
        for path in candidates:
            if path.is_file():
                return path
        if self.directory.is_dir():
            for path in sorted(self.directory.rglob(f"{name}.sol/{name}.json")):
                return path
        return None

    def get(self, name: str) -> Artifact:
        if name in self._cache:
            return self._cache[name]
        path = self.path_for(name)
        if path is None:
            raise ConfigError(f"artifact {name!r} not found under {self.directory}")
        artifact = load_artifact(path, name=name)
        logger.debug("Loaded artifact %s from %s (%d ABI entries)", name, path, len(artifact.abi))
        self._cache[name] = artifact
        return artifact


# -------------------------
# Signatures
# -------------------------
def _abi_input(abi_type, name: str) -> ABIEntry:
    if isinstance(abi_type, TupleType):
        inner = "(" + ",".join(c.to_type_str() for c in abi_type.components) + ")"
        suffix = abi_type.to_type_str()[len(inner):]
        return {"name": name, "type": "tuple" + suffix,
                "components": [_abi_input(c, f"field{n}") for n, c in enumerate(abi_type.components)]}
    return {"name": name, "type": abi_type.to_type_str()}


def signature_to_abi(sig: str) -> ABIEntry:
    """ABI function entry for a signature such as `initialize(address,(uint8,string)[])`."""
    sig = sig.replace(" ", "")
    name, _, rest = sig.partition("(")
    if not name or not rest.endswith(")"):
        raise ConfigError(f"invalid function signature: {sig!r}")
    try:
        params = parse(normalize("(" + rest))
        params.validate()
    except (ParseError, ABITypeError) as e:
        raise ConfigError(f"invalid function signature {sig!r}: {e}") from None
    return {
        "type": "function",
        "name": name,
        "inputs": [_abi_input(c, f"arg{n}") for n, c in enumerate(params.components)],
        "outputs": [],
        "stateMutability": "nonpayable",
    }


def find_function(abi: Sequence[ABIEntry], name: str, n_args: Optional[int] = None) -> ABIEntry:
    functions = [e for e in abi if e.get("type") == "function"]
    if "(" in name:
        wanted = signature_to_abi(name)
        sig = abi_to_signature(wanted)
        # prefer the ABI entry for output decoding when it matches
        for entry in functions:
            if abi_to_signature(entry) == sig:
                return entry
        return wanted

    matches = [e for e in functions if e.get("name") == name]
    if n_args is not None and len(matches) > 1:
        matches = [m for m in matches if len(m.get("inputs", [])) == n_args]
    if not matches:
        raise ConfigError(f"function {name!r} not found in ABI")
    if len(matches) > 1:
        raise ConfigError(f"function {name!r} is overloaded; use a full signature "
                          f"({', '.join(abi_to_signature(m) for m in matches)})")
    return matches[0]


# -------------------------
# Encoding
# -------------------------
def coerce(inp: ABIEntry, value: Any) -> Any:
    """Turn a JSON-ish script value into what web3 expects for this ABI input."""
    t = inp["type"]
    if t.endswith("]"):
        if not isinstance(value, (list, tuple)):
            raise ConfigError(f"expected a list for {t}, got {value!r}")
        base = dict(inp, type=t[:t.rindex("[")])
        return [coerce(base, v) for v in value]
    if t == "tuple":
        components = inp.get("components", [])
        if isinstance(value, dict):
            missing = [c.get("name") for c in components if c.get("name") not in value]
            if missing:
                raise ConfigError(f"tuple value is missing fields {missing}")
            return tuple(coerce(c, value[c["name"]]) for c in components)
        if not isinstance(value, (list, tuple)) or len(value) != len(components):
            raise ConfigError(f"expected {len(components)} tuple fields, got {value!r}")
        return tuple(coerce(c, v) for c, v in zip(components, value))
    if t == "address":
        return checksum(value, "address argument")
    if t.startswith(("uint", "int")):
        return parse_int(value, f"{t} argument")
    if t == "bool":
        if isinstance(value, str):
            if value.lower() not in ("true", "false"):
                raise ConfigError(f"invalid bool argument: {value!r}")
            return value.lower() == "true"
        return bool(value)
    if t.startswith("bytes"):
        try:
            raw = bytes(value) if isinstance(value, (bytes, bytearray)) else bytes(HexBytes(value))
        except (TypeError, ValueError):
            raise ConfigError(f"invalid {t} argument: {value!r}") from None
        if t == "bytes":
            return raw
        size = int(t[len("bytes"):])
        if len(raw) > size:
            raise ConfigError(f"{t} argument is {len(raw)} bytes long: {value!r}")
        # bytesN values are left-aligned
        return raw.ljust(size, b"\x00")
    if t == "string":
        return str(value)
    return value


def coerce_args(inputs: Sequence[ABIEntry], args: Sequence[Any]) -> List[Any]:
    if len(inputs) != len(args):
        raise ConfigError(f"expected {len(inputs)} arguments, got {len(args)}")
    return [coerce(inp, arg) for inp, arg in zip(inputs, args)]


def encode_call(fn: ABIEntry, args: Sequence[Any]) -> bytes:
    values = coerce_args(fn.get("inputs", []), args)
    # a one-entry ABI keeps overloaded names unambiguous
    contract = offline_web3().eth.contract(abi=[fn])
    try:
        data = contract.encode_abi(fn["name"], args=values)
    except (Web3Exception, EncodingError, TypeError, ValueError) as e:
        raise ConfigError(f"cannot encode {abi_to_signature(fn)} with {list(args)!r}: {e}") from None
    return bytes(HexBytes(data))


def encode_deploy(artifact: Artifact, args: Sequence[Any]) -> bytes:
    if artifact.bytecode in ("", "0x"):
        raise ConfigError(f"artifact {artifact.name!r} has no creation bytecode (abstract or interface?)")
    try:
        bytecode = HexBytes(artifact.bytecode)
    except ValueError:
        # unlinked library placeholders (__$...$__) end up here
        raise ConfigError(f"artifact {artifact.name!r} has unlinked or non-hex bytecode") from None
    values = coerce_args(artifact.constructor_inputs(), args)
    factory = offline_web3().eth.contract(abi=artifact.abi, bytecode=bytecode)
    try:
        data = factory.constructor(*values).data_in_transaction
    except (Web3Exception, EncodingError, TypeError, ValueError) as e:
        raise ConfigError(f"cannot encode constructor of {artifact.name!r} with {list(args)!r}: {e}") from None
    return bytes(HexBytes(data))


def decode_output(fn: ABIEntry, data: bytes) -> Optional[Tuple[Any, ...]]:
    outputs = fn.get("outputs") or []
    if not outputs or not data:
        return None
    try:
        values = decode(get_abi_output_types(fn), data)
    except (DecodingError, ValueError):
        return None
    return tuple(to_checksum_address(v) if o["type"] == "address" else v for o, v in zip(outputs, values))


def decode_revert(data: bytes, artifact: Optional[Artifact] = None) -> Optional[str]:
    """Human-readable reason for revert data, or None when there is none."""
    if len(data) < 4:
        return None
    sel, body = data[:4], data[4:]
    if sel == ERROR_STRING_SELECTOR:
        try:
            return decode(["string"], body)[0]
        except (DecodingError, ValueError):
            return f"Error(string) with undecodable payload 0x{body.hex()}"
    if sel == PANIC_SELECTOR:
        try:
            return f"panic 0x{decode(['uint256'], body)[0]:02x}"
        except (DecodingError, ValueError):
            return "panic"
    if artifact is not None:
        name = artifact.error_name(sel)
        if name:
            return name
    return f"custom error 0x{sel.hex()}"
