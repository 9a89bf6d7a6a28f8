"""
Configuration for the probe harness.

Values come from CLI flags layered over environment variables. A `.env`
file in the working directory is loaded first (python-dotenv), so the usual
setup is:

    RPC_URL=https://eth-mainnet.g.alchemy.com/v2/KEY
    PROBE_TARGET=0x868964b90589d1695c08cd54dcd44092929662f9
    PROBE_BLOCK=latest
    ARTIFACT_DIR=./out
    ATTACKER_PRIVATE_KEY=0x...
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Union

from dotenv import load_dotenv
from eth_account import Account
from eth_utils import is_address, to_checksum_address

from .errors import ConfigError

# -------------------------
# Defaults
# -------------------------
DEFAULT_RPC_TIMEOUT = 30.0
DEFAULT_RPC_RETRIES = 3
DEFAULT_BACKOFF = 0.5
DEFAULT_PROBE_TIMEOUT = 300.0
DEFAULT_ARTIFACT_DIR = "./out"
DEFAULT_ANVIL_BIN = "anvil"
# anvil's first dev account; only meaningful on a fork where it is impersonated
DEFAULT_CALLER = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
# 100 ether, given to impersonated callers that hold nothing on the fork
DEFAULT_CALLER_BALANCE = 100 * 10**18

BlockTag = Union[int, str]
NAMED_TAGS = ("latest", "pending", "earliest", "safe", "finalized")


@dataclass(frozen=True)
class Endpoint:
    url: str
    auth_token: Optional[str] = field(default=None, repr=False)
    timeout: float = DEFAULT_RPC_TIMEOUT

    def headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers


@dataclass(frozen=True)
class ProbeConfig:
    endpoint: Endpoint
    target: Optional[str] = None
    block: Optional[int] = None  # None means "latest" at open time
    script_path: Optional[str] = None
    artifact_dir: str = DEFAULT_ARTIFACT_DIR
    caller: str = DEFAULT_CALLER
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    rpc_retries: int = DEFAULT_RPC_RETRIES
    anvil_bin: str = DEFAULT_ANVIL_BIN


# -------------------------
# Parsing helpers
# -------------------------
def checksum(addr: str, what: str = "address") -> str:
    if not isinstance(addr, str) or not is_address(addr):
        raise ConfigError(f"invalid {what}: {addr!r}")
    return to_checksum_address(addr)


def parse_int(value: Union[int, str], what: str = "value") -> int:
    # Accept decimal or hex (e.g. "5" or "0x5")
    if isinstance(value, bool):
        raise ConfigError(f"invalid {what}: {value!r}")
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip(), 0)
    except ValueError:
        raise ConfigError(f"invalid {what}: {value!r}") from None


def parse_slot(value: Union[int, str]) -> int:
    slot = parse_int(value, "slot")
    if slot < 0 or slot >= 2**256:
        raise ConfigError(f"slot out of range [0, 2^256): {value!r}")
    return slot


def parse_block(value: Optional[Union[int, str]]) -> Optional[int]:
    """Block height from a flag/env value. "latest" (or nothing) maps to None."""
    if value is None or (isinstance(value, str) and value.strip().lower() in ("", "latest")):
        return None
    height = parse_int(value, "block height")
    if height < 0:
        raise ConfigError(f"block height must be >= 0, got {height}")
    return height


def parse_float(value: Union[float, str], what: str) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"invalid {what}: {value!r}") from None
    if parsed <= 0:
        raise ConfigError(f"{what} must be > 0, got {parsed}")
    return parsed


def caller_from_env(env: Mapping[str, str]) -> str:
    """PROBE_CALLER wins; otherwise derive the address from ATTACKER_PRIVATE_KEY."""
    if env.get("PROBE_CALLER"):
        return checksum(env["PROBE_CALLER"], "PROBE_CALLER")
    key = env.get("ATTACKER_PRIVATE_KEY", "").strip()
    if key:
        try:
            return Account.from_key(key).address
        except (ValueError, TypeError) as e:
            raise ConfigError(f"invalid ATTACKER_PRIVATE_KEY: {e}") from None
    return DEFAULT_CALLER


def load_config(overrides: Optional[Mapping[str, object]] = None,
                env: Optional[Mapping[str, str]] = None,
                dotenv: bool = True) -> ProbeConfig:
    """
    Build a ProbeConfig from the environment, then apply non-None overrides
    (normally the parsed CLI flags) on top.
    """
    if env is None:
        if dotenv:
            load_dotenv()
        env = os.environ
    overrides = {k: v for k, v in (overrides or {}).items() if v is not None}

    url = overrides.get("rpc") or env.get("RPC_URL")
    if not url:
        raise ConfigError("RPC URL required (--rpc or RPC_URL)")

    endpoint = Endpoint(
        url=str(url),
        auth_token=overrides.get("auth_token") or env.get("RPC_AUTH_TOKEN") or None,
        timeout=parse_float(overrides.get("rpc_timeout", env.get("RPC_TIMEOUT", DEFAULT_RPC_TIMEOUT)), "RPC timeout"),
    )

    target = overrides.get("target") or env.get("PROBE_TARGET")
    caller = overrides.get("caller")

    retries = parse_int(overrides.get("rpc_retries", env.get("RPC_RETRIES", DEFAULT_RPC_RETRIES)), "RPC retries")
    if retries < 0:
        raise ConfigError(f"RPC retries must be >= 0, got {retries}")

    return ProbeConfig(
        endpoint=endpoint,
        target=checksum(str(target), "target address") if target else None,
        block=parse_block(overrides.get("block", env.get("PROBE_BLOCK"))),
        script_path=overrides.get("script") or env.get("PROBE_SCRIPT"),
        artifact_dir=str(overrides.get("artifacts") or env.get("ARTIFACT_DIR") or DEFAULT_ARTIFACT_DIR),
        caller=checksum(str(caller), "caller") if caller else caller_from_env(env),
        probe_timeout=parse_float(overrides.get("timeout", env.get("PROBE_TIMEOUT", DEFAULT_PROBE_TIMEOUT)), "probe timeout"),
        rpc_retries=retries,
        anvil_bin=str(overrides.get("anvil_bin") or env.get("ANVIL_BIN") or DEFAULT_ANVIL_BIN),
    )
