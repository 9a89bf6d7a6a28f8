"""
Thin read client over a JSON-RPC node.

Every call goes through `rpc()`, which talks to the provider with
`make_request` and unwraps the JSON-RPC envelope itself, so that:
  - transient transport failures are retried with exponential backoff
    and end in TransportError once the budget is spent
  - other transport failures (401/403, provider errors) raise
    TransportError at once, and a malformed URL raises ConfigError
  - JSON-RPC error objects surface as RPCError (never retried)
  - anything that does not decode as promised raises DecodeError
"""

import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import requests
from eth_utils import to_checksum_address
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import Web3Exception

from .config import DEFAULT_BACKOFF, DEFAULT_RPC_RETRIES, NAMED_TAGS, BlockTag, Endpoint, checksum
from .errors import ConfigError, DecodeError, RPCError, TransportError

logger = logging.getLogger(__name__)

RECEIPT_TIMEOUT = 120
RECEIPT_POLL_INTERVAL = 0.2

BAD_URL_ERRORS = (
    requests.exceptions.MissingSchema,
    requests.exceptions.InvalidSchema,
    requests.exceptions.InvalidURL,
)


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, requests.exceptions.HTTPError):
        status = getattr(exc.response, "status_code", None)
        return status is not None and (status >= 500 or status == 429)
    return isinstance(exc, (requests.exceptions.ConnectionError,
                            requests.exceptions.Timeout,
                            ConnectionError,
                            TimeoutError))


def to_block_tag(tag: Optional[BlockTag]) -> str:
    if tag is None:
        return "latest"
    if isinstance(tag, bool):
        raise ConfigError(f"invalid block tag: {tag!r}")
    if isinstance(tag, int):
        if tag < 0:
            raise ConfigError(f"invalid block tag: {tag!r}")
        return hex(tag)
    text = str(tag).strip().lower()
    if text in NAMED_TAGS:
        return text
    try:
        return hex(int(text, 0))
    except ValueError:
        raise ConfigError(f"invalid block tag: {tag!r}") from None


def decode_data(value: Any, what: str) -> bytes:
    if not isinstance(value, str) or not value[:2].lower() == "0x":
        raise DecodeError(f"{what}: expected 0x-prefixed hex, got {value!r}")
    body = value[2:]
    if len(body) % 2:
        raise DecodeError(f"{what}: odd-length hex {value!r}")
    try:
        return bytes(HexBytes(value))
    except ValueError:
        raise DecodeError(f"{what}: non-hex data {value!r}") from None


def decode_quantity(value: Any, what: str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if not isinstance(value, str) or not value[:2].lower() == "0x":
        raise DecodeError(f"{what}: expected hex quantity, got {value!r}")
    try:
        return int(value, 16)
    except ValueError:
        raise DecodeError(f"{what}: non-hex quantity {value!r}") from None


class LedgerClient:
    def __init__(self, w3: Web3, retries: int = DEFAULT_RPC_RETRIES, backoff: float = DEFAULT_BACKOFF,
                 sleep: Callable[[float], None] = time.sleep, label: Optional[str] = None):
        self.w3 = w3
        self.retries = retries
        self.backoff = backoff
        self.sleep = sleep
        self.label = label or "node"

    @classmethod
    def connect(cls, endpoint: Endpoint, retries: int = DEFAULT_RPC_RETRIES, **kwargs) -> "LedgerClient":
        # web3's own retry layer is disabled; the budget here is the only one
        provider = Web3.HTTPProvider(
            endpoint.url,
            request_kwargs={"timeout": endpoint.timeout, "headers": endpoint.headers()},
            exception_retry_configuration=None,
        )
        return cls(Web3(provider), retries=retries, label=endpoint.url, **kwargs)

    # -------------------------
    # Raw call
    # -------------------------
    def rpc(self, method: str, params: Optional[Sequence[Any]] = None) -> Any:
        params = list(params or [])
        last_exc: Optional[BaseException] = None
        for attempt in range(self.retries + 1):
            try:
                response = self.w3.provider.make_request(method, params)
            except BAD_URL_ERRORS as e:
                raise ConfigError(f"invalid RPC URL {self.label!r}: {e}") from e
            except Exception as e:
                if not is_transient(e):
                    if isinstance(e, (requests.exceptions.RequestException, Web3Exception)):
                        # 401/403, bad TLS, provider errors: retrying will not help
                        raise TransportError(f"{method} on {self.label} failed", cause=e, attempts=attempt + 1) from e
                    raise
                last_exc = e
                if attempt < self.retries:
                    delay = self.backoff * (2 ** attempt)
                    logger.warning("%s on %s failed (%r); retry %d/%d in %.2fs",
                                   method, self.label, e, attempt + 1, self.retries, delay)
                    self.sleep(delay)
                continue
            return self._unwrap(method, response)
        raise TransportError(f"{method} on {self.label} failed", cause=last_exc, attempts=self.retries + 1)

    @staticmethod
    def _unwrap(method: str, response: Any) -> Any:
        if not isinstance(response, dict):
            raise DecodeError(f"{method}: malformed response {response!r}")
        error = response.get("error")
        if error:
            if isinstance(error, dict):
                raise RPCError(method, error.get("code"), str(error.get("message", "")), error.get("data"))
            raise RPCError(method, None, str(error))
        if "result" not in response:
            raise DecodeError(f"{method}: response has no result")
        return response["result"]

    # -------------------------
    # Reads
    # -------------------------
    def read_storage_slot(self, address: str, slot: int, block_tag: Optional[BlockTag] = "latest") -> bytes:
        result = self.rpc("eth_getStorageAt", [checksum(address), hex(slot), to_block_tag(block_tag)])
        value = decode_data(result, f"eth_getStorageAt({hex(slot)})")
        if len(value) != 32:
            raise DecodeError(f"eth_getStorageAt({hex(slot)}): expected 32 bytes, got {len(value)}")
        return value

    def read_code(self, address: str, block_tag: Optional[BlockTag] = "latest") -> bytes:
        result = self.rpc("eth_getCode", [checksum(address), to_block_tag(block_tag)])
        return decode_data(result, "eth_getCode")

    def get_block(self, block_tag: Optional[BlockTag] = "latest") -> Optional[Dict[str, Any]]:
        result = self.rpc("eth_getBlockByNumber", [to_block_tag(block_tag), False])
        if result is None:
            return None
        if not isinstance(result, dict):
            raise DecodeError(f"eth_getBlockByNumber: malformed block {result!r}")
        return {
            "number": decode_quantity(result.get("number"), "block.number"),
            "timestamp": decode_quantity(result.get("timestamp"), "block.timestamp"),
            "hash": result.get("hash"),
        }

    def get_balance(self, address: str, block_tag: Optional[BlockTag] = "latest") -> int:
        return decode_quantity(self.rpc("eth_getBalance", [checksum(address), to_block_tag(block_tag)]), "eth_getBalance")

    def block_number(self) -> int:
        return decode_quantity(self.rpc("eth_blockNumber"), "eth_blockNumber")

    def scan_slots(self, address: str, slots: Iterable[int], block_tag: Optional[BlockTag] = "latest") -> List[Tuple[int, bytes]]:
        return [(slot, self.read_storage_slot(address, slot, block_tag)) for slot in slots]

    # -------------------------
    # Receipts
    # -------------------------
    def wait_for_receipt(self, tx_hash: str, timeout: float = RECEIPT_TIMEOUT,
                         poll_interval: float = RECEIPT_POLL_INTERVAL) -> Dict[str, Any]:
        start = time.monotonic()
        while True:
            receipt = self.rpc("eth_getTransactionReceipt", [tx_hash])
            if receipt:
                if not isinstance(receipt, dict):
                    raise DecodeError(f"eth_getTransactionReceipt: malformed receipt {receipt!r}")
                address = receipt.get("contractAddress")
                return {
                    "status": decode_quantity(receipt.get("status", "0x0"), "receipt.status"),
                    "gas_used": decode_quantity(receipt.get("gasUsed", "0x0"), "receipt.gasUsed"),
                    "contract_address": to_checksum_address(address) if address else None,
                    "block_number": decode_quantity(receipt.get("blockNumber", "0x0"), "receipt.blockNumber"),
                }
            if time.monotonic() - start > timeout:
                raise TransportError(f"timeout waiting for receipt {tx_hash} on {self.label}")
            self.sleep(poll_interval)
