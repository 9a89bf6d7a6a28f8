"""
Fork sessions: isolated, disposable copies of chain state at one height.

Each session is backed by its own fork node (anvil by default), so writes
made inside a session land in that node's overlay and never reach the
source endpoint. Sessions are closed on every exit path; closing twice is
a no-op.
"""

import logging
import shutil
import socket
import subprocess
import tempfile
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import IO, Any, Callable, Dict, Iterator, Optional, Tuple

from .config import DEFAULT_ANVIL_BIN, DEFAULT_RPC_RETRIES, Endpoint, checksum
from .errors import ForkUnavailableError, ProbeError, RPCError
from .ledger import LedgerClient

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
ANVIL_STARTUP_TIMEOUT = 30.0
ANVIL_STOP_TIMEOUT = 5.0


@dataclass
class ForkSession:
    session_id: str
    endpoint: Endpoint
    block_height: int
    client: LedgerClient = field(repr=False)
    handle: Any = field(default=None, repr=False)
    closed: bool = False

    @property
    def block_tag(self) -> str:
        return hex(self.block_height)

    def _live_client(self) -> LedgerClient:
        if self.closed:
            raise ForkUnavailableError(f"session {self.session_id} is closed",
                                       endpoint=self.endpoint.url, block_height=self.block_height)
        return self.client

    # -------------------------
    # Overlay writes (anvil cheat RPCs)
    # -------------------------
    def impersonate(self, address: str) -> None:
        self._live_client().rpc("anvil_impersonateAccount", [checksum(address)])

    def set_balance(self, address: str, wei: int) -> None:
        self._live_client().rpc("anvil_setBalance", [checksum(address), hex(wei)])

    def set_code(self, address: str, code: bytes) -> None:
        self._live_client().rpc("anvil_setCode", [checksum(address), "0x" + code.hex()])

    def set_storage(self, address: str, slot: int, value: bytes) -> None:
        self._live_client().rpc("anvil_setStorageAt", [checksum(address), hex(slot), "0x" + value.rjust(32, b"\x00").hex()])


# -------------------------
# Backends
# -------------------------
def find_free_port(host: str = "127.0.0.1") -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


@dataclass
class AnvilProcess:
    proc: subprocess.Popen
    log: IO[str]  # anvil's stderr, read back only when it dies early

    def stderr_tail(self, limit: int = 500) -> str:
        self.log.seek(0)
        return self.log.read().strip()[-limit:]


class AnvilBackend:
    """Spawns one `anvil --fork-url` process per session."""

    def __init__(self, binary: str = DEFAULT_ANVIL_BIN, host: str = "127.0.0.1",
                 startup_timeout: float = ANVIL_STARTUP_TIMEOUT, retries: int = DEFAULT_RPC_RETRIES):
        self.binary = binary
        self.host = host
        self.startup_timeout = startup_timeout
        self.retries = retries

    def command(self, endpoint: Endpoint, block_height: int, port: int):
        cmd = [
            self.binary,
            "--fork-url", endpoint.url,
            "--fork-block-number", str(block_height),
            "--host", self.host,
            "--port", str(port),
            "--silent",
        ]
        if endpoint.auth_token:
            cmd += ["--fork-header", f"Authorization: Bearer {endpoint.auth_token}"]
        return cmd

    def start(self, endpoint: Endpoint, block_height: int) -> Tuple[LedgerClient, AnvilProcess]:
        if shutil.which(self.binary) is None:
            raise ForkUnavailableError(f"fork backend binary {self.binary!r} not found in PATH",
                                       endpoint=endpoint.url, block_height=block_height)
        port = find_free_port(self.host)
        log = tempfile.TemporaryFile(mode="w+")
        proc = subprocess.Popen(self.command(endpoint, block_height, port),
                                stdout=subprocess.DEVNULL, stderr=log, text=True)
        handle = AnvilProcess(proc, log)
        local = Endpoint(url=f"http://{self.host}:{port}", timeout=endpoint.timeout)
        client = LedgerClient.connect(local, retries=self.retries)

        deadline = time.monotonic() + self.startup_timeout
        while True:
            if proc.poll() is not None:
                stderr = handle.stderr_tail()
                log.close()
                raise ForkUnavailableError(f"anvil exited with code {proc.returncode}: {stderr}",
                                           endpoint=endpoint.url, block_height=block_height)
            try:
                probe = LedgerClient(client.w3, retries=0, label=local.url)
                if probe.block_number() >= block_height:
                    return client, handle
            except ProbeError:
                pass
            if time.monotonic() > deadline:
                self.stop(handle)
                raise ForkUnavailableError(f"anvil did not come up within {self.startup_timeout:.0f}s",
                                           endpoint=endpoint.url, block_height=block_height)
            time.sleep(0.1)

    def stop(self, handle: AnvilProcess) -> None:
        proc = handle.proc
        try:
            if proc.poll() is not None:
                return
            proc.terminate()
            try:
                proc.wait(timeout=ANVIL_STOP_TIMEOUT)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
        finally:
            handle.log.close()


# -------------------------
# Manager
# -------------------------
class ForkSessionManager:
    def __init__(self, backend=None,
                 upstream_factory: Optional[Callable[[Endpoint], LedgerClient]] = None):
        self.backend = backend if backend is not None else AnvilBackend()
        self.upstream_factory = upstream_factory or LedgerClient.connect
        self._lock = threading.Lock()
        self._sessions: Dict[str, ForkSession] = {}

    def resolve_height(self, upstream: LedgerClient, endpoint: Endpoint, block_height: Optional[int]) -> int:
        head = upstream.block_number()
        if block_height is None:
            return head
        if block_height > head:
            raise ForkUnavailableError(f"block {block_height} is beyond chain head {head}",
                                       endpoint=endpoint.url, block_height=block_height)
        return block_height

    def open(self, endpoint: Endpoint, block_height: Optional[int] = None) -> ForkSession:
        upstream = self.upstream_factory(endpoint)
        height = self.resolve_height(upstream, endpoint, block_height)

        block = upstream.get_block(height)
        if block is None:
            raise ForkUnavailableError(f"upstream does not know block {height}",
                                       endpoint=endpoint.url, block_height=height)
        try:
            # non-archive nodes refuse state reads this far back
            upstream.get_balance(ZERO_ADDRESS, height)
        except RPCError as e:
            raise ForkUnavailableError(f"upstream cannot serve state at block {height}: {e.message}",
                                       endpoint=endpoint.url, block_height=height) from e

        client, handle = self.backend.start(endpoint, height)
        session = ForkSession(session_id=uuid.uuid4().hex[:12], endpoint=endpoint,
                              block_height=height, client=client, handle=handle)
        with self._lock:
            self._sessions[session.session_id] = session
        logger.info("Opened fork session %s at block %d (timestamp %d)", session.session_id, height, block["timestamp"])
        return session

    def close(self, session: ForkSession) -> None:
        with self._lock:
            if session.closed:
                return
            session.closed = True
            self._sessions.pop(session.session_id, None)
        try:
            self.backend.stop(session.handle)
        finally:
            logger.info("Closed fork session %s", session.session_id)

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            self.close(session)

    @property
    def open_sessions(self) -> int:
        with self._lock:
            return len(self._sessions)

    @contextmanager
    def session(self, endpoint: Endpoint, block_height: Optional[int] = None) -> Iterator[ForkSession]:
        session = self.open(endpoint, block_height)
        try:
            yield session
        finally:
            self.close(session)
