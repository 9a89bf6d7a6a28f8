"""
Error taxonomy for the probe harness.

Only TransportError is retried (by the ledger client). Everything else
propagates to the caller with enough context to reproduce the failure
without re-running.
"""

from typing import Any, List, Optional


class ProbeError(Exception):
    """Base class for every error raised by reinit_probe."""


class ConfigError(ProbeError):
    """Malformed call script, bad flag/env value or missing artifact."""


class TransportError(ProbeError):
    def __init__(self, message: str, cause: Optional[BaseException] = None, attempts: int = 0):
        super().__init__(message)
        self.cause = cause
        self.attempts = attempts

    def __str__(self):
        base = super().__str__()
        if self.cause is not None:
            return f"{base} (after {self.attempts} attempts: {self.cause!r})"
        return base


class DecodeError(ProbeError):
    """Upstream returned something that is not what the method promises."""


class RPCError(ProbeError):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, method: str, code: Any, message: str, data: Any = None):
        super().__init__(f"{method} failed: [{code}] {message}")
        self.method = method
        self.code = code
        self.message = message
        self.data = data


class ForkUnavailableError(ProbeError):
    def __init__(self, message: str, endpoint: Optional[str] = None, block_height: Optional[int] = None):
        super().__init__(message)
        self.endpoint = endpoint
        self.block_height = block_height


class StepFailedError(ProbeError):
    """A call step failed and the sequence halted on it."""

    def __init__(self, step_index: int, reason: str, results: Optional[List[Any]] = None, target: Optional[str] = None):
        super().__init__(f"step {step_index} failed: {reason}")
        self.step_index = step_index
        self.reason = reason
        self.results = list(results or [])
        self.target = target


class ProbeTimeoutError(ProbeError):
    """A probe run hit its wall-clock ceiling or was cancelled."""
