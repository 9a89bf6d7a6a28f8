"""Probe upgradeable contracts for initializers that can be called twice."""

from .config import Endpoint, ProbeConfig, load_config
from .errors import (
    ConfigError,
    DecodeError,
    ForkUnavailableError,
    ProbeError,
    ProbeTimeoutError,
    RPCError,
    StepFailedError,
    TransportError,
)
from .fork import AnvilBackend, ForkSession, ForkSessionManager
from .ledger import LedgerClient
from .probe import Evidence, InitializerProbe, ProbeJob, ProbeRunner, ProbeVerdict, Verdict
from .report import render, render_json
from .sequencer import CallResult, CallSequencer, CallStep

__version__ = "0.1.0"
