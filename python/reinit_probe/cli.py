#!/usr/bin/env python3
"""
reinit-probe command line.

  reinit-probe probe --rpc URL --target 0x... --block latest --script scenario.json
  reinit-probe slots 0x868964B90589D1695C08CD54dCD44092929662F9 98-140 --rpc URL

Exit codes (probe):
  0  REINIT_BLOCKED or INCONCLUSIVE (run completed)
  1  REINIT_SUCCEEDED
  2  configuration / call-script error
  3  transport, decode, fork, step or timeout error

The report goes to stdout, logs go to stderr.
"""

import argparse
import json
import logging
import os
import sys
import time
from typing import List, Optional

from .artifacts import ArtifactStore
from .config import checksum, load_config, parse_block, parse_slot
from .errors import ConfigError, ForkUnavailableError, ProbeError, StepFailedError
from .fork import AnvilBackend, ForkSessionManager
from .ledger import LedgerClient
from .probe import ProbeJob, ProbeRunner
from .report import render, render_json, render_step
from .script import load_script

logger = logging.getLogger("reinit_probe")

EXIT_OK = 0
EXIT_REINIT_SUCCEEDED = 1
EXIT_CONFIG = 2
EXIT_RUNTIME = 3

MAX_SLOT_RANGE = 5000


def setup_logging(verbose: bool = False) -> None:
    handler = logging.StreamHandler(sys.stderr)
    formatter = logging.Formatter("[%(asctime)s] %(levelname)s %(message)s", "%Y-%m-%d %H:%M:%S")
    formatter.converter = time.gmtime
    handler.setFormatter(formatter)
    logger.handlers[:] = [handler]
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False


def parse_slot_ranges(arg: str) -> List[int]:
    """
    Accepts:
      - comma list: "0,1,0x2,5"
      - range: "98-140" (inclusive)
      - mix: "0-3,0x10,25"
    """
    slots: List[int] = []
    for chunk in arg.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        if "-" in chunk:
            a, b = chunk.split("-", 1)
            lo, hi = sorted((parse_slot(a), parse_slot(b)))
            if hi - lo >= MAX_SLOT_RANGE:
                raise ConfigError(f"slot range {chunk} is wider than {MAX_SLOT_RANGE} slots")
            slots.extend(range(lo, hi + 1))
        else:
            slots.append(parse_slot(chunk))
    if not slots:
        raise ConfigError(f"no slots in {arg!r}")
    # de-dup while preserving order
    return list(dict.fromkeys(slots))


def save_json(obj, path: str) -> None:
    tmp = path + ".tmp"
    with open(tmp, "w") as f:
        json.dump(obj, f, indent=2, sort_keys=True)
    os.replace(tmp, path)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="reinit-probe",
                                 description="Probe upgradeable contracts for replayable initializers on a forked chain.")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("probe", help="Replay a call script against a fork and classify the initializer")
    p.add_argument("--rpc", help="Upstream RPC URL (default: RPC_URL env)")
    p.add_argument("--auth-token", help="Bearer token for the RPC (default: RPC_AUTH_TOKEN env)")
    p.add_argument("--target", help="Target contract address (default: script 'target' or PROBE_TARGET env)")
    p.add_argument("--block", help="Fork height or 'latest' (default: PROBE_BLOCK env or latest)")
    p.add_argument("--script", help="Path to the call script JSON (default: PROBE_SCRIPT env)")
    p.add_argument("--artifacts", help="Compiled artifact directory (default: ARTIFACT_DIR env or ./out)")
    p.add_argument("--caller", help="Default caller address for steps")
    p.add_argument("--timeout", type=float, help="Wall-clock ceiling for the run in seconds")
    p.add_argument("--rpc-timeout", type=float, help="Per-call RPC timeout in seconds")
    p.add_argument("--anvil-bin", help="anvil binary (default: ANVIL_BIN env or 'anvil')")
    p.add_argument("--json", action="store_true", help="Print the report as JSON")
    p.add_argument("--report-out", help="Also write the JSON report to this path")

    s = sub.add_parser("slots", help="Dump raw storage slots of a contract")
    s.add_argument("address", help="Contract address (0x...)")
    s.add_argument("slots", help="Slots to read: '98-140', '0,1,0x2' or a mix")
    s.add_argument("--rpc", help="RPC URL (default: RPC_URL env)")
    s.add_argument("--auth-token", help="Bearer token for the RPC (default: RPC_AUTH_TOKEN env)")
    s.add_argument("--block", default="latest", help="Block height or 'latest'")
    return ap


def cmd_probe(args, manager: Optional[ForkSessionManager] = None) -> int:
    config = load_config({
        "rpc": args.rpc, "auth_token": args.auth_token, "target": args.target, "block": args.block,
        "script": args.script, "artifacts": args.artifacts, "timeout": args.timeout,
        "rpc_timeout": args.rpc_timeout, "anvil_bin": args.anvil_bin,
    })
    if not config.script_path:
        raise ConfigError("call script required (--script or PROBE_SCRIPT)")

    artifacts = ArtifactStore(config.artifact_dir)
    script = load_script(config.script_path, artifacts)
    target = config.target or script.target
    if not target:
        raise ConfigError("target address required (--target, PROBE_TARGET or script 'target')")
    if args.caller:
        caller = checksum(args.caller, "caller")
    else:
        caller = script.caller or config.caller

    if manager is None:
        manager = ForkSessionManager(
            AnvilBackend(config.anvil_bin, retries=config.rpc_retries),
            upstream_factory=lambda ep: LedgerClient.connect(ep, retries=config.rpc_retries),
        )
    runner = ProbeRunner(manager, artifacts, default_caller=caller, timeout=config.probe_timeout)
    job = ProbeJob(endpoint=config.endpoint, target=target, initializer=script.initializer,
                   marker=script.marker, block=config.block, setup=script.setup,
                   tracked_slots=script.tracked_slots)

    logger.info("Probing %s at block %s via %s", target,
                config.block if config.block is not None else "latest", config.endpoint.url)
    verdict = runner.run(job)

    report = render_json(verdict, verdict.log)
    print(json.dumps(report, indent=2) if args.json else render(verdict, verdict.log), flush=True)
    if args.report_out:
        save_json(report, args.report_out)
        logger.info("Saved report %s", args.report_out)
    return EXIT_REINIT_SUCCEEDED if verdict.succeeded else EXIT_OK


def cmd_slots(args, client: Optional[LedgerClient] = None) -> int:
    config = load_config({"rpc": args.rpc, "auth_token": args.auth_token})
    address = checksum(args.address, "address")
    slots = parse_slot_ranges(args.slots)
    block = parse_block(args.block)
    if client is None:
        client = LedgerClient.connect(config.endpoint, retries=config.rpc_retries)
    for slot, value in client.scan_slots(address, slots, block if block is not None else "latest"):
        print(f"0x{value.hex()} {slot}", flush=True)
    return EXIT_OK


def main(argv: Optional[List[str]] = None, manager: Optional[ForkSessionManager] = None,
         client: Optional[LedgerClient] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    try:
        if args.command == "probe":
            return cmd_probe(args, manager)
        return cmd_slots(args, client)
    except ConfigError as e:
        logger.error("Config error: %s", e)
        return EXIT_CONFIG
    except StepFailedError as e:
        logger.error("Step %d failed (target %s): %s", e.step_index, e.target, e.reason)
        for result in e.results:
            logger.error(render_step(result).strip())
        return EXIT_RUNTIME
    except ForkUnavailableError as e:
        logger.error("Fork unavailable at block %s of %s: %s", e.block_height, e.endpoint, e)
        return EXIT_RUNTIME
    except ProbeError as e:
        logger.error("%s: %s", type(e).__name__, e)
        return EXIT_RUNTIME


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
