#!/usr/bin/env python3
"""
Convergence Harness - Main Entry Point

Runs the scenario suite against a reconciler.
- default: endpoints and credentials from the environment (HarnessConfig.from_env)
- --local: starts the simulator API, the reference reconciler and an SSH
  stand-in in this process and runs against those

Exit code: 0 clean, 1 the reconciler misbehaved, 2 the environment did.
"""

import argparse
import json
import logging
import signal
import sys
import threading
from typing import List, Optional

from .clients.provider_client import ProviderClient
from .clients.store_client import ObjectStoreClient
from .config import HarnessConfig
from .diagnostics import EXIT_ENVIRONMENT, RunReport, ScenarioResult, configure_logging
from .errors import ConfigError, SetupError, WaitCancelled
from .poller import Poller
from .scenarios import SCENARIOS, ScenarioEnvironment, run_scenario, select

logger = logging.getLogger("convergence_harness.main")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="convergence-harness", description=__doc__.split("\n\n")[0].strip())
    parser.add_argument("--local", action="store_true", help="run against an in-process simulator")
    parser.add_argument(
        "--scenario",
        action="append",
        default=[],
        metavar="NAME",
        help="scenario name or tag to run (repeatable; default: all)",
    )
    parser.add_argument("--list", action="store_true", help="list scenarios and exit")
    parser.add_argument("--deadline", type=float, default=None, help="cancel all waits after this many seconds")
    parser.add_argument("--report-json", default=None, help="also write the run report as JSON to this path")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser


def run_suite(config: HarnessConfig, names: List[str], cancel: threading.Event) -> RunReport:
    store = ObjectStoreClient(config.store_url, timeout=config.request_timeout)
    provider = ProviderClient(config.provider_url, timeout=config.request_timeout)
    env = ScenarioEnvironment(
        config=config,
        store=store,
        provider=provider,
        poller=Poller(max_fetch_errors=config.max_fetch_errors, cancel=cancel),
    )
    report = RunReport()
    try:
        for scenario in select(names):
            if cancel.is_set():
                logger.warning("Suite cancelled, skipping scenario %s", scenario.name)
                error = WaitCancelled("suite cancelled before the scenario started")
                report.add(ScenarioResult(name=scenario.name, passed=False, error=error, skipped=True))
                continue
            report.add(run_scenario(scenario, env))
    finally:
        store.close()
        provider.close()
    return report


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(getattr(logging, args.log_level))

    if args.list:
        for scenario in SCENARIOS.values():
            print(f"{scenario.name:40s} {scenario.description} [{', '.join(scenario.tags)}]")
        return 0

    print("=" * 60)
    print("  Convergence Harness")
    print("=" * 60)

    cancel = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: cancel.set())
    if args.deadline:
        timer = threading.Timer(args.deadline, cancel.set)
        timer.daemon = True
        timer.start()

    local = None
    try:
        if args.local:
            from .simulator.local import LocalEnvironment

            local = LocalEnvironment()
            config = local.start()
            print(f"  ✓ Local simulator started at {local.base_url}")
        else:
            config = HarnessConfig.from_env().validate()
        report = run_suite(config, args.scenario, cancel)
    except (ConfigError, SetupError, KeyError) as e:
        logger.error("Cannot run the suite: %s", e)
        return EXIT_ENVIRONMENT
    finally:
        if local is not None:
            local.stop()

    print(report.render())
    if args.report_json:
        with open(args.report_json, "w") as f:
            json.dump(report.to_dict(), f, indent=2)
    return report.exit_code()


if __name__ == "__main__":
    sys.exit(main())
