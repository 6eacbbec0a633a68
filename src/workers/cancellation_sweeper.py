#!/usr/bin/env python3
"""
Cancellation Sweeper

Responsibilities:
- Acquire a single global runner lease (crash-safe, takeover-capable)
- Fail workflows whose warehouse reply is past its SLA, with an escalation
- Resume workflows with a due retry, a decided approval or a stalled step

Notes:
- Every sweep is safe to repeat; step side effects are keyed and replay.
- Only the lease holder sweeps. A second process waits for takeover.
"""

from __future__ import annotations

import argparse
import logging
import os
import time
from typing import Optional

from cancellations.engine.factory import build_engine
from cancellations.engine.machine import WorkflowStateMachine
from cancellations.engine.models import default_runner_owner_id
from core.config import config
from core.observability.setup import init_observability

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_LEASE_HELD = 2


def run_sweeper(
    machine: WorkflowStateMachine,
    *,
    runner_name: str,
    owner_id: str,
    lease_seconds: int,
    interval_seconds: float,
    once: bool = False,
    max_sweeps: int = 0,
    sleep=time.sleep,
) -> int:
    """
    Sweep under the runner lease until `once`/`max_sweeps` says stop.

    Returns EXIT_LEASE_HELD when `once` is set and another runner holds the
    lease.
    """
    store = machine.store
    sweeps = 0
    try:
        while True:
            leased = store.acquire_runner_lease(
                runner_name=runner_name,
                owner_id=owner_id,
                lease_seconds=int(lease_seconds),
                pid=os.getpid(),
                host=os.uname().nodename,
            )
            if not leased:
                if once:
                    logger.info("Runner lease %s held by another process; exiting", runner_name)
                    return EXIT_LEASE_HELD
                sleep(interval_seconds)
                continue

            try:
                machine.sweep()
            except Exception:
                # One bad pass must not kill the runner; the next pass retries.
                logger.exception("Sweep pass failed")
            sweeps += 1

            if once:
                return EXIT_OK
            if max_sweeps and sweeps >= max_sweeps:
                return EXIT_OK
            sleep(interval_seconds)
    finally:
        store.release_runner_lease(runner_name=runner_name, owner_id=owner_id)


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Order cancellation sweeper")
    parser.add_argument("--runner-name", default=config.SWEEPER_RUNNER_NAME)
    parser.add_argument("--lease-seconds", type=int, default=config.SWEEPER_LEASE_SECONDS)
    parser.add_argument("--interval", type=float, default=config.SWEEP_INTERVAL_SECONDS, help="Seconds between sweeps")
    parser.add_argument("--owner-id", default="")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    parser.add_argument("--max-sweeps", type=int, default=0, help="Max sweeps before exit (0=unlimited)")
    args = parser.parse_args(argv)

    init_observability(config, service_name=f"{config.SERVICE_NAME}-sweeper")

    machine = build_engine(config)
    owner_id = (args.owner_id or "").strip() or default_runner_owner_id()

    logger.info(
        "Sweeper %s starting (owner=%s interval=%.1fs lease=%ds)",
        args.runner_name,
        owner_id,
        args.interval,
        args.lease_seconds,
    )
    try:
        return run_sweeper(
            machine,
            runner_name=str(args.runner_name),
            owner_id=owner_id,
            lease_seconds=int(args.lease_seconds),
            interval_seconds=max(0.1, float(args.interval)),
            once=bool(args.once),
            max_sweeps=int(args.max_sweeps),
        )
    except KeyboardInterrupt:
        logger.info("Sweeper interrupted")
        return EXIT_OK
    finally:
        if machine.http_client is not None:
            machine.http_client.close()


if __name__ == "__main__":
    raise SystemExit(main())
