from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal

import httpx
import uvicorn

from genserve.autoscaling import (
    AutoscalingController,
    AutoscalingStateStore,
    HttpReplicaProbe,
    ScalingDecision,
)
from genserve.config import ServerConfig
from genserve.errors import ConfigurationError
from genserve.gateway import create_app
from genserve.telemetry import Telemetry

logger = logging.getLogger(__name__)


def _serve(args: argparse.Namespace) -> None:
    config = ServerConfig.from_env()
    uvicorn.run(create_app(config), host=args.host, port=args.port, log_level=args.log_level.lower())


async def _autoscale(args: argparse.Namespace) -> None:
    config = ServerConfig.from_env()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    async def report(decision: ScalingDecision) -> None:
        print(
            json.dumps(
                {
                    "previous_replicas": decision.previous_replicas,
                    "desired_replicas": decision.desired_replicas,
                    "average_ongoing_requests": round(decision.average_ongoing_requests, 3),
                    "reason": decision.reason,
                }
            ),
            flush=True,
        )

    async with httpx.AsyncClient(timeout=args.probe_timeout) as client:
        controller = AutoscalingController(
            policy=config.autoscaling,
            telemetry=Telemetry(),
            on_decision=report,
            state_store=AutoscalingStateStore(args.state_file) if args.state_file else None,
        )
        for spec in args.replica:
            replica_id, _, base_url = spec.partition("=")
            if not base_url:
                raise ConfigurationError(f"--replica expects NAME=URL, got {spec!r}")
            controller.register(HttpReplicaProbe(replica_id, base_url, client))

        await controller.start()
        await stop.wait()
        await controller.stop()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="genserve", description="Text-generation replica tooling.")
    parser.add_argument("--log-level", default="INFO")
    subcommands = parser.add_subparsers(dest="command", required=True)

    serve = subcommands.add_parser("serve", help="Run one serving replica.")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    autoscale = subcommands.add_parser("autoscale", help="Recommend replica counts from replica load.")
    autoscale.add_argument(
        "--replica",
        action="append",
        default=[],
        help="Replica to probe as NAME=BASE_URL; repeatable.",
    )
    autoscale.add_argument("--state-file", default=None, help="JSON file persisting timer state.")
    autoscale.add_argument("--probe-timeout", type=float, default=2.0)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "serve":
            _serve(args)
        else:
            asyncio.run(_autoscale(args))
    except ConfigurationError as exc:
        raise SystemExit(f"configuration error: {exc}") from exc


if __name__ == "__main__":
    main()
