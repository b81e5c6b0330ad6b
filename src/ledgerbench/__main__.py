import argparse
import asyncio
import logging
import sys
from pathlib import Path

import uvicorn

import ledgerbench.constants as C
from ledgerbench.app import create_app
from ledgerbench.config import Settings, apply_overrides, load_config
from ledgerbench.errors import SetupFailure
from ledgerbench.harness import BenchmarkRun
from ledgerbench.ledger import open_backend
from ledgerbench.logging_config import setup_logging
from ledgerbench.report import JsonLinesSink
from ledgerbench.ws import HeadTracker

log = logging.getLogger("ledgerbench.cli")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="ledgerbench", description="Ledger throughput benchmark and verifier.")
    parser.add_argument("-c", "--config", type=Path, help="TOML file overriding the packaged defaults.")
    parser.add_argument("-b", "--backend", choices=[b.value for b in C.Backend], help="Ledger backend.")
    parser.add_argument("-u", "--rpc-url", help="Ledger RPC endpoint.")
    parser.add_argument("-w", "--ws-url", help="New-heads websocket endpoint.")
    parser.add_argument("-k", "--keys-file", help="JSON file with sender credentials.")
    parser.add_argument("-l", "--log-level", help="Override LOG_LEVEL.")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one benchmark and print the report as JSON.")
    run.add_argument("-s", "--strategy", choices=[s.value for s in C.Strategy])
    run.add_argument("-n", "--target-count", type=int)
    run.add_argument("-d", "--duration", type=float, help="Seconds; 0 for no duration bound.")
    run.add_argument("--batch-size", type=int)
    run.add_argument("--batch-pause", type=float)
    run.add_argument("--poll-interval", type=float)
    run.add_argument("--poll-timeout", type=float)
    run.add_argument("-o", "--output", type=Path, help="Append the JSON report here instead of stdout.")

    serve = sub.add_parser("serve", help="Serve the control API.")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    return parser.parse_args(argv)


def overrides(a) -> dict:
    o = {
        "ledger": {"backend": a.backend, "rpc_url": a.rpc_url, "ws_url": a.ws_url},
        "senders": {"keys_file": a.keys_file},
    }
    if a.command == "run":
        o["run"] = {"strategy": a.strategy, "target_count": a.target_count, "duration": a.duration}
        batch = {k: v for k, v in {"size": a.batch_size, "pause": a.batch_pause}.items() if v is not None}
        if batch:
            o["run"]["batch"] = batch
        o["poller"] = {"interval": a.poll_interval, "timeout": a.poll_timeout}
    elif a.command == "serve":
        o["server"] = {"host": a.host, "port": a.port}
    return o


async def run_once(settings: Settings, output: Path | None = None) -> int:
    ledger, senders = await open_backend(settings.ledger, settings.raw.get("senders", {}))
    heads = HeadTracker(settings.ledger.ws_url, settings.ledger.backend) if settings.ledger.ws_url else None
    try:
        if output is not None:
            with output.open("a") as f:
                report = await BenchmarkRun(ledger, senders, settings, sink=JsonLinesSink(f), heads=heads).execute()
        else:
            report = await BenchmarkRun(ledger, senders, settings, sink=JsonLinesSink(), heads=heads).execute()
    finally:
        await ledger.aclose()
    return 0 if report.ok else 1


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)
    cfg = apply_overrides(load_config(args.config), overrides(args))
    settings = Settings.from_config(cfg)

    if args.command == "serve":
        server = cfg.get("server", {})
        uvicorn.run(create_app(settings), host=server.get("host", "0.0.0.0"), port=int(server.get("port", 8000)), lifespan="on")
        return 0

    try:
        return asyncio.run(run_once(settings, args.output))
    except SetupFailure as e:
        log.error("Setup failure: %s", e)
        return 2
    except KeyboardInterrupt:
        log.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
