from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from opentelemetry import trace

from senseflow.core.config import Settings, get_settings
from senseflow.core.errors import ItemProcessingError, RemoteApiError, SenseFlowError
from senseflow.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from senseflow.jobs.orchestrator import process_batch
from senseflow.schemas.calls import BatchResult, Operation, WorkItem
from senseflow.services.call_client import CallClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="senseflow", description="Start SenseFlow phone calls and track them.")
    subcommands = parser.add_subparsers(dest="command", required=True)

    run = subcommands.add_parser("run", help="Process a JSON list of work items.")
    run.add_argument("items", type=Path, help="Path to a JSON file holding a list of work items ('-' for stdin)")
    run.add_argument(
        "--operation",
        choices=[operation.value for operation in Operation],
        default=None,
        help="Operation for items that do not name their own (default: submit_and_await)",
    )
    run.add_argument(
        "--continue-on-fail",
        action="store_true",
        default=None,
        help="Route failing items to Not Ready instead of aborting the batch",
    )
    run.add_argument("--wait", action="store_true", help="Let poll_only items wait for a terminal status")
    run.add_argument("--interval", type=float, default=None, help="Seconds between status checks")
    run.add_argument("--timeout", type=float, default=None, help="Seconds to wait for a call to finish")
    run.add_argument("--concurrency", type=int, default=None, help="Number of items processed at once")

    subcommands.add_parser("verify", help="Check that the configured API key is accepted.")
    return parser


def load_work_items(source: Path) -> list[WorkItem]:
    raw_text = sys.stdin.read() if str(source) == "-" else source.read_text(encoding="utf-8")
    decoded = json.loads(raw_text)
    if not isinstance(decoded, list):
        raise ValueError("work item file must contain a JSON list")
    items: list[WorkItem] = []
    for index, raw in enumerate(decoded):
        if not isinstance(raw, dict):
            raise ValueError(f"work item {index} must be a JSON object")
        items.append(WorkItem.from_dict(raw))
    return items


async def run_batch(args: argparse.Namespace, settings: Settings, client: CallClient) -> BatchResult:
    items = load_work_items(args.items)
    continue_on_fail = settings.continue_on_fail if args.continue_on_fail is None else args.continue_on_fail
    with tracer.start_as_current_span("cli.run"):
        return await process_batch(
            client,
            items,
            operation=args.operation,
            continue_on_fail=continue_on_fail,
            wait_for_completion=args.wait,
            interval_seconds=args.interval if args.interval is not None else settings.poll_interval_seconds,
            timeout_seconds=args.timeout if args.timeout is not None else settings.poll_timeout_seconds,
            max_concurrency=args.concurrency if args.concurrency is not None else settings.max_concurrency,
        )


async def run_cli(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings)
    client = CallClient(
        base_url=settings.api_base_url,
        api_key=settings.api_key,
        timeout_seconds=settings.request_timeout_seconds,
    )

    try:
        if args.command == "verify":
            try:
                valid = await client.verify_credentials()
            except SenseFlowError as exc:
                logger.error("credential check could not complete: %s", exc)
                return 1
            logger.info("credential check %s", "passed" if valid else "failed")
            return 0 if valid else 1

        try:
            result = await run_batch(args, settings, client)
        except RemoteApiError as exc:
            logger.error(
                "batch aborted at item %s: HTTP %s body=%s", exc.item_index, exc.status_code, _compact(exc.body)
            )
            return 1
        except ItemProcessingError as exc:
            logger.error("batch aborted at item %s: %s", exc.item_index, exc.cause)
            return 1
        except SenseFlowError as exc:
            logger.error("batch failed: %s", exc)
            return 1
        except (OSError, ValueError) as exc:
            logger.error("could not load work items: %s", exc)
            return 1

        json.dump(result.to_dict(), sys.stdout, indent=2)
        sys.stdout.write("\n")
        return 0
    finally:
        shutdown_telemetry(telemetry_runtime)


def _compact(body: Any) -> str:
    if isinstance(body, str):
        return body
    return json.dumps(body, separators=(",", ":"))


def main() -> None:
    sys.exit(asyncio.run(run_cli()))


if __name__ == "__main__":
    main()
