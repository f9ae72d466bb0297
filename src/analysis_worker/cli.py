"""
JSON-lines transport for the analysis worker.

Reads one request message per line on stdin and writes progress, result and
error messages as JSON lines on stdout. Logs go to stderr.

Example:
    echo '{"type": "CACHE_STATS", "correlationId": "1"}' | analysis-worker
"""

import argparse
import asyncio
import json
import sys
from dataclasses import replace
from typing import Any, List, Optional

import numpy as np

from .config import WorkerConfig, config as default_config
from .exceptions import InvalidInputError
from .services.task_protocol import error_message
from .services.worker import WorkerLoop
from .utils.logging_config import get_logger, setup_logging

logger = get_logger(__name__)


def _json_default(value: Any) -> Any:
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_message(message: dict) -> str:
    return json.dumps(message, default=_json_default)


async def _read_requests(loop: WorkerLoop, stream) -> None:
    while True:
        line = await asyncio.to_thread(stream.readline)
        if not line:
            break
        line = line.strip()
        if not line:
            continue
        try:
            message = json.loads(line)
        except json.JSONDecodeError as exc:
            error = InvalidInputError(f"Request is not valid JSON: {exc.msg}")
            await loop.outbox.put(error_message(None, error))
            continue
        await loop.submit(message)
    await loop.stop()


async def _write_messages(loop: WorkerLoop, stream) -> None:
    while True:
        message = await loop.outbox.get()
        if message is None:
            break
        stream.write(encode_message(message) + "\n")
        stream.flush()


async def serve(config: WorkerConfig, stdin=None, stdout=None) -> None:
    """Run the worker loop until stdin is exhausted and all tasks finish."""
    loop = WorkerLoop(config=config)
    await asyncio.gather(
        loop.run(),
        _read_requests(loop, stdin or sys.stdin),
        _write_messages(loop, stdout or sys.stdout),
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="analysis-worker",
        description="Serve correlation, clustering and optimization requests as JSON lines",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--log-level", default=default_config.log_level)
    parser.add_argument("--seed", type=int, default=default_config.seed,
                        help="Seed for K-means++ initialisation")
    parser.add_argument("--cache-size", type=int, default=default_config.cache_size)
    parser.add_argument("--max-concurrent-tasks", type=int,
                        default=default_config.max_concurrent_tasks)
    parser.add_argument("--include-traces", action="store_true",
                        default=default_config.include_traces,
                        help="Attach tracebacks to error responses")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = replace(
            default_config,
            log_level=args.log_level,
            seed=args.seed,
            cache_size=args.cache_size,
            max_concurrent_tasks=args.max_concurrent_tasks,
            include_traces=args.include_traces,
        )
        setup_logging(config.log_level)
    except ValueError as exc:
        print(f"analysis-worker: {exc}", file=sys.stderr)
        return 2

    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
