"""
cli.py - Command line entry point.

Usage:
    flowmachine serve --port 8080          # API + workers + scheduler
    flowmachine worker                     # workers + scheduler, no HTTP
    flowmachine run-flow fl-123            # create a job and drain the queue inline
    flowmachine tick                       # trigger every flow that is due, then drain
    flowmachine job jb-123                 # print a job as JSON
    flowmachine clear-processed --flow-id fl-123
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional

from flowmachine.config.runtime_config import get_log_level
from flowmachine.runtime.errors import ConfigurationError
from flowmachine.runtime.registry import Container, build_container

logger = logging.getLogger(__name__)


def _build(args: argparse.Namespace) -> Container:
    return build_container(db_path=args.db_path, files_dir=args.files_dir)


def _print_job(container: Container, job_id: str) -> int:
    job = container.jobs.get(job_id)
    if job is None:
        print(f"Job not found: {job_id}")
        return 1
    print(json.dumps(job.to_dict(), indent=2))
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from flowmachine.api.server import create_app

    app = create_app(container=_build(args), start_background=True)
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


def cmd_worker(args: argparse.Namespace) -> int:
    container = _build(args)
    container.start()
    logger.info("Worker running (Ctrl+C to stop)")
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        logger.info("Stopping worker")
    finally:
        container.close()
    return 0


def cmd_run_flow(args: argparse.Namespace) -> int:
    container = _build(args)
    try:
        job_id = container.jobs.create_and_schedule(args.flow_id, trigger_reason=args.trigger)
    except ConfigurationError as e:
        print(f"Cannot run flow {args.flow_id}: {e.message}")
        container.close()
        return 1
    processed = container.run_pending()
    logger.info("Processed %d queued steps", processed)
    code = _print_job(container, job_id)
    container.close()
    return code


def cmd_tick(args: argparse.Namespace) -> int:
    container = _build(args)
    job_ids = container.scheduler.tick()
    container.run_pending()
    for job_id in job_ids:
        job = container.jobs.get(job_id)
        print(f"{job_id}: {job.status.value if job else 'missing'}")
    if not job_ids:
        print("No flows due")
    container.close()
    return 0


def cmd_job(args: argparse.Namespace) -> int:
    container = _build(args)
    code = _print_job(container, args.job_id)
    container.close()
    return code


def cmd_clear_processed(args: argparse.Namespace) -> int:
    container = _build(args)
    try:
        removed = container.dedup.clear(
            job_id=args.job_id,
            flow_id=args.flow_id,
            pipeline_id=args.pipeline_id,
            pipeline_step_id=args.pipeline_step_id,
        )
    except ValueError as e:
        print(str(e))
        return 1
    finally:
        container.close()
    print(f"Removed {removed} processed item(s)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flowmachine",
        description="flowmachine content automation engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--db-path", type=Path, default=None, help="DuckDB file (default: storage.db_path)")
    parser.add_argument("--files-dir", type=Path, default=None, help="Packet file area (default: storage.files_dir)")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API with workers and scheduler")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind to")
    serve_parser.set_defaults(func=cmd_serve)

    worker_parser = subparsers.add_parser("worker", help="Run workers and scheduler without HTTP")
    worker_parser.set_defaults(func=cmd_worker)

    run_parser = subparsers.add_parser("run-flow", help="Run one flow to completion on this thread")
    run_parser.add_argument("flow_id", help="Flow to run")
    run_parser.add_argument("--trigger", default="manual", help="Trigger label recorded on the job")
    run_parser.set_defaults(func=cmd_run_flow)

    tick_parser = subparsers.add_parser("tick", help="Trigger due flows once and process them")
    tick_parser.set_defaults(func=cmd_tick)

    job_parser = subparsers.add_parser("job", help="Show a job")
    job_parser.add_argument("job_id", help="Job to show")
    job_parser.set_defaults(func=cmd_job)

    clear_parser = subparsers.add_parser("clear-processed", help="Delete processed-item records")
    clear_parser.add_argument("--job-id", default=None)
    clear_parser.add_argument("--flow-id", default=None)
    clear_parser.add_argument("--pipeline-id", default=None)
    clear_parser.add_argument("--pipeline-step-id", default=None)
    clear_parser.set_defaults(func=cmd_clear_processed)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=get_log_level(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    if not getattr(args, "func", None):
        parser.print_help()
        return 1
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
