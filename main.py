#!/usr/bin/env python3
"""
Clipbatch - Main Entry Point

Runs the generation orchestrator server and talks to it from the command line.

Usage:
    # Start server mode (API + NDJSON progress streams)
    python main.py server

    # Submit one job per line of a prompts file and follow it
    python main.py generate --prompts-file prompts.txt --aspect-ratio portrait

    # Monitor an existing job
    python main.py monitor <job_id>
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("clipbatch")


def start_server(host: Optional[str] = None, port: Optional[int] = None):
    """Start the orchestrator HTTP server."""
    from core.config import get_config
    from services.orchestrator.server import run_server

    config = get_config()
    host = host or config.server.host
    port = port or config.server.port

    logger.info(f"Clipbatch server starting at http://{host}:{port}")
    run_server(host=host, port=port)


async def generate(
    prompts_file: str,
    aspect_ratio: str = "landscape",
    project_id: Optional[str] = None,
    server_url: str = "http://localhost:8765",
    follow: bool = True,
) -> bool:
    """
    Submit prompts (one per line) as a job and optionally follow it.

    Returns True when the job was accepted and, if followed, finished with
    no failed units.
    """
    import aiohttp
    from cli.progress_monitor import ProgressMonitor

    prompts = [
        line.strip()
        for line in Path(prompts_file).read_text(encoding="utf-8").splitlines()
        if line.strip()
    ]
    logger.info(f"Submitting {len(prompts)} prompts ({aspect_ratio})")

    payload = {"prompts": prompts, "aspectRatio": aspect_ratio, "projectId": project_id}
    async with aiohttp.ClientSession() as session:
        try:
            async with session.post(f"{server_url}/api/jobs", json=payload) as resp:
                data = await resp.json()
                if resp.status != 200:
                    logger.error(f"Server rejected job ({resp.status}): {data}")
                    return False
        except aiohttp.ClientError as e:
            logger.error(f"Cannot connect to server: {e}")
            return False

    job_id = data["jobId"]
    logger.info(f"Job {job_id} accepted with {len(data['unitIds'])} units")
    if not follow:
        print(job_id)
        return True

    monitor = ProgressMonitor(job_id=job_id, server_url=server_url)
    await monitor.start()
    if monitor.final_event is None:
        return False
    return all(u.get("status") == "completed" for u in monitor.final_event.get("units", []))


async def monitor_job(job_id: str, server_url: str = "http://localhost:8765"):
    """Monitor an existing job's progress."""
    from cli.progress_monitor import ProgressMonitor

    monitor = ProgressMonitor(job_id=job_id, server_url=server_url)
    await monitor.start()


async def check_status(server_url: str) -> bool:
    import aiohttp

    async with aiohttp.ClientSession() as session:
        try:
            async with session.get(f"{server_url}/health") as resp:
                if resp.status != 200:
                    print(f"Server returned status {resp.status}")
                    return False
                data = await resp.json()
        except aiohttp.ClientError as e:
            print(f"Cannot connect to server: {e}")
            return False

    credentials = data["credentials"]
    print(f"Server: {server_url}")
    print("Status: Online")
    print(f"Active jobs: {data['active_jobs']}")
    print(
        f"Credentials: {credentials['active']}/{credentials['total']} active, "
        f"{credentials['inFlight']} in flight"
    )
    print(f"Provider circuit: {data['provider']['state']}")
    return True


def main():
    parser = argparse.ArgumentParser(
        description="Clipbatch - batched video generation orchestrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Start the server
    python main.py server

    # Generate one clip per line of prompts.txt
    python main.py generate --prompts-file prompts.txt

    # Monitor job progress
    python main.py monitor 3f2c9a...
        """,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Server command
    server_parser = subparsers.add_parser("server", help="Start the orchestrator server")
    server_parser.add_argument("--host", help="Host to bind")
    server_parser.add_argument("--port", type=int, help="Port to bind")

    # Generate command
    gen_parser = subparsers.add_parser("generate", help="Submit a generation job")
    gen_parser.add_argument("--prompts-file", "-f", required=True, help="One prompt per line")
    gen_parser.add_argument(
        "--aspect-ratio",
        "-a",
        choices=["landscape", "portrait"],
        default="landscape",
        help="Clip aspect ratio",
    )
    gen_parser.add_argument("--project", help="Project ID to tag the job with")
    gen_parser.add_argument("--no-follow", action="store_true", help="Print the job ID and exit")
    gen_parser.add_argument("--server", default="http://localhost:8765", help="Server URL")

    # Monitor command
    mon_parser = subparsers.add_parser("monitor", help="Monitor job progress")
    mon_parser.add_argument("job_id", help="Job ID to monitor")
    mon_parser.add_argument("--server", default="http://localhost:8765", help="Server URL")

    # Status command
    status_parser = subparsers.add_parser("status", help="Check server status")
    status_parser.add_argument("--server", default="http://localhost:8765", help="Server URL")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "server":
        start_server(host=args.host, port=args.port)

    elif args.command == "generate":
        ok = asyncio.run(
            generate(
                prompts_file=args.prompts_file,
                aspect_ratio=args.aspect_ratio,
                project_id=args.project,
                server_url=args.server.rstrip("/"),
                follow=not args.no_follow,
            )
        )
        sys.exit(0 if ok else 1)

    elif args.command == "monitor":
        asyncio.run(monitor_job(args.job_id, args.server))

    elif args.command == "status":
        ok = asyncio.run(check_status(args.server.rstrip("/")))
        sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
