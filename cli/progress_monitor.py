#!/usr/bin/env python3
"""
CLI Progress Monitor for Generation Jobs

Connects to a job's NDJSON event stream and displays real-time progress with
visual formatting.

Usage:
    python -m cli.progress_monitor <job_id>
    python -m cli.progress_monitor --server http://localhost:8765 <job_id>
"""

import argparse
import asyncio
from typing import Optional

import aiohttp

from services.streaming import NDJSONBuffer


# ANSI color codes
class Colors:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    CYAN = "\033[36m"
    WHITE = "\033[37m"

    # Clear line
    CLEAR_LINE = "\033[2K\r"


def colored(text: str, color: str) -> str:
    """Apply color to text."""
    return f"{color}{text}{Colors.RESET}"


def progress_bar(done: int, total: int, width: int = 30) -> str:
    """Create a visual progress bar from finished/total units."""
    percent = (done / total * 100) if total else 0.0
    filled = int(percent / 100 * width)
    bar = "█" * filled + "░" * (width - filled)

    if percent >= 100:
        color = Colors.GREEN
    elif percent >= 50:
        color = Colors.CYAN
    else:
        color = Colors.WHITE

    return colored(f"[{bar}]", color) + f" {done}/{total}"


STATUS_ICONS = {
    "pending": ("•", Colors.DIM),
    "starting": ("▶️", Colors.CYAN),
    "generating": ("⏳", Colors.BLUE),
    "completed": ("✅", Colors.GREEN),
    "failed": ("❌", Colors.RED),
}


def format_event(event: dict) -> str:
    """Format one streamed record for display."""
    event_type = event.get("type", "")
    seq = event.get("sequenceNumber")
    label = colored(f"#{seq}", Colors.BOLD) if seq is not None else ""

    if event_type == "progress":
        status = event.get("status", "")
        icon, color = STATUS_ICONS.get(status, ("•", Colors.WHITE))
        attempt = event.get("attempt", 1)
        retry = colored(f" (attempt {attempt})", Colors.DIM) if attempt and attempt > 1 else ""
        return f"{icon} {label} {colored(status, color)}{retry} {event.get('message', '')}".rstrip()

    if event_type == "video_complete":
        return f"🎬 {label} ready\n" + colored(f"    → {event.get('artifactUrl')}", Colors.DIM)

    if event_type == "error":
        code = event.get("errorCode")
        code_str = colored(f" [{code}]", Colors.DIM) if code else ""
        return f"🔴 {label} {colored(event.get('error') or 'failed', Colors.RED)}{code_str}"

    if event_type == "complete":
        units = event.get("units", [])
        completed = sum(1 for u in units if u.get("status") == "completed")
        failed = sum(1 for u in units if u.get("status") == "failed")
        lines = [
            "",
            colored("═══ Job complete ═══", Colors.GREEN if not failed else Colors.YELLOW),
            f"    {colored(str(completed), Colors.GREEN)} completed, "
            f"{colored(str(failed), Colors.RED)} failed",
        ]
        return "\n".join(lines)

    return f"ℹ️ {event}"


class ProgressMonitor:
    """CLI progress monitor for a generation job."""

    def __init__(
        self,
        job_id: str,
        server_url: str = "http://localhost:8765",
    ):
        self.job_id = job_id
        self.server_url = server_url.rstrip("/")
        self.stream_url = f"{self.server_url}/api/jobs/{job_id}/events"
        self.job_url = f"{self.server_url}/api/jobs/{job_id}"

        self._running = False
        self._statuses: dict[str, str] = {}
        self.final_event: Optional[dict] = None

    @property
    def finished(self) -> int:
        return sum(1 for s in self._statuses.values() if s in ("completed", "failed"))

    async def start(self):
        """Start monitoring progress."""
        self._running = True

        print(colored("\n╔═══════════════════════════════════════════╗", Colors.CYAN))
        print(colored("║  Generation Progress Monitor              ║", Colors.CYAN))
        print(colored("╚═══════════════════════════════════════════╝", Colors.CYAN))
        print(f"Job:    {colored(self.job_id, Colors.BOLD)}")
        print(f"Server: {colored(self.stream_url, Colors.DIM)}")
        print(colored("─" * 45, Colors.DIM))
        print()

        retry_count = 0
        max_retries = 5

        while self._running and retry_count < max_retries:
            try:
                if retry_count:
                    await self._print_snapshot()
                await self._stream_events()
                break  # Clean exit
            except aiohttp.ClientError as e:
                retry_count += 1
                if retry_count < max_retries:
                    wait = 2 ** retry_count
                    print(
                        colored(
                            f"\n⚠️ Connection lost ({e}). Retrying in {wait}s... ({retry_count}/{max_retries})",
                            Colors.YELLOW,
                        )
                    )
                    await asyncio.sleep(wait)
                else:
                    print(colored(f"\n❌ Failed to connect after {max_retries} attempts", Colors.RED))
            except asyncio.CancelledError:
                break

        print(colored("\n" + "─" * 45, Colors.DIM))
        print(colored("Monitor stopped.", Colors.DIM))

    async def _print_snapshot(self):
        """After a reconnect, show where every unit stands."""
        async with aiohttp.ClientSession() as session:
            async with session.get(self.job_url) as response:
                if response.status != 200:
                    raise aiohttp.ClientError(f"Server returned {response.status}")
                snapshot = await response.json()

        for unit in snapshot.get("units", []):
            self._statuses[unit["unitId"]] = unit["status"]
        print(f"\n{progress_bar(self.finished, len(self._statuses))}")

    async def _stream_events(self):
        """Stream and display events."""
        buffer = NDJSONBuffer()
        async with aiohttp.ClientSession() as session:
            async with session.get(self.stream_url) as response:
                if response.status == 404:
                    print(colored(f"Job {self.job_id} not found", Colors.RED))
                    self._running = False
                    return
                if response.status != 200:
                    raise aiohttp.ClientError(f"Server returned {response.status}")

                async for chunk in response.content.iter_any():
                    for record in buffer.feed(chunk):
                        self._handle_event(record)
                    if not self._running:
                        return

                for record in buffer.flush():
                    self._handle_event(record)

        if self._running:
            raise aiohttp.ClientError("Stream ended before the job completed")

    def _handle_event(self, event: dict):
        """Handle incoming event."""
        event_type = event.get("type", "")

        if event_type == "progress" and event.get("unitId"):
            self._statuses[event["unitId"]] = event.get("status", "")

        print(format_event(event))

        if event_type == "complete":
            self.final_event = event
            self._running = False

    def stop(self):
        """Stop monitoring."""
        self._running = False


async def main():
    parser = argparse.ArgumentParser(
        description="Monitor generation job progress",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    %(prog)s 3f2c9a...
    %(prog)s --server http://remote:8765 3f2c9a...
        """,
    )
    parser.add_argument("job_id", help="Job ID to monitor")
    parser.add_argument(
        "--server",
        default="http://localhost:8765",
        help="Orchestrator server URL (default: http://localhost:8765)",
    )

    args = parser.parse_args()

    monitor = ProgressMonitor(job_id=args.job_id, server_url=args.server)

    try:
        await monitor.start()
    except KeyboardInterrupt:
        print(colored("\n\nInterrupted by user.", Colors.YELLOW))
        monitor.stop()


if __name__ == "__main__":
    asyncio.run(main())
