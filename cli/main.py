#!/usr/bin/env python3
"""
vodforge CLI - submit transcoding jobs, follow them, and inspect output.
"""

import argparse
import json
import os
import sys
import time
from pathlib import Path

import httpx
from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn

from api.errors import truncate_error
from config import (
    API_HOST,
    API_PORT,
    API_URL,
    ERROR_DETAIL_MAX_LENGTH,
    ERROR_SUMMARY_MAX_LENGTH,
    QUEUE_CLEAN_COMPLETED_HOURS,
    QUEUE_CLEAN_FAILED_HOURS,
)

# Default timeout for API requests (30 seconds)
DEFAULT_API_TIMEOUT = int(os.getenv("VODFORGE_API_TIMEOUT", "30"))

API_BASE = API_URL.rstrip("/") + "/api"

TERMINAL_STATUSES = {"COMPLETED", "FAILED"}


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def positive_float(value: str) -> float:
    """Argparse type converter that validates positive numbers."""
    f = float(value)
    if f <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive number, got {value}")
    return f


def non_negative_float(value: str) -> float:
    f = float(value)
    if f < 0:
        raise argparse.ArgumentTypeError(f"must not be negative, got {value}")
    return f


def safe_json_response(response, default_error="Request failed"):
    """
    Safely parse JSON response with proper error handling.

    Args:
        response: httpx.Response object
        default_error: Default error message if response has no detail

    Returns:
        Parsed JSON data if successful

    Raises:
        CLIError: If response status is not successful or JSON parsing fails
    """
    if not response.is_success:
        try:
            detail = response.json().get("detail", response.text)
        except (ValueError, httpx.ResponseNotRead):
            detail = truncate_error(response.text, ERROR_DETAIL_MAX_LENGTH) if response.text else default_error
        raise CLIError(f"API error ({response.status_code}): {detail}")

    try:
        return response.json()
    except (ValueError, httpx.ResponseNotRead):
        raise CLIError(f"Invalid JSON response: {truncate_error(response.text, ERROR_SUMMARY_MAX_LENGTH)}")


def api_request(method: str, path: str, **kwargs):
    """Call the job API and return the parsed body."""
    try:
        response = httpx.request(method, f"{API_BASE}{path}", timeout=DEFAULT_API_TIMEOUT, **kwargs)
    except httpx.ConnectError:
        raise CLIError(f"Could not connect to job API at {API_BASE}") from None
    except httpx.TimeoutException:
        raise CLIError(f"Request timed out while connecting to {API_BASE}") from None
    return safe_json_response(response)


def parse_quality_arg(value: str):
    """A preset name ("720p") or a custom profile ("name:WIDTHxHEIGHT:KBPS")."""
    parts = value.split(":")
    if len(parts) == 1:
        return value
    if len(parts) != 3:
        raise argparse.ArgumentTypeError(f"expected NAME or NAME:WIDTHxHEIGHT:KBPS, got {value}")
    name, resolution, bitrate = parts
    try:
        return {"name": name, "resolution": resolution, "bitrate": int(bitrate)}
    except ValueError:
        raise argparse.ArgumentTypeError(f"bitrate must be an integer in {value}") from None


def format_status(status: dict) -> str:
    line = f"{status['job_id']}  {status['status']:<10} {status.get('progress', 0):>3}%"
    if status.get("current_step"):
        line += f"  {status['current_step']}"
    if status.get("error"):
        line += f"\n  Error: {status['error']}"
    return line


def watch_job(job_id: str, interval: float) -> dict:
    """Poll a job until it reaches a terminal status, showing a progress bar."""
    with Progress(
        TextColumn("[bold blue]{task.fields[job_id]}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        TextColumn("{task.fields[step]}"),
        TimeElapsedColumn(),
    ) as progress:
        task_id = progress.add_task("job", total=100, job_id=job_id[:12], step="")
        while True:
            status = api_request("GET", f"/jobs/{job_id}")
            progress.update(task_id, completed=status.get("progress", 0), step=status.get("current_step") or "")
            if status["status"] in TERMINAL_STATUSES:
                return status
            time.sleep(interval)


def cmd_submit(args):
    """Submit a transcoding job."""
    data = {
        "input_path": str(Path(args.input).resolve()),
        "output_path": str(Path(args.output).resolve()),
    }
    if args.qualities:
        data["qualities"] = args.qualities
    if args.job_id:
        data["job_id"] = args.job_id

    result = api_request("POST", "/jobs", json=data)
    if result.get("enqueued"):
        print(f"Job queued: {result['job_id']}")
    else:
        print(f"Job {result['job_id']} already pending, submission updated")

    if args.wait:
        final = watch_job(result["job_id"], args.interval)
        print(format_status(final))
        if final["status"] == "FAILED":
            sys.exit(1)


def cmd_status(args):
    """Show job status."""
    if args.watch:
        status = watch_job(args.job_id, args.interval)
    else:
        status = api_request("GET", f"/jobs/{args.job_id}")
    print(format_status(status))


def cmd_errors(args):
    """Show classified error history of a job."""
    result = api_request("GET", f"/jobs/{args.job_id}/errors")
    errors = result.get("errors", [])
    if not errors:
        print("No errors recorded.")
        return

    print(f"{'Time':<20} {'Type':<18} {'Severity':<9} {'Stage':<10} Message")
    print("-" * 90)
    for e in errors:
        timestamp = (e.get("timestamp") or "-")[:19]
        message = truncate_error(e["message"], 60)
        print(f"{timestamp:<20} {e['type']:<18} {e['severity']:<9} {e.get('stage') or '-':<10} {message}")


def cmd_stats(args):
    """Show error statistics across all jobs."""
    stats = api_request("GET", "/errors/stats", params={"hours": args.hours})
    print(f"Errors in the last {stats['hours']:g}h: {stats['total_errors']}")
    if stats["errors_by_type"]:
        print("\nBy type:")
        for error_type, count in sorted(stats["errors_by_type"].items(), key=lambda kv: -kv[1]):
            print(f"  {error_type:<20} {count}")
    if stats["errors_by_severity"]:
        print("\nBy severity:")
        for severity, count in sorted(stats["errors_by_severity"].items(), key=lambda kv: -kv[1]):
            print(f"  {severity:<20} {count}")
    if stats["most_common_errors"]:
        print("\nMost common:")
        for item in stats["most_common_errors"]:
            print(f"  {item['count']:>4}  {truncate_error(item['message'], 80)}")


def cmd_queue(args):
    """Show job queue statistics, or pause, resume or clean the queue."""
    if args.action == "pause":
        api_request("POST", "/queue/pause")
        print("Queue paused: workers will not claim new jobs")
        return
    if args.action == "resume":
        api_request("POST", "/queue/resume")
        print("Queue resumed")
        return
    if args.action == "clean":
        params = {"completed_hours": args.completed_hours, "failed_hours": args.failed_hours}
        removed = api_request("POST", "/queue/clean", params=params)
        print(f"Removed {removed['completed']} completed and {removed['failed']} dead-lettered entries")
        return

    stats = api_request("GET", "/queue/stats")
    waiting = stats.get("waiting")
    print(f"Stream:      {stats['stream']}" + ("  (paused)" if stats.get("paused") else ""))
    print(f"Length:      {stats['length']}")
    print(f"Waiting:     {waiting if waiting is not None else 'unknown'}")
    print(f"Pending:     {stats['pending']}")
    print(f"Dead letter: {stats['dead_letter']}")


def cmd_validate(args):
    """Validate an HLS output tree on disk."""
    from worker.playlist import validate_output

    result = validate_output(Path(args.directory), args.qualities)
    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    elif result.valid:
        counts = ", ".join(f"{name}: {count}" for name, count in result.segment_counts.items())
        print(f"Valid ({counts} segments)")
    else:
        print("Invalid:")
        for issue in result.issues:
            print(f"  - {issue}")
    if not result.valid:
        sys.exit(1)


def cmd_worker(args):
    """Run a transcoding worker in the foreground."""
    from worker.transcoder import main as worker_main

    worker_main()


def cmd_api(args):
    """Run the job API server."""
    import uvicorn

    uvicorn.run("api.service:app", host=args.host, port=args.port)


def main(argv=None):
    parser = argparse.ArgumentParser(description="vodforge HLS transcoding CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Submit command
    submit_parser = subparsers.add_parser("submit", help="Submit a transcoding job")
    submit_parser.add_argument("input", help="Input video file")
    submit_parser.add_argument("output", help="Output directory for the HLS tree")
    submit_parser.add_argument(
        "-q",
        "--qualities",
        nargs="+",
        type=parse_quality_arg,
        help="Preset names (720p) or custom profiles (name:WIDTHxHEIGHT:KBPS)",
    )
    submit_parser.add_argument("--job-id", help="Job ID (resubmitting an ID replaces that job)")
    submit_parser.add_argument("-w", "--wait", action="store_true", help="Wait for the job to finish")
    submit_parser.add_argument("--interval", type=positive_float, default=2.0, help="Poll interval in seconds")
    submit_parser.set_defaults(func=cmd_submit)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show job status")
    status_parser.add_argument("job_id", help="Job ID")
    status_parser.add_argument("-w", "--watch", action="store_true", help="Follow progress until the job finishes")
    status_parser.add_argument("--interval", type=positive_float, default=2.0, help="Poll interval in seconds")
    status_parser.set_defaults(func=cmd_status)

    # Errors command
    errors_parser = subparsers.add_parser("errors", help="Show a job's error history")
    errors_parser.add_argument("job_id", help="Job ID")
    errors_parser.set_defaults(func=cmd_errors)

    # Stats command
    stats_parser = subparsers.add_parser("stats", help="Show error statistics")
    stats_parser.add_argument("--hours", type=positive_float, default=24.0, help="Time window (default: 24)")
    stats_parser.set_defaults(func=cmd_stats)

    # Queue command
    queue_parser = subparsers.add_parser("queue", help="Show queue statistics or control the queue")
    queue_parser.add_argument(
        "action", nargs="?", default="stats", choices=["stats", "pause", "resume", "clean"], help="Default: stats"
    )
    queue_parser.add_argument(
        "--completed-hours",
        type=non_negative_float,
        default=QUEUE_CLEAN_COMPLETED_HOURS,
        help=f"clean: age of acknowledged jobs to remove (default: {QUEUE_CLEAN_COMPLETED_HOURS:g})",
    )
    queue_parser.add_argument(
        "--failed-hours",
        type=non_negative_float,
        default=QUEUE_CLEAN_FAILED_HOURS,
        help=f"clean: age of dead letters to remove (default: {QUEUE_CLEAN_FAILED_HOURS:g})",
    )
    queue_parser.set_defaults(func=cmd_queue)

    # Validate command
    validate_parser = subparsers.add_parser("validate", help="Validate an HLS output directory")
    validate_parser.add_argument("directory", help="Output directory containing master.m3u8")
    validate_parser.add_argument("-q", "--qualities", nargs="+", required=True, help="Expected quality names")
    validate_parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    validate_parser.set_defaults(func=cmd_validate)

    # Worker command
    worker_parser = subparsers.add_parser("worker", help="Run a transcoding worker")
    worker_parser.set_defaults(func=cmd_worker)

    # API command
    api_parser = subparsers.add_parser("api", help="Run the job API server")
    api_parser.add_argument("--host", default=API_HOST, help=f"Bind address (default: {API_HOST})")
    api_parser.add_argument("--port", type=int, default=API_PORT, help=f"Port (default: {API_PORT})")
    api_parser.set_defaults(func=cmd_api)

    args = parser.parse_args(argv)
    try:
        args.func(args)
    except CLIError as e:
        print(f"Error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(130)


if __name__ == "__main__":
    main()
