"""
Health check HTTP server for transcoding workers.

Provides Kubernetes-compatible health endpoints:
- /health (liveness): heartbeat is fresh
- /ready (readiness): worker can take jobs (encoder reachable, queue
  healthy, heartbeat fresh, disk and memory headroom)

Runs on port 8080 by default (configurable via VODFORGE_WORKER_HEALTH_PORT).
"""

import asyncio
import json
import logging
from http import HTTPStatus
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional

import psutil

from config import OUTPUT_ROOT, WORKER_HEALTH_PORT, WORKER_MIN_DISK_FREE_PERCENT, WORKER_MIN_MEMORY_FREE_PERCENT

logger = logging.getLogger(__name__)


def check_resources(
    path: Path = OUTPUT_ROOT,
    min_disk_free_percent: float = WORKER_MIN_DISK_FREE_PERCENT,
    min_memory_free_percent: float = WORKER_MIN_MEMORY_FREE_PERCENT,
) -> Dict[str, bool]:
    """
    Check disk space under `path` (or its nearest existing parent) and available memory.

    Returns:
        {"disk": bool, "memory": bool}
    """
    probe_path = Path(path).resolve()
    while not probe_path.exists() and probe_path != probe_path.parent:
        probe_path = probe_path.parent

    disk = psutil.disk_usage(str(probe_path))
    memory = psutil.virtual_memory()
    disk_free_percent = 100.0 - disk.percent
    memory_free_percent = memory.available / memory.total * 100 if memory.total else 0.0
    return {
        "disk": disk_free_percent >= min_disk_free_percent,
        "memory": memory_free_percent >= min_memory_free_percent,
    }


class HealthServer:
    """Simple async HTTP health server for worker liveness/readiness probes."""

    def __init__(
        self,
        port: int = WORKER_HEALTH_PORT,
        liveness_fn: Optional[Callable[[], bool]] = None,
        readiness_fn: Optional[Callable[[], Awaitable[Dict[str, bool]]]] = None,
        worker_id: str = "",
    ):
        """
        Initialize health server.

        Args:
            port: Port to listen on (default: 8080)
            liveness_fn: Returns False when the worker should be restarted
            readiness_fn: Async callback returning named readiness checks
            worker_id: Reported on the root endpoint
        """
        self.port = port
        self.liveness_fn = liveness_fn
        self.readiness_fn = readiness_fn
        self.worker_id = worker_id
        self._server: Optional[asyncio.Server] = None

    async def handle_path(self, path: str) -> tuple:
        """Compute (status, body) for a request path."""
        if path == "/health":
            alive = self.liveness_fn() if self.liveness_fn else True
            status = HTTPStatus.OK if alive else HTTPStatus.SERVICE_UNAVAILABLE
            return status, {"status": "alive" if alive else "unhealthy"}
        if path == "/ready":
            checks = await self.readiness_fn() if self.readiness_fn else {}
            ready = all(checks.values())
            status = HTTPStatus.OK if ready else HTTPStatus.SERVICE_UNAVAILABLE
            return status, {"status": "ready" if ready else "not_ready", "checks": checks}
        if path == "/":
            return HTTPStatus.OK, {"service": "vodforge-worker", "worker_id": self.worker_id}
        return HTTPStatus.NOT_FOUND, {"error": "not found"}

    async def _handle_request(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """Handle incoming HTTP request."""
        try:
            # Read request line
            request_line = await asyncio.wait_for(reader.readline(), timeout=5.0)
            request_text = request_line.decode("utf-8", errors="replace")

            # Parse path from request
            parts = request_text.split()
            path = parts[1] if len(parts) > 1 else "/"

            # Drain remaining headers (we don't need them)
            while True:
                line = await asyncio.wait_for(reader.readline(), timeout=5.0)
                if line in (b"\r\n", b"\n", b""):
                    break

            try:
                status, payload = await self.handle_path(path)
            except Exception as e:
                logger.warning(f"Health check {path} failed: {e}")
                status, payload = HTTPStatus.INTERNAL_SERVER_ERROR, {"error": "server error"}

            body = json.dumps(payload)
            response = (
                f"HTTP/1.1 {status.value} {status.phrase}\r\n"
                f"Content-Type: application/json\r\n"
                f"Content-Length: {len(body)}\r\n"
                f"Connection: close\r\n"
                f"\r\n"
                f"{body}"
            )
            writer.write(response.encode())
            await writer.drain()

        except asyncio.TimeoutError:
            logger.debug("Health check client timed out")
        except (ConnectionError, OSError) as e:
            logger.debug(f"Health check connection error: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def start(self):
        """Start the health server."""
        self._server = await asyncio.start_server(self._handle_request, "0.0.0.0", self.port)
        print(f"  Health server listening on port {self.port}")

    async def stop(self):
        """Stop the health server."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
