"""Tests for the worker health server and resource checks."""

import asyncio
import json
from http import HTTPStatus
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from worker.health_server import HealthServer, check_resources


def fake_usage(disk_percent=50.0, memory_available=4, memory_total=8):
    disk = MagicMock(percent=disk_percent)
    memory = MagicMock(available=memory_available, total=memory_total)
    return disk, memory


class TestCheckResources:
    """Tests for disk and memory headroom checks."""

    def test_enough_headroom(self, tmp_path):
        disk, memory = fake_usage()
        with patch("psutil.disk_usage", return_value=disk), patch("psutil.virtual_memory", return_value=memory):
            result = check_resources(tmp_path, min_disk_free_percent=5, min_memory_free_percent=5)

        assert result == {"disk": True, "memory": True}

    def test_disk_full(self, tmp_path):
        disk, memory = fake_usage(disk_percent=99.0)
        with patch("psutil.disk_usage", return_value=disk), patch("psutil.virtual_memory", return_value=memory):
            result = check_resources(tmp_path, min_disk_free_percent=5, min_memory_free_percent=5)

        assert result == {"disk": False, "memory": True}

    def test_low_memory(self, tmp_path):
        disk, memory = fake_usage(memory_available=1, memory_total=100)
        with patch("psutil.disk_usage", return_value=disk), patch("psutil.virtual_memory", return_value=memory):
            result = check_resources(tmp_path, min_disk_free_percent=5, min_memory_free_percent=5)

        assert result["memory"] is False

    def test_missing_path_uses_existing_parent(self, tmp_path):
        """Output root may not exist yet; the nearest existing parent is probed."""
        disk, memory = fake_usage()
        with patch("psutil.disk_usage", return_value=disk) as mock_disk:
            with patch("psutil.virtual_memory", return_value=memory):
                check_resources(tmp_path / "not" / "yet")

        assert mock_disk.call_args[0][0] == str(tmp_path.resolve())


class TestHandlePath:
    """Tests for HealthServer endpoint routing."""

    @pytest.mark.asyncio
    async def test_health_alive(self):
        server = HealthServer(port=0, liveness_fn=lambda: True)

        status, body = await server.handle_path("/health")

        assert status == HTTPStatus.OK
        assert body == {"status": "alive"}

    @pytest.mark.asyncio
    async def test_health_stale_heartbeat(self):
        server = HealthServer(port=0, liveness_fn=lambda: False)

        status, body = await server.handle_path("/health")

        assert status == HTTPStatus.SERVICE_UNAVAILABLE
        assert body == {"status": "unhealthy"}

    @pytest.mark.asyncio
    async def test_ready(self):
        readiness = AsyncMock(return_value={"encoder": True, "queue": True, "disk": True})
        server = HealthServer(port=0, readiness_fn=readiness)

        status, body = await server.handle_path("/ready")

        assert status == HTTPStatus.OK
        assert body["status"] == "ready"
        assert body["checks"]["encoder"] is True

    @pytest.mark.asyncio
    async def test_not_ready_when_any_check_fails(self):
        readiness = AsyncMock(return_value={"encoder": True, "queue": False})
        server = HealthServer(port=0, readiness_fn=readiness)

        status, body = await server.handle_path("/ready")

        assert status == HTTPStatus.SERVICE_UNAVAILABLE
        assert body == {"status": "not_ready", "checks": {"encoder": True, "queue": False}}

    @pytest.mark.asyncio
    async def test_root_reports_worker_id(self):
        server = HealthServer(port=0, worker_id="worker-abc")

        status, body = await server.handle_path("/")

        assert status == HTTPStatus.OK
        assert body == {"service": "vodforge-worker", "worker_id": "worker-abc"}

    @pytest.mark.asyncio
    async def test_unknown_path(self):
        status, _ = await HealthServer(port=0).handle_path("/metrics")

        assert status == HTTPStatus.NOT_FOUND


class TestHealthServerHTTP:
    """End-to-end requests over a real socket."""

    @pytest.mark.asyncio
    async def test_serves_json(self, unused_tcp_port):
        server = HealthServer(port=unused_tcp_port, liveness_fn=lambda: True, worker_id="worker-1")
        await server.start()
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", unused_tcp_port)
            writer.write(b"GET /health HTTP/1.1\r\nHost: localhost\r\n\r\n")
            await writer.drain()
            raw = await reader.read()
            writer.close()
        finally:
            await server.stop()

        head, _, body = raw.decode().partition("\r\n\r\n")
        assert head.startswith("HTTP/1.1 200 OK")
        assert json.loads(body) == {"status": "alive"}

    @pytest.mark.asyncio
    async def test_failing_check_returns_500(self, unused_tcp_port):
        readiness = AsyncMock(side_effect=RuntimeError("redis gone"))
        server = HealthServer(port=unused_tcp_port, readiness_fn=readiness)
        await server.start()
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", unused_tcp_port)
            writer.write(b"GET /ready HTTP/1.1\r\n\r\n")
            await writer.drain()
            raw = await reader.read()
            writer.close()
        finally:
            await server.stop()

        assert raw.decode().startswith("HTTP/1.1 500 Internal Server Error")
