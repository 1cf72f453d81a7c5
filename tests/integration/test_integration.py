"""Integration tests — full service round trips over a mock broker.

Validates the complete flow: start service → publish command → device
replies on the shared topic → caller resumes → persisted state updated
→ shutdown.  Every message enters through ``MockMqttClient.deliver`` so
the real router, correlator, negotiator and repositories are exercised.

Test Techniques Used:
    - Integration Testing: end-to-end scenarios via ServiceHarness
    - Concurrency Testing: independent keys, overlap policies, shutdown
    - Timing Testing: timeout honoured within scheduler granularity
"""

from __future__ import annotations

import asyncio
import json
import time

import pytest

from camrelay._errors import (
    DeviceTimeout,
    PairingTimeout,
    RequestInFlight,
    RequestSuperseded,
    ServiceStopped,
)
from camrelay._models import DeviceStatus
from camrelay._pairing import PairingState
from camrelay._settings import CommandSettings, PairingSettings
from camrelay.testing import ServiceHarness

pytestmark = pytest.mark.integration


# ---------------------------------------------------------------------------
# Pairing
# ---------------------------------------------------------------------------


class TestPairingFlow:
    """Technique: Integration Testing."""

    async def test_announcement_resolves_exactly_once(self, harness: ServiceHarness) -> None:
        token = "ab12cd34ef56ab78"
        waiter = asyncio.create_task(harness.service.await_pairing(token, timeout=1.0))
        await asyncio.sleep(0)

        await harness.announce(token, {"deviceInfo": "x"})
        await harness.announce(token, {"deviceInfo": "again"})

        assert await waiter == {"deviceInfo": "x"}
        assert harness.service.negotiator.waiting_count == 0

    async def test_distinct_tokens_are_independent(self, harness: ServiceHarness) -> None:
        first = asyncio.create_task(harness.service.await_pairing("t1", timeout=1.0))
        second = asyncio.create_task(harness.service.await_pairing("t2", timeout=0.05))
        await asyncio.sleep(0)

        await harness.announce("t1", {"n": 1})

        assert await first == {"n": 1}
        with pytest.raises(PairingTimeout):
            await second

    async def test_user_initiated_pairing_creates_device(
        self, harness: ServiceHarness
    ) -> None:
        user = await harness.users.create("alice")
        ticket = await harness.service.initiate_pairing(user.id, timeout=1.0)

        await harness.announce(ticket.token, {"deviceInfo": "cam-1"})
        await harness.service.tasks.join()

        device = await harness.devices.find_by_token(ticket.token)
        assert device is not None
        assert user.device_ids == [device.id]
        assert await harness.service.pairing_status(ticket.token) is PairingState.PAIRED


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class TestCommandFlow:
    """Technique: Integration Testing."""

    async def test_streaming_on_persists_url(self, harness: ServiceHarness) -> None:
        await harness.add_device("T")

        call = asyncio.create_task(harness.service.set_streaming("T", "ON", 1.0))
        command = await harness.wait_for_command("T", "streaming")
        # The broker echoes our own command back on the shared topic first.
        await harness.mqtt.deliver("api/T/cam/streaming", json.dumps(command))
        await harness.reply("T", "streaming", {"streamUrl": "rtsp://x"})

        assert await call == {"streamUrl": "rtsp://x"}
        device = await harness.devices.find_by_token("T")
        assert device is not None
        assert device.status is DeviceStatus.STREAMING
        assert device.streaming_url == "rtsp://x"

    async def test_memory_timeout_after_one_second(self) -> None:
        harness = ServiceHarness.create()
        await harness.service.start()
        try:
            started = time.monotonic()
            with pytest.raises(DeviceTimeout):
                await harness.service.request_memory("T", "r1", "f1", timeout=1.0)
            elapsed = time.monotonic() - started

            assert 0.9 <= elapsed < 2.0
            assert harness.service.is_pending("T", "memory") is False
            await harness.reply("T", "memory", {"late": True})
            assert harness.service.correlator.pending_count == 0
        finally:
            await harness.service.stop()

    async def test_concurrent_keys_do_not_interfere(self, harness: ServiceHarness) -> None:
        memory = asyncio.create_task(harness.service.request_memory("A", "r", "f", 1.0))
        streaming = asyncio.create_task(harness.service.set_streaming("A", "OFF", 1.0))
        other = asyncio.create_task(harness.service.request_memory("B", "r", "f", 1.0))
        await harness.wait_for_command("B", "memory")

        await harness.reply("A", "streaming", {"action": "OFF"})

        assert await streaming == {"action": "OFF"}
        assert not memory.done()
        assert not other.done()
        await harness.reply("B", "memory", {"who": "B"})
        await harness.reply("A", "memory", {"who": "A"})
        assert await memory == {"who": "A"}
        assert await other == {"who": "B"}

    async def test_overlap_rejected_by_default(self, harness: ServiceHarness) -> None:
        first = asyncio.create_task(harness.service.request_memory("T", "r", "f", 1.0))
        await harness.wait_for_command("T", "memory")

        with pytest.raises(RequestInFlight):
            await harness.service.request_memory("T", "r", "f", 1.0)

        await harness.reply("T", "memory", {"ok": 1})
        assert await first == {"ok": 1}

    async def test_overlap_supersede(self) -> None:
        harness = ServiceHarness.create(
            commands=CommandSettings(timeout=1.0, overlap_policy="supersede"),
        )
        async with harness.service:
            first = asyncio.create_task(harness.service.request_memory("T", "r", "f"))
            await harness.wait_for_command("T", "memory")
            second = asyncio.create_task(harness.service.request_memory("T", "r", "g"))
            while harness.mqtt.publish_count < 2:
                await asyncio.sleep(0)

            await harness.reply("T", "memory", {"folder": "g"})

            with pytest.raises(RequestSuperseded):
                await first
            assert await second == {"folder": "g"}


# ---------------------------------------------------------------------------
# Device state
# ---------------------------------------------------------------------------


class TestDeviceState:
    """Technique: Integration Testing."""

    async def test_status_reports_and_liveness(self, harness: ServiceHarness) -> None:
        device = await harness.add_device("abc123")

        await harness.report_status("abc123", "memory", "ON")
        assert device.status is DeviceStatus.MEMORY
        harness.wall_clock.advance(minutes=4)
        assert await harness.service.is_online("abc123") is True
        harness.wall_clock.advance(minutes=2)
        assert await harness.service.is_online("abc123") is False

        await harness.report_status("abc123", "memory", "OFF")
        assert device.status is DeviceStatus.OFF
        assert device.last_seen == harness.wall_clock.current
        assert await harness.service.is_online("abc123") is False

    async def test_record_arrival(self, harness: ServiceHarness) -> None:
        device = await harness.add_device("abc123")

        await harness.mqtt.deliver(
            "api/abc123/cam/record",
            json.dumps({"folderName": "2026-01-01_12-00", "fileCount": 2}),
        )
        await harness.service.tasks.join()

        records = await harness.records.list_for_device(device.id)
        assert [r.file_count for r in records] == [2]
        assert device.record_ids == [records[0].id]

    async def test_unknown_topic_dropped(self, harness: ServiceHarness) -> None:
        await harness.mqtt.deliver("api/abc123/unknown/segment", "{}")

        assert len(harness.service.tasks) == 0


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------


class TestShutdown:
    """Technique: Concurrency Testing."""

    async def test_stop_fails_every_waiter(self) -> None:
        harness = ServiceHarness.create(
            commands=CommandSettings(timeout=5.0),
            pairing=PairingSettings(timeout=5.0),
        )
        await harness.service.start()
        command = asyncio.create_task(harness.service.set_streaming("T", "ON", 1.0))
        pairing = asyncio.create_task(harness.service.await_pairing("P"))
        await harness.wait_for_command("T", "streaming")

        await harness.service.stop()

        for task in (command, pairing):
            with pytest.raises(ServiceStopped):
                await task
