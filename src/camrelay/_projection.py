"""Projection of inbound device traffic onto persisted state.

- :func:`project_status` — pure mapping from a status channel and its
  raw payload to a :class:`~camrelay._models.DeviceStatus`.
- :class:`StatusProjector` — applies projected statuses and streaming
  URLs through the device repository.
- :class:`RecordIngestor` — turns an unsolicited record announcement
  into a persisted record attached to its device.

Persistence failures are logged here and never propagate: the in-memory
correlation outcome does not depend on them.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Mapping
from typing import Any

from camrelay._errors import MalformedReply
from camrelay._models import DeviceStatus, Record, StatusChannel
from camrelay._repository import DeviceRepository, RecordRepository

logger = logging.getLogger(__name__)

_ON = "ON"

_CHANNEL_STATUS: dict[StatusChannel, DeviceStatus] = {
    StatusChannel.MEMORY: DeviceStatus.MEMORY,
    StatusChannel.STREAM: DeviceStatus.STREAMING,
    StatusChannel.CONNECT: DeviceStatus.RECORDING,
}


def project_status(channel: StatusChannel | str, payload: str) -> DeviceStatus:
    """Map a status report to a device status.

    Exactly ``"ON"`` on a channel yields that channel's activity; any other
    payload (``"OFF"``, ``" ON"``, garbage, empty) yields ``OFF``.

    Raises:
        ValueError: If *channel* is not a known status channel.
    """
    channel = StatusChannel(channel)
    if payload == _ON:
        return _CHANNEL_STATUS[channel]
    return DeviceStatus.OFF


def extract_stream_url(reply: Any) -> str | None:
    """Stream URL carried by a streaming reply (``streamUrl``, else ``ip``)."""
    if not isinstance(reply, Mapping):
        return None
    url = reply.get("streamUrl") or reply.get("ip")
    return str(url) if url else None


class _DeviceLock:
    """FIFO lock for one device plus a count of tasks holding or queued on it."""

    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class StatusProjector:
    """Writes projected device state through the device repository.

    Writes for one device are applied one at a time in the order they
    were started, so a slow write can never land after a newer one.
    The router starts one task per inbound message in arrival order and
    :class:`asyncio.Lock` wakes its waiters first-in first-out, so the
    persisted status always reflects the device's last report.  Writes
    for different devices proceed concurrently.
    """

    def __init__(self, *, devices: DeviceRepository) -> None:
        self._devices = devices
        self._locks: dict[str, _DeviceLock] = {}

    @contextlib.asynccontextmanager
    async def _serialized(self, token: str) -> AsyncIterator[None]:
        slot = self._locks.get(token)
        if slot is None:
            slot = self._locks[token] = _DeviceLock()
        slot.users += 1
        try:
            async with slot.lock:
                yield
        finally:
            slot.users -= 1
            if slot.users == 0:
                del self._locks[token]

    async def apply(
        self,
        token: str,
        channel: StatusChannel | str,
        payload: str,
    ) -> DeviceStatus | None:
        """Project and persist a status report.

        Returns:
            The projected status, or None if persisting it failed or the
            device is unknown.
        """
        status = project_status(channel, payload)
        async with self._serialized(token):
            try:
                device = await self._devices.update_status(token, status)
            except Exception:
                logger.exception("Error updating status of device %s", token)
                return None
        if device is None:
            logger.warning("Status report from unknown device %s", token)
            return None
        logger.info("Device %s status updated to %s", token, status)
        return status

    async def apply_stream_url(self, token: str, url: str) -> bool:
        """Persist *url* and mark the device STREAMING.

        Returns:
            True when persisted.
        """
        async with self._serialized(token):
            try:
                device = await self._devices.set_streaming_url(token, url)
            except Exception:
                logger.exception("Error storing stream URL for device %s", token)
                return False
        if device is None:
            logger.warning("Stream URL from unknown device %s", token)
            return False
        logger.info("Device %s is streaming at %s", token, url)
        return True

    @property
    def busy_devices(self) -> int:
        """Devices with a write in progress or queued."""
        return len(self._locks)


class RecordIngestor:
    """Persists record announcements (``cam/record``)."""

    def __init__(
        self,
        *,
        devices: DeviceRepository,
        records: RecordRepository,
    ) -> None:
        self._devices = devices
        self._records = records

    async def ingest(self, token: str, announcement: Any) -> Record | None:
        """Create a record for *token* from its JSON announcement.

        Raises:
            MalformedReply: If the announcement lacks a ``folderName``.
        """
        if not isinstance(announcement, Mapping):
            msg = f"Record announcement from {token} is not an object"
            raise MalformedReply(msg)
        folder_name = announcement.get("folderName")
        if not isinstance(folder_name, str) or not folder_name.strip():
            msg = f"Record announcement from {token} has no folderName"
            raise MalformedReply(msg)

        device = await self._devices.find_by_token(token)
        if device is None:
            logger.error("Device not found for token: %s", token)
            return None

        fields: dict[str, Any] = {}
        for source, target in (
            ("fileCount", "file_count"),
            ("size", "size"),
            ("uploadStatus", "upload_status"),
            ("metadata", "metadata"),
        ):
            if announcement.get(source) is not None:
                fields[target] = announcement[source]

        record = await self._records.create(device.id, folder_name, **fields)
        await self._devices.add_record(device.id, record.id)
        logger.info("New record created: %s for device %s", folder_name, token)
        return record
