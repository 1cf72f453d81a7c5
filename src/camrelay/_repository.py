"""Persistence ports and in-memory adapters.

The core never owns persisted state; it talks to three collaborator
ports:

- :class:`DeviceRepository` — device lookup, creation, status and
  streaming-URL updates, record attachment
- :class:`RecordRepository` — record creation and listing
- :class:`UserRepository` — user lookup and device attachment

The in-memory adapters back the CLI and the test suite.  Each guards
its maps with an :class:`asyncio.Lock`, so concurrent updates to
different devices never interleave half-applied.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol, runtime_checkable

from camrelay._clock import WallClock, utc_now
from camrelay._models import (
    Device,
    DeviceStatus,
    Record,
    RecordMetadata,
    UploadStatus,
    User,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Ports (Protocols)
# ---------------------------------------------------------------------------


@runtime_checkable
class DeviceRepository(Protocol):
    async def find_by_token(self, token: str) -> Device | None: ...

    async def get(self, device_id: str) -> Device | None: ...

    async def create(self, token: str) -> Device: ...

    async def update_status(self, token: str, status: DeviceStatus) -> Device | None:
        """Set *status*; refresh ``last_seen`` when the status changes."""
        ...

    async def set_streaming_url(self, token: str, url: str) -> Device | None:
        """Store the stream URL and mark the device STREAMING."""
        ...

    async def add_record(self, device_id: str, record_id: str) -> None: ...

    async def delete(self, device_id: str) -> bool: ...


@runtime_checkable
class RecordRepository(Protocol):
    async def create(
        self,
        device_id: str,
        folder_name: str,
        **fields: Any,
    ) -> Record: ...

    async def list_for_device(self, device_id: str) -> list[Record]: ...


@runtime_checkable
class UserRepository(Protocol):
    async def get(self, user_id: str) -> User | None: ...

    async def create(self, username: str) -> User: ...

    async def attach_device(self, user_id: str, device_id: str) -> None: ...


# ---------------------------------------------------------------------------
# In-memory adapters
# ---------------------------------------------------------------------------


class InMemoryDeviceRepository:
    """Dict-backed :class:`DeviceRepository`.

    Args:
        clock: Wall clock for ``created_at``/``last_seen`` stamps.
    """

    def __init__(self, *, clock: WallClock | None = None) -> None:
        self._clock = clock if clock is not None else utc_now
        self._by_id: dict[str, Device] = {}
        self._by_token: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def find_by_token(self, token: str) -> Device | None:
        device_id = self._by_token.get(token)
        return self._by_id.get(device_id) if device_id is not None else None

    async def get(self, device_id: str) -> Device | None:
        return self._by_id.get(device_id)

    async def create(self, token: str) -> Device:
        """Create a paired device in the OFF state.

        Raises:
            ValueError: If a device with *token* already exists.
        """
        async with self._lock:
            if token in self._by_token:
                msg = f"Device token '{token}' is already in use"
                raise ValueError(msg)
            device = Device(token=token, created_at=self._clock(), is_paired=True)
            self._by_id[device.id] = device
            self._by_token[token] = device.id
            return device

    async def update_status(self, token: str, status: DeviceStatus) -> Device | None:
        async with self._lock:
            device = await self.find_by_token(token)
            if device is None:
                return None
            now = self._clock()
            if device.status is not status:
                device.status = status
                device.last_seen = now
            device.updated_at = now
            return device

    async def set_streaming_url(self, token: str, url: str) -> Device | None:
        async with self._lock:
            device = await self.find_by_token(token)
            if device is None:
                return None
            now = self._clock()
            device.streaming_url = url
            if device.status is not DeviceStatus.STREAMING:
                device.status = DeviceStatus.STREAMING
                device.last_seen = now
            device.updated_at = now
            return device

    async def add_record(self, device_id: str, record_id: str) -> None:
        async with self._lock:
            device = self._by_id.get(device_id)
            if device is None:
                msg = f"Unknown device '{device_id}'"
                raise KeyError(msg)
            device.record_ids.append(record_id)

    async def delete(self, device_id: str) -> bool:
        async with self._lock:
            device = self._by_id.pop(device_id, None)
            if device is None:
                return False
            self._by_token.pop(device.token, None)
            return True

    def all(self) -> list[Device]:
        return list(self._by_id.values())


class InMemoryRecordRepository:
    """Dict-backed :class:`RecordRepository`."""

    def __init__(self, *, clock: WallClock | None = None) -> None:
        self._clock = clock if clock is not None else utc_now
        self._records: dict[str, Record] = {}
        self._lock = asyncio.Lock()

    async def create(
        self,
        device_id: str,
        folder_name: str,
        **fields: Any,
    ) -> Record:
        """Create a record.

        Recognised *fields*: ``file_count``, ``size``, ``upload_status``
        and ``metadata`` (a mapping with ``duration``, ``resolution``,
        ``fps``).  Unknown keys are ignored.
        """
        folder_name = folder_name.strip()
        if not folder_name:
            msg = "Folder name is required"
            raise ValueError(msg)
        raw_meta = fields.get("metadata") or {}
        record = Record(
            device_id=device_id,
            folder_name=folder_name,
            created_at=self._clock(),
            file_count=int(fields.get("file_count", 0)),
            size=int(fields.get("size", 0)),
            upload_status=UploadStatus(fields.get("upload_status", "pending")),
            metadata=RecordMetadata(
                duration=raw_meta.get("duration"),
                resolution=raw_meta.get("resolution"),
                fps=raw_meta.get("fps"),
            ),
        )
        async with self._lock:
            self._records[record.id] = record
        return record

    async def get(self, record_id: str) -> Record | None:
        return self._records.get(record_id)

    async def list_for_device(self, device_id: str) -> list[Record]:
        """Records of *device_id*, newest first."""
        records = [r for r in self._records.values() if r.device_id == device_id]
        return sorted(records, key=lambda r: r.created_at, reverse=True)


class InMemoryUserRepository:
    """Dict-backed :class:`UserRepository`."""

    def __init__(self) -> None:
        self._users: dict[str, User] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_id: str) -> User | None:
        return self._users.get(user_id)

    async def create(self, username: str) -> User:
        user = User(username=username)
        async with self._lock:
            self._users[user.id] = user
        return user

    async def attach_device(self, user_id: str, device_id: str) -> None:
        async with self._lock:
            user = self._users.get(user_id)
            if user is None:
                msg = f"Unknown user '{user_id}'"
                raise KeyError(msg)
            if device_id not in user.device_ids:
                user.device_ids.append(device_id)
