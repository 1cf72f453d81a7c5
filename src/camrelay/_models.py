"""Domain value types: devices, records, users and command payloads."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

ONLINE_WINDOW = timedelta(minutes=5)


class DeviceStatus(StrEnum):
    """What a camera device is currently doing."""

    OFF = "OFF"
    STREAMING = "STREAMING"
    MEMORY = "MEMORY"
    RECORDING = "RECORDING"


class CommandKind(StrEnum):
    """Kinds of request/response command; also the topic segment."""

    MEMORY = "memory"
    STREAMING = "streaming"


class StatusChannel(StrEnum):
    """Status topics a device reports on (``cam/{channel}/status``)."""

    MEMORY = "memory"
    STREAM = "stream"
    CONNECT = "connect"


class UploadStatus(StrEnum):
    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


def new_id() -> str:
    """Return a fresh opaque entity identifier."""
    return uuid.uuid4().hex


@dataclass
class Device:
    """A paired camera device as persisted by the device repository."""

    token: str
    created_at: datetime
    id: str = field(default_factory=new_id)
    status: DeviceStatus = DeviceStatus.OFF
    last_seen: datetime | None = None
    streaming_url: str | None = None
    is_paired: bool = False
    record_ids: list[str] = field(default_factory=list)
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.last_seen is None:
            self.last_seen = self.created_at
        if self.updated_at is None:
            self.updated_at = self.created_at

    def is_online(self, now: datetime, window: timedelta = ONLINE_WINDOW) -> bool:
        """Derived liveness: seen within *window* and not switched off."""
        if self.status is DeviceStatus.OFF or self.last_seen is None:
            return False
        return now - self.last_seen < window


@dataclass(frozen=True, slots=True)
class RecordMetadata:
    duration: float | None = None
    resolution: str | None = None
    fps: float | None = None


@dataclass
class Record:
    """A unit of recorded media announced by a device."""

    device_id: str
    folder_name: str
    created_at: datetime
    id: str = field(default_factory=new_id)
    file_count: int = 0
    size: int = 0
    upload_status: UploadStatus = UploadStatus.PENDING
    metadata: RecordMetadata = field(default_factory=RecordMetadata)


@dataclass
class User:
    username: str
    id: str = field(default_factory=new_id)
    device_ids: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Command payload builders
# ---------------------------------------------------------------------------


COMMAND_NAMES = frozenset({"GET_MEMORY", "START_STREAMING", "STOP_STREAMING"})


def is_command_echo(payload: Any) -> bool:
    """Whether *payload* is one of our own commands seen on the way back.

    Commands and replies share the ``cam/{kind}`` topic, so the broker
    hands every published command straight back to us.
    """
    return isinstance(payload, dict) and payload.get("command") in COMMAND_NAMES


def memory_command(record_id: str, folder_name: str) -> dict[str, Any]:
    """Payload asking a device to fetch one of its recorded folders."""
    return {
        "command": "GET_MEMORY",
        "recordID": record_id,
        "folderName": folder_name,
    }


def streaming_command(action: str) -> dict[str, Any]:
    """Payload switching a device's live stream on or off.

    Raises:
        ValueError: If *action* is not ``ON`` or ``OFF`` (any case).
    """
    normalized = action.strip().upper()
    if normalized not in ("ON", "OFF"):
        msg = f"Streaming action must be 'ON' or 'OFF', got {action!r}"
        raise ValueError(msg)
    return {
        "command": "START_STREAMING" if normalized == "ON" else "STOP_STREAMING",
        "action": normalized,
    }
