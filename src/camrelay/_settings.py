"""Service configuration via pydantic-settings.

Configuration is loaded from environment variables and/or a ``.env``
file.  Every variable carries the ``CAMRELAY_`` prefix and nested
models use ``__`` as the delimiter, e.g.
``CAMRELAY_MQTT__HOST=broker.local``.

The schema covers:

* **MQTT** — broker connection and topic layout.
* **Logging** — level, format, optional file sink, rotation.
* **Commands** — reply timeout and the overlapping-request policy.
* **Pairing** — how long a pairing token waits for its device.
* **Devices** — the freshness window behind the derived *online* flag.

All durations are in **seconds**.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import (
    BaseModel,
    Field,
    SecretStr,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

# -------------------------------------------------------------------
# Sub-models (plain BaseModel, nested into Settings by composition)
# -------------------------------------------------------------------


class MqttSettings(BaseModel):
    """MQTT broker connection and topic configuration.

    Environment variables (with ``__`` nesting)::

        CAMRELAY_MQTT__HOST=broker.local
        CAMRELAY_MQTT__PORT=1883
        CAMRELAY_MQTT__USERNAME=user
        CAMRELAY_MQTT__PASSWORD=secret
        CAMRELAY_MQTT__TOPIC_PREFIX=api
    """

    host: str = Field(
        default="localhost",
        description="MQTT broker hostname or IP address.",
    )
    port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=1883,
        description="MQTT broker port.",
    )
    username: str | None = Field(
        default=None,
        description="MQTT authentication username (optional).",
    )
    password: SecretStr | None = Field(
        default=None,
        description="MQTT authentication password (optional).",
    )
    client_id: str = Field(
        default="",
        description=(
            "MQTT client identifier. When empty, the service generates "
            "'camrelay-{hex8}' at startup."
        ),
    )
    reconnect_interval: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="Seconds to wait before reconnecting after connection loss.",
    )
    topic_prefix: str = Field(
        default="api",
        description="First segment of every device topic ('{prefix}/{token}/...').",
    )
    qos: Annotated[int, Field(ge=0, le=2)] = Field(
        default=0,
        description="QoS level used for subscriptions.",
    )


class LoggingSettings(BaseModel):
    """Logging configuration.

    When ``file`` is set, logs are also written to a rotating file
    (size-based rotation, ``backup_count`` generations kept).  When
    ``None``, logs go to stderr only.

    The ``format`` field selects the output format:

    - ``"json"`` (default) — structured JSON lines for log aggregators.
    - ``"text"`` — human-readable timestamped lines for development.
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Root log level.",
    )
    format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format ('json' or 'text').",
    )
    file: str | None = Field(
        default=None,
        description="Optional log file path. ``None`` means stderr only.",
    )
    max_file_size_mb: Annotated[int, Field(ge=1)] = Field(
        default=10,
        description="Maximum log file size in megabytes before rotation.",
    )
    backup_count: Annotated[int, Field(ge=0)] = Field(
        default=3,
        description="Number of rotated log files to keep.",
    )


class CommandSettings(BaseModel):
    """Command round-trip configuration."""

    timeout: Annotated[float, Field(gt=0)] = Field(
        default=30.0,
        description="Seconds to wait for a device reply before DeviceTimeout.",
    )
    overlap_policy: Literal["reject", "supersede"] = Field(
        default="reject",
        description=(
            "What happens when a second command is sent to the same "
            "device and kind while one is still pending. 'reject' fails "
            "the newcomer with RequestInFlight; 'supersede' fails the "
            "earlier waiter with RequestSuperseded."
        ),
    )


class PairingSettings(BaseModel):
    """Pairing negotiation configuration."""

    timeout: Annotated[float, Field(gt=0)] = Field(
        default=300.0,
        description="Seconds a freshly issued token waits for its device.",
    )


class DeviceSettings(BaseModel):
    """Device liveness configuration."""

    online_window: Annotated[float, Field(gt=0)] = Field(
        default=300.0,
        description="A device counts as online if seen within this many seconds.",
    )


# -------------------------------------------------------------------
# Root settings
# -------------------------------------------------------------------


class Settings(BaseSettings):
    """Root settings for the camrelay service.

    Example ``.env``::

        CAMRELAY_MQTT__HOST=broker.local
        CAMRELAY_MQTT__PASSWORD=secret
        CAMRELAY_LOGGING__LEVEL=DEBUG
        CAMRELAY_LOGGING__FORMAT=text
        CAMRELAY_COMMANDS__TIMEOUT=10
    """

    model_config = SettingsConfigDict(
        env_prefix="CAMRELAY_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    mqtt: MqttSettings = Field(
        default_factory=MqttSettings,
        description="MQTT broker connection settings.",
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Logging configuration.",
    )
    commands: CommandSettings = Field(
        default_factory=CommandSettings,
        description="Command round-trip settings.",
    )
    pairing: PairingSettings = Field(
        default_factory=PairingSettings,
        description="Pairing negotiation settings.",
    )
    devices: DeviceSettings = Field(
        default_factory=DeviceSettings,
        description="Device liveness settings.",
    )
