"""camrelay.

Request/response command correlation and device pairing for camera
devices that talk over one-way MQTT topics.
"""

from importlib.metadata import PackageNotFoundError, version

from camrelay._clock import ClockPort, SystemClock, WallClock, utc_now
from camrelay._correlator import CommandCorrelator
from camrelay._errors import (
    CamRelayError,
    DeviceTimeout,
    ErrorPayload,
    MalformedReply,
    PairingTimeout,
    RequestInFlight,
    RequestSuperseded,
    ServiceStopped,
    TransportUnavailable,
    UnknownUser,
    UnroutableTopic,
    build_error_payload,
)
from camrelay._logging import JsonFormatter, configure_logging, device_context
from camrelay._models import (
    CommandKind,
    Device,
    DeviceStatus,
    Record,
    RecordMetadata,
    StatusChannel,
    UploadStatus,
    User,
)
from camrelay._mqtt import (
    MessageCallback,
    MockMqttClient,
    MqttClient,
    MqttLifecycle,
    MqttMessageHandler,
    MqttPort,
    NullMqttClient,
)
from camrelay._pairing import (
    PairingCoordinator,
    PairingNegotiator,
    PairingOutcome,
    PairingState,
    PairingTicket,
    generate_device_token,
)
from camrelay._pending import OverlapPolicy, PendingTable
from camrelay._repository import (
    DeviceRepository,
    InMemoryDeviceRepository,
    InMemoryRecordRepository,
    InMemoryUserRepository,
    RecordRepository,
    UserRepository,
)
from camrelay._router import TopicRouter
from camrelay._service import CameraService
from camrelay._settings import (
    CommandSettings,
    DeviceSettings,
    LoggingSettings,
    MqttSettings,
    PairingSettings,
    Settings,
)

try:
    __version__ = version("camrelay")
except PackageNotFoundError:
    # Editable installs without metadata
    __version__ = "0.0.0+unknown"

__all__ = [
    # Version
    "__version__",
    # Service
    "CameraService",
    "CommandCorrelator",
    "PairingCoordinator",
    "PairingNegotiator",
    "PairingOutcome",
    "PairingState",
    "PairingTicket",
    "TopicRouter",
    "generate_device_token",
    # Pending
    "OverlapPolicy",
    "PendingTable",
    # Clock
    "ClockPort",
    "SystemClock",
    "WallClock",
    "utc_now",
    # Logging
    "JsonFormatter",
    "configure_logging",
    "device_context",
    # MQTT
    "MessageCallback",
    "MockMqttClient",
    "MqttClient",
    "MqttLifecycle",
    "MqttMessageHandler",
    "MqttPort",
    "NullMqttClient",
    # Errors
    "CamRelayError",
    "DeviceTimeout",
    "ErrorPayload",
    "MalformedReply",
    "PairingTimeout",
    "RequestInFlight",
    "RequestSuperseded",
    "ServiceStopped",
    "TransportUnavailable",
    "UnknownUser",
    "UnroutableTopic",
    "build_error_payload",
    # Models
    "CommandKind",
    "Device",
    "DeviceStatus",
    "Record",
    "RecordMetadata",
    "StatusChannel",
    "UploadStatus",
    "User",
    # Repositories
    "DeviceRepository",
    "InMemoryDeviceRepository",
    "InMemoryRecordRepository",
    "InMemoryUserRepository",
    "RecordRepository",
    "UserRepository",
    # Settings
    "CommandSettings",
    "DeviceSettings",
    "LoggingSettings",
    "MqttSettings",
    "PairingSettings",
    "Settings",
]
