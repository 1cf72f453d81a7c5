"""Error taxonomy and structured error payloads.

Exceptions fall into two groups:

- **Caller-facing** — raised out of ``send_and_await`` /
  ``await_pairing`` and the service helpers: :class:`DeviceTimeout`,
  :class:`TransportUnavailable`, :class:`RequestInFlight`,
  :class:`RequestSuperseded`, :class:`PairingTimeout`,
  :class:`ServiceStopped`, :class:`UnknownUser`.
- **Router-internal** — raised while classifying or decoding inbound
  traffic and contained by the router: :class:`MalformedReply`,
  :class:`UnroutableTopic`.  They are logged and never reach a caller.

:func:`build_error_payload` turns any exception into an immutable
:class:`ErrorPayload` with a machine-readable ``error_type`` so outer
layers (CLI, an HTTP surface) can map failures without string matching.

Payload schema::

    {
        "error_type": "device_timeout",
        "message": "No reply from device 'ab12...' (memory) within 30.0s",
        "device": "ab12cd34ef56ab78" | null,
        "timestamp": "2026-10-17T12:34:56+00:00",
        "details": {}
    }
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field

from camrelay._clock import WallClock, utc_now

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class CamRelayError(Exception):
    """Base class for every error raised by camrelay."""


class DeviceTimeout(CamRelayError):
    """The device did not reply before the request deadline."""

    def __init__(self, token: str, kind: str, timeout: float) -> None:
        self.token = token
        self.kind = kind
        self.timeout = timeout
        super().__init__(
            f"No reply from device '{token}' ({kind}) within {timeout}s",
        )


class TransportUnavailable(CamRelayError):
    """Publishing failed because the broker connection is down."""


class MalformedReply(CamRelayError):
    """An inbound payload on a JSON channel could not be decoded."""


class UnroutableTopic(CamRelayError):
    """An inbound topic matches none of the known layouts."""


class RequestInFlight(CamRelayError):
    """A request with the same correlation key is already pending."""

    def __init__(self, key: object) -> None:
        self.key = key
        super().__init__(f"A request is already pending for {key!r}")


class RequestSuperseded(CamRelayError):
    """A newer request for the same correlation key replaced this one."""

    def __init__(self, key: object) -> None:
        self.key = key
        super().__init__(f"Request for {key!r} was superseded by a newer one")


class PairingTimeout(CamRelayError):
    """No pairing announcement arrived for the token in time."""

    def __init__(self, token: str, timeout: float) -> None:
        self.token = token
        self.timeout = timeout
        super().__init__(f"Pairing for token '{token}' timed out after {timeout}s")


class ServiceStopped(CamRelayError):
    """The service shut down while the request was outstanding."""


class UnknownUser(CamRelayError):
    """The referenced user does not exist."""


# ---------------------------------------------------------------------------
# Structured payloads
# ---------------------------------------------------------------------------

ERROR_TYPES: dict[type[Exception], str] = {
    DeviceTimeout: "device_timeout",
    TransportUnavailable: "transport_unavailable",
    MalformedReply: "malformed_reply",
    UnroutableTopic: "unroutable_topic",
    RequestInFlight: "request_in_flight",
    RequestSuperseded: "request_superseded",
    PairingTimeout: "pairing_timeout",
    ServiceStopped: "service_stopped",
    UnknownUser: "unknown_user",
}
"""Default mapping from exception class to ``error_type`` string."""


@dataclass(frozen=True, slots=True)
class ErrorPayload:
    """Immutable structured error description."""

    error_type: str
    message: str
    device: str | None
    timestamp: str
    details: dict[str, object] = field(default_factory=dict)

    def to_json(self) -> str:
        """Serialise to a JSON string."""
        return json.dumps(asdict(self))


def build_error_payload(
    error: Exception,
    *,
    error_type_map: dict[type[Exception], str] | None = None,
    device: str | None = None,
    details: dict[str, object] | None = None,
    clock: WallClock | None = None,
) -> ErrorPayload:
    """Convert an exception into a structured :class:`ErrorPayload`.

    Looks up the exact class of the exception; subclasses are not
    matched.  Unmapped exceptions get the generic ``"error"`` type.

    Args:
        error: The exception to convert.
        error_type_map: Mapping from exception types to ``error_type``
            strings.  Defaults to :data:`ERROR_TYPES`.
        device: Optional device token to include in the payload.  When
            omitted, the token carried by :class:`DeviceTimeout` or
            :class:`PairingTimeout` is used.
        details: Optional additional context.
        clock: Wall clock for the timestamp (defaults to UTC now).
    """
    resolved_map = ERROR_TYPES if error_type_map is None else error_type_map
    error_type = resolved_map.get(type(error), "error")
    if device is None:
        device = getattr(error, "token", None)
    now = clock() if clock is not None else utc_now()
    return ErrorPayload(
        error_type=error_type,
        message=str(error),
        device=device,
        timestamp=now.isoformat(),
        details=details or {},
    )
