"""Request/response commands over one-way MQTT topics.

:class:`CommandCorrelator` turns a publish on
``{prefix}/{token}/cam/{kind}`` into an awaitable call.  The reply is
matched purely by topic: a message on the same ``cam/{kind}`` topic of
the same device resolves the outstanding request keyed by
``(kind, token)``.

Every call ends in exactly one of:

- the reply payload (the router called :meth:`CommandCorrelator.deliver`),
- :class:`~camrelay._errors.DeviceTimeout` (deadline elapsed),
- :class:`~camrelay._errors.TransportUnavailable` (publish failed,
  raised immediately without waiting for the deadline).
"""

from __future__ import annotations

import json
import logging
from typing import Any

from camrelay._clock import ClockPort, SystemClock
from camrelay._errors import DeviceTimeout, ServiceStopped, TransportUnavailable
from camrelay._logging import device_context
from camrelay._models import CommandKind
from camrelay._mqtt import MqttPort
from camrelay._pending import OverlapPolicy, PendingTable
from camrelay._topics import command_topic

logger = logging.getLogger(__name__)

type CorrelationKey = tuple[CommandKind, str]


class CommandCorrelator:
    """Publishes device commands and waits for their replies.

    Args:
        mqtt: Transport used to publish commands.
        topic_prefix: First topic segment (e.g. ``"api"``).
        default_timeout: Seconds to wait when a call passes no timeout.
        policy: Behaviour for overlapping requests on the same key.
        clock: Monotonic clock used to stamp deadlines.
    """

    def __init__(
        self,
        *,
        mqtt: MqttPort,
        topic_prefix: str,
        default_timeout: float = 30.0,
        policy: OverlapPolicy = OverlapPolicy.REJECT,
        clock: ClockPort | None = None,
    ) -> None:
        self._mqtt = mqtt
        self._topic_prefix = topic_prefix
        self._default_timeout = default_timeout
        self._clock = clock if clock is not None else SystemClock()
        self._table = PendingTable(policy=policy, name="commands")

    async def send_and_await(
        self,
        token: str,
        kind: CommandKind | str,
        payload: dict[str, Any],
        timeout: float | None = None,
    ) -> Any:
        """Publish a command and wait for the device's reply.

        Args:
            token: Device token.
            kind: Command kind (``memory`` or ``streaming``).
            payload: JSON-serialisable command body.
            timeout: Seconds to wait; ``None`` uses the default.

        Returns:
            The decoded reply payload.

        Raises:
            ValueError: On an unknown *kind* or a non-positive *timeout*.
            DeviceTimeout: No reply before the deadline.
            TransportUnavailable: The command could not be published.
            RequestInFlight: Another request for the same key is pending
                (``reject`` policy).
            RequestSuperseded: A newer request replaced this one
                (``supersede`` policy).
        """
        kind = CommandKind(kind)
        wait = self._default_timeout if timeout is None else timeout
        if wait <= 0:
            msg = f"timeout must be positive, got {wait}"
            raise ValueError(msg)

        key: CorrelationKey = (kind, token)
        entry = self._table.register(key, self._clock.now() + wait)
        topic = command_topic(self._topic_prefix, token, kind)
        try:
            try:
                await self._mqtt.publish(topic, json.dumps(payload), qos=1)
            except TransportUnavailable:
                raise
            except Exception as exc:
                msg = f"Could not publish to {topic}: {exc}"
                raise TransportUnavailable(msg) from exc
            logger.info(
                "Sent %s command to device %s",
                kind,
                token,
                extra=device_context(token, kind, topic),
            )
            reply = await self._table.wait(entry, wait)
        except TimeoutError:
            logger.warning(
                "Device %s did not answer %s command within %.1fs",
                token,
                kind,
                wait,
                extra=device_context(token, kind, topic),
            )
            raise DeviceTimeout(token, kind, wait) from None
        finally:
            # Publish failures and cancellation leave the slot behind.
            self._table.discard(entry)
        logger.info(
            "Received %s reply from device %s",
            kind,
            token,
            extra=device_context(token, kind),
        )
        return reply

    def deliver(self, token: str, kind: CommandKind | str, payload: Any) -> bool:
        """Resolve the outstanding request for ``(kind, token)``.

        Returns:
            True if a waiting caller received *payload*; False when
            nothing was pending (late or duplicate reply, dropped).
        """
        resolved = self._table.resolve((CommandKind(kind), token), payload)
        if not resolved:
            logger.debug(
                "Dropping unsolicited %s reply from %s",
                kind,
                token,
                extra=device_context(token, kind),
            )
        return resolved

    def is_pending(self, token: str, kind: CommandKind | str) -> bool:
        """Whether a request for ``(kind, token)`` is outstanding."""
        return (CommandKind(kind), token) in self._table

    def deadline(self, token: str, kind: CommandKind | str) -> float | None:
        """Monotonic deadline of the outstanding request, if any."""
        entry = self._table.get((CommandKind(kind), token))
        return entry.deadline if entry is not None else None

    @property
    def pending_count(self) -> int:
        return len(self._table)

    def shutdown(self) -> int:
        """Fail every outstanding request with ServiceStopped."""
        failed = self._table.drain(ServiceStopped("Service is shutting down"))
        if failed:
            logger.info("Aborted %d outstanding command(s)", failed)
        return failed
