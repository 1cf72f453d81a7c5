"""MQTT client port and adapters.

Provides :class:`MqttPort` (Protocol) and three implementations:

- :class:`MqttClient` — real aiomqtt-based client with reconnection
- :class:`MockMqttClient` — test double that records calls
- :class:`NullMqttClient` — silent no-op adapter

Design decisions:

- aiomqtt imported lazily inside ``MqttClient._connection_loop()`` so the
  mock and null adapters work without aiomqtt installed
- The real client replays its subscriptions after every reconnect
- Inbound ``(topic, payload)`` pairs fan out to registered callbacks;
  routing is the consumer's job
- ``publish()`` raises :class:`~camrelay._errors.TransportUnavailable`
  whenever the broker cannot be reached, so callers never see
  aiomqtt's own exception types
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from camrelay._errors import TransportUnavailable
from camrelay._settings import MqttSettings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Type aliases
# ---------------------------------------------------------------------------

MessageCallback = Callable[[str, str], Awaitable[None]]
"""Awaited with ``(topic, payload)`` for every message the broker hands us."""

# ---------------------------------------------------------------------------
# Ports (Protocols)
# ---------------------------------------------------------------------------


@runtime_checkable
class MqttPort(Protocol):
    """Port contract for MQTT publish/subscribe."""

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None: ...

    async def subscribe(self, topic: str) -> None: ...


@runtime_checkable
class MqttMessageHandler(Protocol):
    """Adapters that deliver inbound messages to callbacks."""

    def on_message(self, callback: MessageCallback) -> None: ...


@runtime_checkable
class MqttLifecycle(Protocol):
    """Adapters that own a connection and must be started/stopped."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


# ---------------------------------------------------------------------------
# Null adapter
# ---------------------------------------------------------------------------


@dataclass
class NullMqttClient:
    """Transport that goes nowhere.

    Useful for running the service without a broker: nothing is ever
    delivered back, so every command sent through it times out.
    """

    async def publish(
        self,
        topic: str,
        payload: str,  # noqa: ARG002
        *,
        retain: bool = False,  # noqa: ARG002
        qos: int = 1,  # noqa: ARG002
    ) -> None:
        """Drop the message."""
        logger.debug("No transport, dropping publish to %s", topic)

    async def subscribe(self, topic: str) -> None:
        """Ignore the subscription."""
        logger.debug("No transport, ignoring subscription to %s", topic)


# ---------------------------------------------------------------------------
# Mock / test-double adapter
# ---------------------------------------------------------------------------


@dataclass
class MockMqttClient:
    """Broker stand-in for tests.

    Keeps every publish and subscription for assertions, and lets a test
    act as the camera through ``deliver()`` and
    ``wait_for_publish()``.  With ``connected = False``, ``publish()``
    fails the way the real client does while the broker is away.
    """

    published: list[tuple[str, str, bool, int]] = field(
        default_factory=list,
    )
    subscriptions: list[str] = field(default_factory=list)
    connected: bool = True
    _callbacks: list[MessageCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )
    _publish_event: asyncio.Event = field(
        default_factory=asyncio.Event,
        init=False,
        repr=False,
    )

    # -- MqttPort methods --------------------------------------------------

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        """Record a publish call.

        Raises:
            TransportUnavailable: If ``connected`` is False.
        """
        if not self.connected:
            msg = "MockMqttClient is not connected"
            raise TransportUnavailable(msg)
        self.published.append((topic, payload, retain, qos))
        self._publish_event.set()

    async def subscribe(self, topic: str) -> None:
        """Remember *topic*; nothing is filtered on it."""
        self.subscriptions.append(topic)

    # -- Test helpers -------------------------------------------------------

    def on_message(self, callback: MessageCallback) -> None:
        """Add a callback for :meth:`deliver`."""
        self._callbacks.append(callback)

    async def deliver(self, topic: str, payload: str) -> None:
        """Play a device: hand *payload* on *topic* to every callback, in order."""
        for cb in self._callbacks:
            await cb(topic, payload)

    async def wait_for_publish(self, topic: str) -> str:
        """Block until something is published to *topic*; return its payload.

        Lets a test play the device: wait for the command, then
        ``deliver()`` the reply.
        """
        while True:
            messages = self.get_messages_for(topic)
            if messages:
                return messages[-1][0]
            self._publish_event.clear()
            await self._publish_event.wait()

    @property
    def publish_count(self) -> int:
        """How many commands (or other messages) went out."""
        return len(self.published)

    @property
    def subscribe_count(self) -> int:
        """How many subscribe calls were made."""
        return len(self.subscriptions)

    def reset(self) -> None:
        """Forget publishes, subscriptions and callbacks."""
        self.published.clear()
        self.subscriptions.clear()
        self._callbacks.clear()

    def get_messages_for(
        self,
        topic: str,
    ) -> list[tuple[str, bool, int]]:
        """``(payload, retain, qos)`` of everything published on *topic*, oldest first."""
        return [
            (payload, retain, qos)
            for t, payload, retain, qos in self.published
            if t == topic
        ]


# ---------------------------------------------------------------------------
# Real adapter
# ---------------------------------------------------------------------------


def decode_payload(raw: Any) -> str | None:
    """Turn an aiomqtt payload into text.

    Devices send UTF-8 JSON or bare ``ON``/``OFF`` strings; undecodable
    bytes are replaced rather than dropped so the router can still log
    the message.  Returns None for an empty (``None``) payload.
    """
    if raw is None:
        return None
    if isinstance(raw, (bytes, bytearray)):
        return raw.decode("utf-8", errors="replace")
    return str(raw)


@dataclass
class MqttClient:
    """Broker connection backed by *aiomqtt*.

    A background task keeps one session open and reconnects after
    ``settings.reconnect_interval`` seconds whenever it drops.  Between
    sessions :meth:`publish` fails fast with
    :class:`~camrelay._errors.TransportUnavailable`, so a command sent
    while the broker is away never waits for its reply deadline.
    """

    settings: MqttSettings

    _callbacks: list[MessageCallback] = field(default_factory=list, init=False, repr=False)
    _subscriptions: set[str] = field(default_factory=set, init=False, repr=False)
    _client: Any = field(default=None, init=False, repr=False)
    _listen_task: asyncio.Task[None] | None = field(default=None, init=False, repr=False)
    _connected: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)
    _stopping: bool = field(default=False, init=False, repr=False)

    # -- MqttPort methods --------------------------------------------------

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        """Publish *payload* on *topic*.

        Raises:
            TransportUnavailable: No session is open, or the broker
                rejected the publish.
        """
        client = self._client
        if client is None:
            msg = "MqttClient is not connected"
            raise TransportUnavailable(msg)
        try:
            await client.publish(topic, payload, retain=retain, qos=qos)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            msg = f"Failed to publish to {topic}: {exc}"
            raise TransportUnavailable(msg) from exc
        logger.debug("Published to %s (qos=%d)", topic, qos)

    async def subscribe(self, topic: str) -> None:
        """Subscribe to *topic* now (if connected) and on every reconnect."""
        self._subscriptions.add(topic)
        if self._client is not None:
            await self._client.subscribe(topic, qos=self.settings.qos)

    def on_message(self, callback: MessageCallback) -> None:
        self._callbacks.append(callback)

    # -- Lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Launch the connection task."""
        if self._listen_task is not None and not self._listen_task.done():
            logger.debug("MqttClient.start() called while already running")
            return
        self._stopping = False
        self._listen_task = asyncio.create_task(self._connection_loop(), name="mqtt-connection")

    async def stop(self) -> None:
        """Cancel the connection task.  Idempotent."""
        self._stopping = True
        task, self._listen_task = self._listen_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._client = None
        self._connected.clear()

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    async def wait_connected(self, timeout: float | None = None) -> bool:
        """Wait for an open session.

        Returns:
            True once connected, False if *timeout* elapsed first.
        """
        try:
            async with asyncio.timeout(timeout):
                await self._connected.wait()
        except TimeoutError:
            return False
        return True

    # -- Internal -----------------------------------------------------------

    def _client_options(self) -> dict[str, Any]:
        password = self.settings.password
        return {
            "hostname": self.settings.host,
            "port": self.settings.port,
            "username": self.settings.username,
            "password": password.get_secret_value() if password is not None else None,
            "identifier": self.settings.client_id or None,
        }

    async def _connection_loop(self) -> None:
        try:
            import aiomqtt  # noqa: PLC0415
        except ModuleNotFoundError as exc:
            msg = "aiomqtt is required to use MqttClient"
            raise RuntimeError(msg) from exc

        while not self._stopping:
            try:
                async with aiomqtt.Client(**self._client_options()) as client:
                    await self._session(client)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning(
                    "Broker %s:%d unreachable, retrying in %.1fs",
                    self.settings.host,
                    self.settings.port,
                    self.settings.reconnect_interval,
                    exc_info=True,
                )
                await asyncio.sleep(self.settings.reconnect_interval)

    async def _session(self, client: Any) -> None:
        """Restore subscriptions, then pump messages until the session ends."""
        self._client = client
        try:
            for topic in sorted(self._subscriptions):
                await client.subscribe(topic, qos=self.settings.qos)
            self._connected.set()
            logger.info(
                "Connected to broker %s:%d (%d subscriptions)",
                self.settings.host,
                self.settings.port,
                len(self._subscriptions),
            )
            async for message in client.messages:
                await self._dispatch(message)
        finally:
            self._connected.clear()
            self._client = None

    async def _dispatch(self, message: Any) -> None:
        topic = str(message.topic)
        payload = decode_payload(message.payload)
        if payload is None:
            logger.debug("Skipping empty message on %s", topic)
            return
        for cb in self._callbacks:
            try:
                await cb(topic, payload)
            except Exception:
                logger.exception("Error in message callback for %s", topic)
