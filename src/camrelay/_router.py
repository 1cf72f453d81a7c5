"""Inbound MQTT message routing.

Classifies each ``(topic, payload)`` event with
:func:`~camrelay._topics.classify_topic` and hands it to exactly one
handler:

    {prefix}/{token}/pair                    → PairingNegotiator.deliver
    {prefix}/{token}/cam/{channel}/status    → StatusProjector.apply
    {prefix}/{token}/cam/memory              → CommandCorrelator.deliver
    {prefix}/{token}/cam/streaming           → persist URL, then deliver
    {prefix}/{token}/cam/record              → RecordIngestor.ingest

Work that only touches in-memory tables (pairing, memory replies)
happens in-line.  Anything that reaches a repository runs as a
background task so slow persistence never holds up the transport's
delivery loop.  Status writes for one device still land in arrival
order: :class:`~camrelay._projection.StatusProjector` applies them one
at a time per device.

Silently ignores:
- Topics that match no layout (expected under wildcard subscriptions)
- JSON channels whose payload does not decode (logs WARNING)
- Our own commands echoed back on the shared ``cam/{kind}`` topics
"""

from __future__ import annotations

import json
import logging
from typing import Any

from camrelay._correlator import CommandCorrelator
from camrelay._errors import MalformedReply, UnroutableTopic
from camrelay._logging import device_context
from camrelay._models import CommandKind, StatusChannel, is_command_echo
from camrelay._pairing import PairingNegotiator
from camrelay._projection import (
    RecordIngestor,
    StatusProjector,
    extract_stream_url,
)
from camrelay._tasks import BackgroundTasks
from camrelay._topics import Route, RouteKind, classify_topic, subscription_patterns

logger = logging.getLogger(__name__)


def decode_json(topic: str, payload: str) -> Any:
    """Decode a JSON payload.

    Raises:
        MalformedReply: If *payload* is not valid JSON.
    """
    try:
        return json.loads(payload)
    except (json.JSONDecodeError, TypeError) as exc:
        msg = f"Invalid JSON on {topic}: {exc}"
        raise MalformedReply(msg) from exc


class TopicRouter:
    """Routes inbound device traffic to the core components.

    Args:
        topic_prefix: First topic segment (e.g. ``"api"``).
        correlator: Receives command replies.
        negotiator: Receives pairing announcements.
        projector: Applies status reports and stream URLs.
        ingestor: Persists record announcements.
        tasks: Supervisor for persistence work.
    """

    def __init__(
        self,
        *,
        topic_prefix: str,
        correlator: CommandCorrelator,
        negotiator: PairingNegotiator,
        projector: StatusProjector,
        ingestor: RecordIngestor,
        tasks: BackgroundTasks,
    ) -> None:
        self._topic_prefix = topic_prefix
        self._correlator = correlator
        self._negotiator = negotiator
        self._projector = projector
        self._ingestor = ingestor
        self._tasks = tasks

    @property
    def subscriptions(self) -> list[str]:
        """Topic patterns to subscribe to once at startup."""
        return subscription_patterns(self._topic_prefix)

    async def route(self, topic: str, payload: str) -> None:
        """Route one inbound message.  Never raises for bad input."""
        try:
            route = classify_topic(topic, self._topic_prefix)
        except UnroutableTopic:
            logger.debug("Ignoring message on unroutable topic %s", topic)
            return

        context = device_context(route.token, topic=topic)
        logger.debug("MQTT message (%s): %s", route.kind, payload, extra=context)
        try:
            self._dispatch(route, topic, payload)
        except MalformedReply as exc:
            logger.warning("Dropping malformed message: %s", exc, extra=context)

    def _dispatch(self, route: Route, topic: str, payload: str) -> None:
        match route.kind:
            case RouteKind.PAIRING:
                self._negotiator.deliver(route.token, decode_json(topic, payload))
            case RouteKind.STATUS if route.channel is not None:
                self._spawn_status(route.token, route.channel, payload)
            case RouteKind.MEMORY_REPLY:
                reply = decode_json(topic, payload)
                if not self._is_echo(topic, reply):
                    self._correlator.deliver(route.token, CommandKind.MEMORY, reply)
            case RouteKind.STREAMING_REPLY:
                reply = decode_json(topic, payload)
                if not self._is_echo(topic, reply):
                    self._on_streaming_reply(route.token, reply)
            case RouteKind.RECORD:
                self._tasks.spawn(
                    self._ingest(route.token, decode_json(topic, payload)),
                    name=f"record-{route.token}",
                )

    @staticmethod
    def _is_echo(topic: str, reply: Any) -> bool:
        if is_command_echo(reply):
            logger.debug("Ignoring echo of our own command on %s", topic)
            return True
        return False

    def _spawn_status(self, token: str, channel: StatusChannel, payload: str) -> None:
        self._tasks.spawn(
            self._projector.apply(token, channel, payload),
            name=f"status-{token}",
        )

    def _on_streaming_reply(self, token: str, reply: Any) -> None:
        if not self._correlator.is_pending(token, CommandKind.STREAMING):
            logger.debug("Dropping unsolicited streaming reply from %s", token)
            return
        url = extract_stream_url(reply)
        if url is None:
            self._correlator.deliver(token, CommandKind.STREAMING, reply)
            return
        self._tasks.spawn(
            self._persist_then_deliver(token, url, reply),
            name=f"streaming-{token}",
        )

    async def _persist_then_deliver(self, token: str, url: str, reply: Any) -> None:
        # The stored URL must be visible before the caller sees the reply.
        await self._projector.apply_stream_url(token, url)
        self._correlator.deliver(token, CommandKind.STREAMING, reply)

    async def _ingest(self, token: str, announcement: Any) -> None:
        try:
            await self._ingestor.ingest(token, announcement)
        except MalformedReply as exc:
            logger.warning("Dropping malformed message: %s", exc)
        except Exception:
            logger.exception("Error handling new record from device %s", token)
