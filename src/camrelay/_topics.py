"""Device topic layout.

Topic convention (``{prefix}`` defaults to ``api``)::

    {prefix}/{token}/cam/{memory|streaming}          → command (out) / reply (in)
    {prefix}/{token}/cam/record                      → record arrival (in)
    {prefix}/{token}/cam/{memory|stream|connect}/status → status (in)
    {prefix}/{token}/pair                            → pairing announcement (in)

:func:`classify_topic` parses an inbound topic into a :class:`Route`
by its structural segments.  Classification priority follows the
list: pairing, status, memory reply, streaming reply, record arrival.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from camrelay._errors import UnroutableTopic
from camrelay._models import CommandKind, StatusChannel

_CAM = "cam"
_PAIR = "pair"
_STATUS = "status"
_RECORD = "record"


class RouteKind(StrEnum):
    PAIRING = "pairing"
    STATUS = "status"
    MEMORY_REPLY = "memory_reply"
    STREAMING_REPLY = "streaming_reply"
    RECORD = "record"


@dataclass(frozen=True, slots=True)
class Route:
    """Result of classifying an inbound topic."""

    kind: RouteKind
    token: str
    channel: StatusChannel | None = None


def command_topic(prefix: str, token: str, kind: CommandKind) -> str:
    """Topic a command of *kind* is published to for device *token*."""
    return f"{prefix}/{token}/{_CAM}/{kind}"


def pairing_topic(prefix: str, token: str) -> str:
    """Topic a device announces itself on to complete pairing."""
    return f"{prefix}/{token}/{_PAIR}"


def subscription_patterns(prefix: str) -> list[str]:
    """Wildcard patterns covering every inbound topic."""
    return [
        f"{prefix}/+/{_CAM}/{CommandKind.MEMORY}",
        f"{prefix}/+/{_CAM}/{StatusChannel.MEMORY}/{_STATUS}",
        f"{prefix}/+/{_CAM}/{CommandKind.STREAMING}",
        f"{prefix}/+/{_CAM}/{StatusChannel.STREAM}/{_STATUS}",
        f"{prefix}/+/{_CAM}/{StatusChannel.CONNECT}/{_STATUS}",
        f"{prefix}/+/{_CAM}/{_RECORD}",
        f"{prefix}/+/{_PAIR}",
    ]


def classify_topic(topic: str, prefix: str) -> Route:
    """Classify an inbound *topic* into a :class:`Route`.

    Raises:
        UnroutableTopic: If the topic matches no known layout.
    """
    segments = topic.split("/")
    if len(segments) < 3 or segments[0] != prefix or not segments[1]:
        raise UnroutableTopic(topic)
    token = segments[1]
    rest = segments[2:]

    if rest == [_PAIR]:
        return Route(RouteKind.PAIRING, token)

    if rest[0] != _CAM:
        raise UnroutableTopic(topic)

    if len(rest) == 3 and rest[2] == _STATUS:
        try:
            channel = StatusChannel(rest[1])
        except ValueError:
            raise UnroutableTopic(topic) from None
        return Route(RouteKind.STATUS, token, channel)

    if len(rest) == 2:
        match rest[1]:
            case CommandKind.MEMORY:
                return Route(RouteKind.MEMORY_REPLY, token)
            case CommandKind.STREAMING:
                return Route(RouteKind.STREAMING_REPLY, token)
            case "record":
                return Route(RouteKind.RECORD, token)

    raise UnroutableTopic(topic)
