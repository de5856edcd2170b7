"""
MQTT topic filter rules.

A subscription filter is a '/'-separated list of levels. '+' matches exactly one level and
must occupy a whole level; '#' matches the remainder and must be the whole last level.
"""

from __future__ import annotations

_MAX_TOPIC_BYTES = 65535


class TopicFilterError(ValueError):
    """Raised when a subscription filter is not a valid MQTT topic filter."""


def validate_topic_filter(topic: str) -> str:
    if not isinstance(topic, str) or not topic:
        raise TopicFilterError("topic filter must be a non-empty string")
    if "\x00" in topic:
        raise TopicFilterError("topic filter must not contain NUL")
    if len(topic.encode("utf-8")) > _MAX_TOPIC_BYTES:
        raise TopicFilterError("topic filter exceeds 65535 bytes")

    levels = topic.split("/")
    for i, level in enumerate(levels):
        if "#" in level and (level != "#" or i != len(levels) - 1):
            raise TopicFilterError(f"'#' must be the whole last level in {topic!r}")
        if "+" in level and level != "+":
            raise TopicFilterError(f"'+' must occupy a whole level in {topic!r}")
    return topic

