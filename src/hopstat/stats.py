"""Serializable snapshot of a traced response."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, SerializerFunctionWrapHandler, model_serializer

__all__ = ["Stats", "format_ms"]

# Serialized even when zero; every other field is dropped at its zero value.
_ALWAYS_PRESENT = frozenset(
    {
        "tls",
        "time_dns",
        "time_connect",
        "time_tls",
        "time_wait",
        "time_response",
        "time_download",
        "time_total",
    }
)


class Stats(BaseModel):
    """Flattened view of a Response or Trace at one instant.

    Durations are integer nanoseconds.
    """

    status: int = 0
    redirects: int = 0
    tls: bool = False
    address: str = ""
    header: dict[str, list[str]] = Field(default_factory=dict)
    header_size: int = 0
    body_size: int = 0
    time_dns: int = 0
    time_connect: int = 0
    time_tls: int = 0
    time_wait: int = 0
    time_response: int = 0
    time_download: int = 0
    time_total: int = 0
    time_total_with_redirects: int = 0
    time_redirects: int = 0
    traces: list[Stats] = Field(default_factory=list)

    @model_serializer(mode="wrap")
    def _omit_empty(self, handler: SerializerFunctionWrapHandler) -> dict[str, Any]:
        data = handler(self)
        return {key: value for key, value in data.items() if key in _ALWAYS_PRESENT or value}


Stats.model_rebuild()


def format_ms(duration: int) -> str:
    """Render a nanosecond duration as whole milliseconds, e.g. ``"25ms"``."""
    return f"{duration / 1_000_000:.0f}ms"
