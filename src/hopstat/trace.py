"""Per-hop lifecycle recording.

A :class:`Tracer` follows one logical request. Every hop (the first
attempt and each redirect) gets its own :class:`Trace`, appended in order.
Events arrive from three places, none of which shares a call stack with the
code that issued the request:

* the httpx request hook, which opens a hop via :meth:`Tracer.begin`;
* the tracing network backend (DNS, TCP connect, TLS, bytes received);
* the httpcore ``trace`` extension, for which the tracer itself is the
  callable.

Timestamps are integer nanoseconds from :func:`now`; ``0`` means the event
has not fired.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from hopstat.stats import Stats, format_ms

logger = logging.getLogger("hopstat.trace")

__all__ = ["HopKind", "Trace", "Tracer", "now"]

# Bytes of an unparsed response head kept for error messages.
_HEAD_PREVIEW = 32


def now() -> int:
    """Current monotonic instant in nanoseconds."""
    return time.perf_counter_ns()


def _span(start: int, end: int) -> int:
    if not start or not end:
        return 0
    return max(0, end - start)


class HopKind(StrEnum):
    """How the connection serving a hop was obtained."""

    FRESH = "fresh"
    REUSED = "reused"


@dataclass
class Trace:
    """Timestamps for a single hop.

    Attributes:
        address: ``host:port`` the hop was sent to.
        remote_address: IP the TCP connection reached; empty when reused.
        tls: Whether a TLS handshake started on this hop.
        kind: Fresh dial or pooled connection, ``None`` until known.
    """

    address: str = ""
    remote_address: str = ""
    tls: bool = False
    kind: HopKind | None = None
    start: int = 0
    dns_start: int = 0
    dns_end: int = 0
    tcp_start: int = 0
    tcp_end: int = 0
    tls_start: int = 0
    tls_end: int = 0
    wait_start: int = 0
    wait_end: int = 0

    @property
    def time_dns(self) -> int:
        return _span(self.dns_start, self.dns_end)

    @property
    def time_connect(self) -> int:
        return _span(self.tcp_start, self.tcp_end)

    @property
    def time_tls(self) -> int:
        return _span(self.tls_start, self.tls_end)

    @property
    def time_wait(self) -> int:
        """Time to first byte: request fully written until the first response byte."""
        return _span(self.wait_start, self.wait_end)

    def time_response(self, now: int) -> int:
        return _span(self.wait_start, now)

    def time_download(self, now: int) -> int:
        return _span(self.wait_end, now)

    def time_total(self, now: int) -> int:
        return _span(self.start, now)

    def stats(self, at: int | None = None) -> Stats:
        """Snapshot this hop; *at* defaults to the current instant."""
        if at is None:
            at = now()
        return Stats(
            address=self.address,
            tls=self.tls,
            time_dns=self.time_dns,
            time_connect=self.time_connect,
            time_tls=self.time_tls,
            time_wait=self.time_wait,
            time_response=self.time_response(at),
            time_download=self.time_download(at),
            time_total=self.time_total(at),
        )

    def summary(self) -> str:
        return (
            f"dns={format_ms(self.time_dns)} connect={format_ms(self.time_connect)} "
            f"tls={format_ms(self.time_tls)} wait={format_ms(self.time_wait)}"
        )


class Tracer:
    """Attributes lifecycle events of one logical request to its hops.

    Events are expected from a single producer at a time, in the order they
    occur. Events that arrive before any hop has begun are dropped.
    """

    def __init__(self) -> None:
        self._traces: list[Trace] = []
        self._awaiting_first_byte = False
        self._head: bytearray | None = None
        self._head_length = 0
        self._head_complete = False

    @property
    def traces(self) -> list[Trace]:
        """Hops recorded so far, oldest first."""
        return list(self._traces)

    @property
    def current(self) -> Trace | None:
        return self._traces[-1] if self._traces else None

    # -- Hop boundaries --

    def begin(self, address: str) -> Trace:
        """Open a new hop: connection acquisition has been requested."""
        previous = self.current
        if previous is not None:
            logger.debug(
                "hop %d %s done: %s", len(self._traces), previous.address, previous.summary()
            )
        trace = Trace(address=address, start=now())
        self._traces.append(trace)
        self._awaiting_first_byte = False
        self._head = None
        self._head_length = 0
        self._head_complete = False
        return trace

    def _acquired(self) -> None:
        trace = self.current
        if trace is None or trace.kind is not None:
            return
        # A pooled connection carries no DNS/connect/TLS cost; restart the
        # hop's clock at the moment it was handed over.
        reused = Trace(address=trace.address, kind=HopKind.REUSED, start=now())
        self._traces[-1] = reused
        logger.debug("hop %d %s reused a pooled connection", len(self._traces), trace.address)

    # -- Network events --

    def dns_start(self) -> None:
        if (trace := self._require("dns_start")) is not None:
            trace.dns_start = now()

    def dns_done(self) -> None:
        if (trace := self._require("dns_done")) is not None:
            trace.dns_end = now()

    def connect_start(self) -> None:
        if (trace := self._require("connect_start")) is not None:
            trace.kind = HopKind.FRESH
            trace.tcp_start = now()

    def connect_done(self, remote_address: str = "") -> None:
        if (trace := self._require("connect_done")) is not None:
            trace.tcp_end = now()
            trace.remote_address = remote_address

    def tls_start(self) -> None:
        if (trace := self._require("tls_start")) is not None:
            trace.tls = True
            trace.tls_start = now()

    def tls_done(self) -> None:
        if (trace := self._require("tls_done")) is not None:
            trace.tls_end = now()

    def received(self, data: bytes) -> None:
        """Bytes arrived from the peer."""
        trace = self.current
        if trace is None or not data:
            return
        if self._awaiting_first_byte:
            trace.wait_end = now()
            self._awaiting_first_byte = False
        if self._head is not None and not self._head_complete:
            self._head_length += len(data)
            self._head.extend(data[: _HEAD_PREVIEW - len(self._head)])

    def truncated_head(self) -> bytes | None:
        """Bytes of a response head the peer abandoned, if any.

        Returns ``None`` unless the request was written, some bytes came
        back, and no complete response head was parsed from them.
        """
        if self._head is None or self._head_complete or not self._head_length:
            return None
        return bytes(self._head)

    # -- httpcore trace extension --

    def __call__(self, event_name: str, info: dict[str, Any]) -> None:
        _, _, event = event_name.partition(".")
        if event == "send_request_headers.started":
            self._acquired()
        elif event == "send_request_body.complete":
            if (trace := self._require(event_name)) is not None:
                trace.wait_start = now()
                self._awaiting_first_byte = True
                self._head = bytearray()
                self._head_length = 0
                self._head_complete = False
        elif event == "receive_response_headers.complete":
            self._head_complete = True

    def _require(self, event: str) -> Trace | None:
        trace = self.current
        if trace is None:
            logger.debug("Ignoring %s: no hop in progress", event)
        return trace
