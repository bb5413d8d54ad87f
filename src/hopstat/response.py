"""Aggregate result of a traced request spanning one or more hops."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

import httpx

from hopstat.stats import Stats
from hopstat.trace import Trace, now

__all__ = ["ByteCounter", "Response", "header_size"]


class ByteCounter:
    """Write-only sink that keeps a running byte total."""

    def __init__(self) -> None:
        self.size = 0

    def write(self, data: bytes) -> int:
        self.size += len(data)
        return len(data)


def header_size(raw_headers: Iterable[tuple[bytes, bytes]]) -> int:
    """Byte size of a header block written as ``Name: value\\r\\n`` lines."""
    counter = ByteCounter()
    for name, value in raw_headers:
        counter.write(name + b": " + value + b"\r\n")
    return counter.size


class Response:
    """The outcome of one logical request.

    Per-hop timings come from the final hop; DNS, connect and TLS work spent
    on earlier hops shows up as redirect time instead.
    """

    def __init__(
        self,
        status: int,
        traces: Sequence[Trace],
        *,
        header: httpx.Headers | None = None,
        header_size: int = 0,
        body_size: int = 0,
    ) -> None:
        if not traces:
            raise ValueError("a response needs at least one trace")
        self._status = status
        self._traces = tuple(traces)
        self._header = header if header is not None else httpx.Headers()
        self._header_size = header_size
        self._body_size = body_size

    def __repr__(self) -> str:
        return f"<Response [{self._status}] redirects={self.redirects}>"

    @property
    def status(self) -> int:
        return self._status

    @property
    def traces(self) -> tuple[Trace, ...]:
        return self._traces

    @property
    def redirects(self) -> int:
        return len(self._traces) - 1

    @property
    def tls(self) -> bool:
        """Whether the final hop used TLS."""
        return self._last.tls

    @property
    def header(self) -> httpx.Headers:
        return self._header

    @property
    def header_size(self) -> int:
        return self._header_size

    @property
    def body_size(self) -> int:
        return self._body_size

    @property
    def _last(self) -> Trace:
        return self._traces[-1]

    @property
    def time_dns(self) -> int:
        return self._last.time_dns

    @property
    def time_connect(self) -> int:
        return self._last.time_connect

    @property
    def time_tls(self) -> int:
        return self._last.time_tls

    @property
    def time_wait(self) -> int:
        return self._last.time_wait

    @property
    def time_redirects(self) -> int:
        """From the start of the first hop to the start of the final one."""
        if len(self._traces) == 1:
            return 0
        return max(0, self._last.start - self._traces[0].start)

    def time_response(self, now: int) -> int:
        return self._last.time_response(now)

    def time_download(self, now: int) -> int:
        return self._last.time_download(now)

    def time_total(self, now: int) -> int:
        """Final hop only."""
        return self._last.time_total(now)

    def time_total_with_redirects(self, now: int) -> int:
        return self._traces[0].time_total(now)

    def stats(self, at: int | None = None) -> Stats:
        """Snapshot the response and every hop at the same instant."""
        if at is None:
            at = now()
        header: dict[str, list[str]] = {}
        for name, value in self._header.raw:
            header.setdefault(name.decode("latin-1"), []).append(value.decode("latin-1"))
        return Stats(
            status=self.status,
            redirects=self.redirects,
            tls=self.tls,
            header=header,
            header_size=self.header_size,
            body_size=self.body_size,
            time_dns=self.time_dns,
            time_connect=self.time_connect,
            time_tls=self.time_tls,
            time_wait=self.time_wait,
            time_response=self.time_response(at),
            time_download=self.time_download(at),
            time_total=self.time_total(at),
            time_total_with_redirects=self.time_total_with_redirects(at),
            time_redirects=self.time_redirects,
            traces=[trace.stats(at) for trace in self._traces],
        )
