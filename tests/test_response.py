"""Tests for the Response aggregate and its Stats snapshot."""

from __future__ import annotations

import json

import httpx
import pytest

from hopstat.response import ByteCounter, Response, header_size
from hopstat.stats import Stats, format_ms
from hopstat.trace import HopKind, Trace

MS = 1_000_000
# Timestamps of 0 mean "not fired", so fabricated hops start well past it.
BASE = 1_000


def at(ms: int) -> int:
    """Timestamp *ms* milliseconds after BASE."""
    return (BASE + ms) * MS


def hop(start: int, *, tls: bool = False, wait: int = 25, address: str = "a.test:80") -> Trace:
    """A fresh hop starting at *start* ms that connects in 1ms and waits *wait* ms."""
    trace = Trace(
        address=address,
        tls=tls,
        kind=HopKind.FRESH,
        start=at(start),
        tcp_start=at(start),
        tcp_end=at(start + 1),
        wait_start=at(start + 1),
        wait_end=at(start + 1 + wait),
    )
    if tls:
        trace.tls_start = at(start + 1)
        trace.tls_end = at(start + 1) + MS // 2
    return trace


class TestByteCounter:
    def test_counts_writes(self) -> None:
        counter = ByteCounter()
        assert counter.write(b"hello") == 5
        counter.write(b" world")
        assert counter.size == 11

    def test_header_size(self) -> None:
        raw = [(b"Content-Length", b"11"), (b"X-Foo", b"bar")]
        assert header_size(raw) == len(b"Content-Length: 11\r\nX-Foo: bar\r\n")

    def test_header_size_empty(self) -> None:
        assert header_size([]) == 0


class TestResponse:
    def test_requires_a_trace(self) -> None:
        with pytest.raises(ValueError):
            Response(200, [])

    def test_single_hop(self) -> None:
        res = Response(200, [hop(0)], body_size=11)
        assert res.redirects == 0
        assert res.time_redirects == 0
        assert res.time_connect == 1 * MS
        assert res.time_wait == 25 * MS
        assert res.time_total(at(30)) == 30 * MS
        assert res.time_total_with_redirects(at(30)) == 30 * MS
        assert res.body_size == 11
        assert res.tls is False

    def test_traces_are_immutable_copy(self) -> None:
        traces = [hop(0)]
        res = Response(200, traces)
        traces.append(hop(100))
        assert len(res.traces) == 1

    def test_redirect_chain(self) -> None:
        res = Response(200, [hop(0, wait=50), hop(55, wait=50), hop(110)])
        assert res.redirects == 2
        assert res.redirects == len(res.traces) - 1
        assert res.time_redirects == 110 * MS
        assert res.time_wait == 25 * MS
        assert res.time_total(at(140)) == 30 * MS
        assert res.time_total_with_redirects(at(140)) == 140 * MS
        assert res.time_download(at(140)) == 4 * MS
        assert res.time_response(at(140)) == 29 * MS

    def test_final_hop_decides_tls(self) -> None:
        assert Response(200, [hop(0), hop(10, tls=True)]).tls is True
        assert Response(200, [hop(0, tls=True), hop(10)]).tls is False

    def test_per_hop_timings_come_from_final_hop(self) -> None:
        first = hop(0, tls=True)
        first.dns_start, first.dns_end = 0, 0
        last = Trace(address="a.test:80", kind=HopKind.REUSED, start=at(20))
        res = Response(200, [first, last])
        assert res.time_tls == 0
        assert res.time_connect == 0
        assert res.time_dns == 0

    def test_header_defaults_empty(self) -> None:
        res = Response(204, [hop(0)])
        assert len(res.header) == 0
        assert res.header_size == 0

    def test_repr(self) -> None:
        assert repr(Response(301, [hop(0), hop(10)])) == "<Response [301] redirects=1>"


class TestResponseStats:
    def test_snapshot(self) -> None:
        headers = httpx.Headers(
            [("Content-Type", "text/plain"), ("Set-Cookie", "a=1"), ("Set-Cookie", "b=2")]
        )
        res = Response(
            200,
            [hop(0, wait=50, address="a.test:80"), hop(60, tls=True, address="b.test:443")],
            header=headers,
            header_size=48,
            body_size=11,
        )
        stats = res.stats(at(90))

        assert stats.status == 200
        assert stats.redirects == 1
        assert stats.tls is True
        assert stats.header == {"Content-Type": ["text/plain"], "Set-Cookie": ["a=1", "b=2"]}
        assert stats.header_size == 48
        assert stats.body_size == 11
        assert stats.time_redirects == 60 * MS
        assert stats.time_total == 30 * MS
        assert stats.time_total_with_redirects == 90 * MS
        assert [t.address for t in stats.traces] == ["a.test:80", "b.test:443"]
        assert stats.traces[0].time_total == 90 * MS
        assert stats.traces[1].tls is True

    def test_single_hop_omits_redirect_fields(self) -> None:
        data = Response(200, [hop(0)]).stats(at(30)).model_dump()
        assert data["time_total_with_redirects"] == 30 * MS
        assert "time_redirects" not in data
        assert "redirects" not in data


class TestStatsSerialization:
    def test_zero_values_omitted(self) -> None:
        assert Stats().model_dump() == {
            "tls": False,
            "time_dns": 0,
            "time_connect": 0,
            "time_tls": 0,
            "time_wait": 0,
            "time_response": 0,
            "time_download": 0,
            "time_total": 0,
        }

    def test_set_values_kept(self) -> None:
        data = Stats(status=200, address="a.test:80", body_size=11, redirects=2).model_dump()
        assert data["status"] == 200
        assert data["address"] == "a.test:80"
        assert data["body_size"] == 11
        assert data["redirects"] == 2
        assert "header" not in data
        assert "traces" not in data

    def test_nested_traces_omit_zero_values(self) -> None:
        stats = Stats(status=200, traces=[Stats(address="a.test:80", time_wait=5)])
        nested = stats.model_dump()["traces"][0]
        assert nested["address"] == "a.test:80"
        assert nested["time_wait"] == 5
        assert "status" not in nested

    def test_json(self) -> None:
        res = Response(200, [hop(0)], header=httpx.Headers({"X-Foo": "bar"}), body_size=11)
        data = json.loads(res.stats(at(30)).model_dump_json())
        assert data["status"] == 200
        assert data["header"] == {"X-Foo": ["bar"]}
        assert data["time_wait"] == 25 * MS
        assert data["tls"] is False


class TestFormatMs:
    @pytest.mark.parametrize(
        ("duration", "expected"),
        [(0, "0ms"), (25 * MS, "25ms"), (1_499_999, "1ms"), (2 * 1_000 * MS, "2000ms")],
    )
    def test_format(self, duration: int, expected: str) -> None:
        assert format_ms(duration) == expected
