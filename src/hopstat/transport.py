"""httpx transport whose network layer reports to a Tracer.

httpcore dials through a pluggable ``NetworkBackend``. ``TracingBackend``
wraps the real one for a single logical request. It resolves the host itself,
so DNS is timed apart from the TCP connect, and it wraps every stream so
that TLS handshakes and the first response byte are seen as they happen.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
import ssl
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import TYPE_CHECKING
from urllib.request import getproxies

import httpcore
import httpx

if TYPE_CHECKING:
    from hopstat.config import ClientConfig
    from hopstat.trace import Tracer

logger = logging.getLogger("hopstat.transport")

__all__ = ["Deadline", "TracingBackend", "TracingStream", "TracingTransport", "proxy_mounts"]

# httpx.Limits defaults, minus idle connections when keep-alive is off.
_MAX_CONNECTIONS = 100
_MAX_KEEPALIVE = 20
_KEEPALIVE_EXPIRY = 5.0

_LOOPBACK_MOUNTS = ("all://localhost", "all://127.0.0.1", "all://[::1]")


def _clamp(timeout: float | None, limit: float | None) -> float | None:
    if limit is None:
        return timeout
    if timeout is None:
        return limit
    return min(timeout, limit)


class Deadline:
    """Time budget shared by every hop of one logical request.

    The clock starts on the first call to :meth:`remaining` and runs until
    :meth:`restart`.
    """

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        self._expires: float | None = None

    def restart(self) -> None:
        self._expires = time.monotonic() + self.timeout

    def remaining(self) -> float:
        if self._expires is None:
            self.restart()
        return max(0.0, self._expires - time.monotonic())

    def cap(
        self,
        timeout: float | None,
        exc_type: type[httpcore.TimeoutException] = httpcore.ReadTimeout,
    ) -> float:
        """Shorten *timeout* to the budget left, raising *exc_type* once it is spent."""
        left = self.remaining()
        if left <= 0:
            raise exc_type("timeout exceeded")
        return left if timeout is None else min(timeout, left)


class TracingStream(httpcore.NetworkStream):
    """Network stream that reports TLS handshakes and received bytes.

    With a *deadline*, every read, write and handshake is cut short when the
    request's budget runs out, whatever timeout httpcore asked for.
    """

    def __init__(
        self,
        stream: httpcore.NetworkStream,
        tracer: Tracer,
        *,
        deadline: Deadline | None = None,
        tls_handshake_timeout: float | None = None,
    ) -> None:
        self._stream = stream
        self._tracer = tracer
        self._deadline = deadline
        self._tls_handshake_timeout = tls_handshake_timeout

    def _cap(
        self,
        timeout: float | None,
        exc_type: type[httpcore.TimeoutException] = httpcore.ReadTimeout,
    ) -> float | None:
        if self._deadline is None:
            return timeout
        return self._deadline.cap(timeout, exc_type)

    def read(self, max_bytes: int, timeout: float | None = None) -> bytes:
        data = self._stream.read(max_bytes, self._cap(timeout))
        if data:
            self._tracer.received(data)
            return data
        head = self._tracer.truncated_head()
        if head is not None:
            # The peer hung up after sending something that never became a
            # status line; httpcore would report this as a plain disconnect.
            raise httpcore.RemoteProtocolError(f"malformed HTTP response {head!r}")
        return data

    def write(self, buffer: bytes, timeout: float | None = None) -> None:
        self._stream.write(buffer, self._cap(timeout, httpcore.WriteTimeout))

    def close(self) -> None:
        self._stream.close()

    def start_tls(
        self,
        ssl_context: ssl.SSLContext,
        server_hostname: str | None = None,
        timeout: float | None = None,
    ) -> httpcore.NetworkStream:
        timeout = self._cap(_clamp(timeout, self._tls_handshake_timeout), httpcore.ConnectTimeout)
        self._tracer.tls_start()
        try:
            stream = self._stream.start_tls(ssl_context, server_hostname, timeout)
        finally:
            self._tracer.tls_done()
        return TracingStream(
            stream,
            self._tracer,
            deadline=self._deadline,
            tls_handshake_timeout=self._tls_handshake_timeout,
        )

    def get_extra_info(self, info: str) -> object:
        return self._stream.get_extra_info(info)


class TracingBackend(httpcore.NetworkBackend):
    """Network backend that times name resolution, dialing and TLS.

    Args:
        tracer: Receives the lifecycle events.
        backend: The backend that actually opens sockets. Defaults to
            ``httpcore.SyncBackend``.
        deadline: Budget of the logical request; caps resolution, dialing
            and all stream I/O.
        dial_timeout: Upper bound for each TCP connect attempt.
        tls_handshake_timeout: Upper bound for each TLS handshake.
    """

    def __init__(
        self,
        tracer: Tracer,
        *,
        backend: httpcore.NetworkBackend | None = None,
        deadline: Deadline | None = None,
        dial_timeout: float | None = None,
        tls_handshake_timeout: float | None = None,
    ) -> None:
        self._tracer = tracer
        self._backend = backend if backend is not None else httpcore.SyncBackend()
        self._deadline = deadline
        self._dial_timeout = dial_timeout
        self._tls_handshake_timeout = tls_handshake_timeout

    def connect_tcp(
        self,
        host: str,
        port: int,
        timeout: float | None = None,
        local_address: str | None = None,
        socket_options: Iterable[httpcore.SOCKET_OPTION] | None = None,
    ) -> httpcore.NetworkStream:
        addresses = self._resolve(host, port)
        remote = ""
        self._tracer.connect_start()
        try:
            stream, remote = self._dial(addresses, port, timeout, local_address, socket_options)
        finally:
            self._tracer.connect_done(remote)
        return self._wrap(stream)

    def connect_unix_socket(
        self,
        path: str,
        timeout: float | None = None,
        socket_options: Iterable[httpcore.SOCKET_OPTION] | None = None,
    ) -> httpcore.NetworkStream:
        timeout = self._connect_timeout(timeout)
        self._tracer.connect_start()
        try:
            stream = self._backend.connect_unix_socket(path, timeout, socket_options)
        finally:
            self._tracer.connect_done(path)
        return self._wrap(stream)

    def sleep(self, seconds: float) -> None:
        self._backend.sleep(seconds)

    def _wrap(self, stream: httpcore.NetworkStream) -> TracingStream:
        return TracingStream(
            stream,
            self._tracer,
            deadline=self._deadline,
            tls_handshake_timeout=self._tls_handshake_timeout,
        )

    def _connect_timeout(self, timeout: float | None) -> float | None:
        timeout = _clamp(timeout, self._dial_timeout)
        if self._deadline is None:
            return timeout
        return self._deadline.cap(timeout, httpcore.ConnectTimeout)

    def _resolve(self, host: str, port: int) -> list[str]:
        try:
            ipaddress.ip_address(host)
        except ValueError:
            pass
        else:
            return [host]

        timeout = None
        if self._deadline is not None:
            timeout = self._deadline.cap(None, httpcore.ConnectTimeout)
        self._tracer.dns_start()
        # getaddrinfo cannot be interrupted; a lookup that overruns the budget
        # is abandoned to its worker thread.
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="hopstat-dns")
        try:
            future = executor.submit(socket.getaddrinfo, host, port, type=socket.SOCK_STREAM)
            infos = future.result(timeout)
        except FutureTimeout as exc:
            raise httpcore.ConnectTimeout(f"resolving {host} timed out") from exc
        except socket.gaierror as exc:
            raise httpcore.ConnectError(str(exc)) from exc
        finally:
            executor.shutdown(wait=False)
            self._tracer.dns_done()
        return list(dict.fromkeys(str(info[4][0]) for info in infos))

    def _dial(
        self,
        addresses: list[str],
        port: int,
        timeout: float | None,
        local_address: str | None,
        socket_options: Iterable[httpcore.SOCKET_OPTION] | None,
    ) -> tuple[httpcore.NetworkStream, str]:
        error: httpcore.ConnectError | None = None
        for address in addresses:
            try:
                stream = self._backend.connect_tcp(
                    address, port, self._connect_timeout(timeout), local_address, socket_options
                )
            except httpcore.ConnectError as exc:
                logger.debug("Dial %s:%d failed: %s", address, port, exc)
                error = exc
                continue
            return stream, address
        if error is None:
            raise httpcore.ConnectError(f"no addresses for port {port}")
        raise error


class TracingTransport(httpx.HTTPTransport):
    """``httpx.HTTPTransport`` whose connection pool dials through a TracingBackend.

    The pool is assembled here rather than in ``HTTPTransport.__init__`` so
    that it can carry the tracing backend; request handling is inherited.
    """

    def __init__(
        self,
        tracer: Tracer,
        *,
        verify: bool = True,
        proxy: str | None = None,
        keep_alive: bool = False,
        deadline: Deadline | None = None,
        dial_timeout: float | None = None,
        tls_handshake_timeout: float | None = None,
        network_backend: httpcore.NetworkBackend | None = None,
    ) -> None:
        ssl_context = httpx.create_ssl_context(verify=verify)
        backend = TracingBackend(
            tracer,
            backend=network_backend,
            deadline=deadline,
            dial_timeout=dial_timeout,
            tls_handshake_timeout=tls_handshake_timeout,
        )
        max_keepalive = _MAX_KEEPALIVE if keep_alive else 0

        if proxy is None:
            self._pool = httpcore.ConnectionPool(
                ssl_context=ssl_context,
                max_connections=_MAX_CONNECTIONS,
                max_keepalive_connections=max_keepalive,
                keepalive_expiry=_KEEPALIVE_EXPIRY,
                network_backend=backend,
            )
            return

        proxy_config = httpx.Proxy(url=proxy)
        if proxy_config.url.scheme not in ("http", "https"):
            raise ValueError(f"Unsupported proxy scheme {proxy_config.url.scheme!r}")
        self._pool = httpcore.HTTPProxy(
            proxy_url=httpcore.URL(
                scheme=proxy_config.url.raw_scheme,
                host=proxy_config.url.raw_host,
                port=proxy_config.url.port,
                target=proxy_config.url.raw_path,
            ),
            proxy_auth=proxy_config.raw_auth,
            proxy_headers=proxy_config.headers.raw,
            ssl_context=ssl_context,
            max_connections=_MAX_CONNECTIONS,
            max_keepalive_connections=max_keepalive,
            keepalive_expiry=_KEEPALIVE_EXPIRY,
            network_backend=backend,
        )


def proxy_mounts(
    config: ClientConfig,
    make_transport: Callable[[str], httpx.BaseTransport],
) -> dict[str, httpx.BaseTransport | None]:
    """Build httpx mounts routing each scheme through its proxy.

    ``config.proxy`` wins over the environment. Loopback hosts and
    ``NO_PROXY`` entries map to ``None``, which httpx resolves to the
    client's direct transport.
    """
    if config.proxy is not None:
        proxies = {"http": config.proxy, "https": config.proxy}
        bypass: list[str] = []
    elif config.proxy_from_env:
        env = getproxies()
        fallback = env.get("all")
        proxies = {
            scheme: url
            for scheme in ("http", "https")
            if (url := env.get(scheme, fallback))
        }
        bypass = [host.strip() for host in env.get("no", "").split(",") if host.strip()]
        if "*" in bypass:
            return {}
    else:
        return {}

    if not proxies:
        return {}

    mounts: dict[str, httpx.BaseTransport | None] = {
        f"{scheme}://": make_transport(url) for scheme, url in proxies.items()
    }
    for pattern in _LOOPBACK_MOUNTS:
        mounts[pattern] = None
    for host in bypass:
        mounts[_bypass_pattern(host)] = None
    logger.debug("Proxy mounts: %s", sorted(mounts))
    return mounts


def _bypass_pattern(host: str) -> str:
    if "://" in host:
        return host
    host = host.lstrip(".")
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return f"all://*{host}"
    if address.version == 6:
        return f"all://[{host}]"
    return f"all://{host}"
