"""HTTP proxy front end: CONNECT tunnels and forwarded plain requests."""

from __future__ import annotations

import collections
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional
from urllib.parse import urlsplit

from proxytunnel.tunnel.metadata import Address, Metadata, TunnelError

NAME = "HTTP"

_QUEUE_SIZE = 32
_POLL_INTERVAL = 0.2
_CHUNK = 8192
_MAX_LINE = 64 * 1024
_MAX_HEADERS = 256

log = logging.getLogger(__name__)

Headers = list[tuple[str, str]]


class _Pipe:
    """An in-memory byte stream between two threads."""

    def __init__(self) -> None:
        self._chunks: "collections.deque[bytes]" = collections.deque()
        self._cond = threading.Condition()
        self._closed = False

    def write(self, data: bytes) -> int:
        with self._cond:
            if self._closed:
                raise TunnelError("write on closed pipe")
            if data:
                self._chunks.append(bytes(data))
                self._cond.notify_all()
            return len(data)

    def read(self, size: int) -> bytes:
        with self._cond:
            while not self._chunks and not self._closed:
                self._cond.wait()
            if not self._chunks:
                return b""
            chunk = self._chunks.popleft()
            if len(chunk) > size:
                self._chunks.appendleft(chunk[size:])
                chunk = chunk[:size]
            return chunk

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()


class _Reader:
    """Buffered reading over a callable returning chunks, empty at end of stream."""

    def __init__(self, source: Callable[[int], bytes]) -> None:
        self._source = source
        self._buf = bytearray()

    def _fill(self) -> bool:
        chunk = self._source(_CHUNK)
        if not chunk:
            return False
        self._buf += chunk
        return True

    def readline(self) -> bytes:
        while True:
            idx = self._buf.find(b"\n")
            if idx >= 0:
                line = bytes(self._buf[:idx + 1])
                del self._buf[:idx + 1]
                return line
            if len(self._buf) > _MAX_LINE:
                raise TunnelError("http line too long")
            if not self._fill():
                raise TunnelError("unexpected end of http stream")

    def read_exact(self, size: int) -> bytes:
        while len(self._buf) < size:
            if not self._fill():
                raise TunnelError("unexpected end of http body")
        data = bytes(self._buf[:size])
        del self._buf[:size]
        return data

    def read_to_eof(self) -> bytes:
        while self._fill():
            pass
        data = bytes(self._buf)
        self._buf.clear()
        return data

    def read_some(self, size: int) -> bytes:
        if self._buf:
            data = bytes(self._buf[:size])
            del self._buf[:size]
            return data
        return self._source(size)


def _strip(line: bytes) -> str:
    return line.decode("latin-1").rstrip("\r\n")


def _header(headers: Headers, name: str) -> Optional[str]:
    wanted = name.lower()
    value = None
    for key, item in headers:
        if key.lower() == wanted:
            value = item
    return value


def _read_headers(reader: _Reader) -> Headers:
    headers: Headers = []
    while True:
        line = _strip(reader.readline())
        if not line:
            return headers
        name, sep, value = line.partition(":")
        if not sep or not name.strip():
            raise TunnelError(f"malformed header line {line!r}")
        headers.append((name.strip(), value.strip()))
        if len(headers) > _MAX_HEADERS:
            raise TunnelError("too many http headers")


def _read_chunked(reader: _Reader) -> bytes:
    parts = []
    while True:
        line = reader.readline()
        parts.append(line)
        try:
            size = int(_strip(line).split(";")[0].strip(), 16)
        except ValueError as exc:
            raise TunnelError("malformed chunk size") from exc
        if size == 0:
            while True:
                trailer = reader.readline()
                parts.append(trailer)
                if not _strip(trailer):
                    return b"".join(parts)
        parts.append(reader.read_exact(size + 2))


def _content_length(headers: Headers) -> Optional[int]:
    value = _header(headers, "content-length")
    if value is None:
        return None
    try:
        length = int(value)
    except ValueError as exc:
        raise TunnelError(f"invalid content length {value!r}") from exc
    if length < 0:
        raise TunnelError(f"invalid content length {value!r}")
    return length


def _is_chunked(headers: Headers) -> bool:
    value = _header(headers, "transfer-encoding")
    return value is not None and "chunked" in value.lower()


def _serialize(start_line: str, headers: Headers, body: bytes) -> bytes:
    head = start_line + "\r\n" + "".join(f"{k}: {v}\r\n" for k, v in headers) + "\r\n"
    return head.encode("latin-1") + body


def _version_numbers(version: str) -> tuple[int, int]:
    if not version.startswith("HTTP/"):
        raise TunnelError(f"malformed http version {version!r}")
    major, _, minor = version[5:].partition(".")
    try:
        return int(major), int(minor or 0)
    except ValueError as exc:
        raise TunnelError(f"malformed http version {version!r}") from exc


def _split_host_port(text: str) -> Optional[tuple[str, int]]:
    if text.startswith("["):
        end = text.find("]")
        if end < 0 or text[end + 1:end + 2] != ":":
            return None
        host, port = text[1:end], text[end + 2:]
    else:
        if text.count(":") != 1:
            return None
        host, _, port = text.partition(":")
    if not port.isdigit():
        return None
    return host, int(port)


@dataclass
class _Request:
    method: str
    target: str
    version: str
    headers: Headers
    body: bytes

    def _absolute(self) -> bool:
        return self.target.lower().startswith(("http://", "https://"))

    @property
    def host(self) -> str:
        if self._absolute():
            return urlsplit(self.target).netloc
        if self.method.upper() == "CONNECT" and not self.target.startswith("/"):
            return self.target
        return _header(self.headers, "host") or ""

    @property
    def request_uri(self) -> str:
        if not self._absolute():
            return self.target
        parts = urlsplit(self.target)
        uri = parts.path or "/"
        if parts.query:
            uri += "?" + parts.query
        return uri

    def to_bytes(self) -> bytes:
        headers = [("Host", self.host)]
        headers.extend(item for item in self.headers if item[0].lower() != "host")
        return _serialize(f"{self.method} {self.request_uri} {self.version}", headers, self.body)


def _read_request(reader: _Reader) -> _Request:
    line = _strip(reader.readline())
    parts = line.split(" ")
    if len(parts) != 3:
        raise TunnelError(f"malformed request line {line!r}")
    method, target, version = parts
    _version_numbers(version)
    headers = _read_headers(reader)
    if _is_chunked(headers):
        body = _read_chunked(reader)
    else:
        length = _content_length(headers)
        body = reader.read_exact(length) if length else b""
    return _Request(method, target, version, headers, body)


def _read_response(reader: _Reader, method: str) -> tuple[bytes, bool]:
    """The raw response and whether its body ran to the end of the stream."""
    status_line = _strip(reader.readline())
    parts = status_line.split(" ", 2)
    if len(parts) < 2:
        raise TunnelError(f"malformed status line {status_line!r}")
    _version_numbers(parts[0])
    try:
        status = int(parts[1])
    except ValueError as exc:
        raise TunnelError(f"malformed status code {parts[1]!r}") from exc
    headers = _read_headers(reader)
    if method.upper() == "HEAD" or 100 <= status < 200 or status in (204, 304):
        return _serialize(status_line, headers, b""), False
    if _is_chunked(headers):
        return _serialize(status_line, headers, _read_chunked(reader)), False
    length = _content_length(headers)
    if length is not None:
        return _serialize(status_line, headers, reader.read_exact(length)), False
    return _serialize(status_line, headers, reader.read_to_eof()), True


class _ConnectConn:
    """A tunnelled stream accepted by CONNECT."""

    def __init__(self, conn: Any, reader: _Reader, metadata: Metadata) -> None:
        self._conn = conn
        self._reader = reader
        self.metadata = metadata

    def read(self, size: int = _CHUNK) -> bytes:
        return self._reader.read_some(size)

    def write(self, data: bytes) -> int:
        return self._conn.write(data)

    def close(self) -> None:
        self._conn.close()

    def remote_address(self) -> Address:
        return self._conn.remote_address()

    def __enter__(self) -> "_ConnectConn":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class HttpForwardConn:
    """One plain HTTP exchange: reads yield the request, writes carry the response."""

    def __init__(self, conn: Any, metadata: Metadata) -> None:
        self._conn = conn
        self.metadata = metadata
        self._request_pipe = _Pipe()
        self._response_pipe = _Pipe()

    def read(self, size: int = _CHUNK) -> bytes:
        data = self._request_pipe.read(size)
        if not data:
            raise TunnelError("http conn closed")
        return data

    def write(self, data: bytes) -> int:
        return self._response_pipe.write(bytes(data))

    def close(self) -> None:
        self._request_pipe.close()
        self._response_pipe.close()

    def remote_address(self) -> Address:
        return self._conn.remote_address()

    def __enter__(self) -> "HttpForwardConn":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class HttpServer:
    """Turns HTTP proxy requests from an underlying server into tunnel connections."""

    NAME = NAME

    def __init__(self, underlay: Any) -> None:
        self._underlay = underlay
        self._conns: "queue.Queue[Any]" = queue.Queue(_QUEUE_SIZE)
        self._closed = threading.Event()
        threading.Thread(target=self._accept_loop, daemon=True).start()

    def _accept_loop(self) -> None:
        while True:
            try:
                conn = self._underlay.accept_conn(self)
            except (OSError, TunnelError) as exc:
                if self._closed.is_set():
                    log.error("http closed")
                    return
                log.error("http failed to accept connection: %s", exc)
                self._closed.wait(_POLL_INTERVAL)
                continue
            threading.Thread(target=self._serve, args=(conn,), daemon=True).start()

    def _put(self, conn: Any) -> bool:
        while not self._closed.is_set():
            try:
                self._conns.put(conn, timeout=_POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    def _serve(self, conn: Any) -> None:
        reader = _Reader(conn.read)
        try:
            request = _read_request(reader)
        except (OSError, TunnelError) as exc:
            log.error("not a valid http request: %s", exc)
            conn.close()
            return
        if request.method.upper() == "CONNECT":
            self._serve_connect(conn, reader, request)
        else:
            self._serve_forward(conn, reader, request)

    def _serve_connect(self, conn: Any, reader: _Reader, request: _Request) -> None:
        target = _split_host_port(request.host)
        if target is None:
            log.error("invalid http dest address: %s", request.host)
            conn.close()
            return
        address = Address.from_host_port("tcp", target[0], target[1])
        major, minor = _version_numbers(request.version)
        try:
            conn.write(f"HTTP/{major}.{minor} 200 Connection established\r\n\r\n".encode("ascii"))
        except OSError:
            log.error("http failed to respond connect request")
            conn.close()
            return
        if not self._put(_ConnectConn(conn, reader, Metadata(address=address))):
            conn.close()

    def _serve_forward(self, conn: Any, reader: _Reader, request: _Request) -> None:
        forward: Optional[HttpForwardConn] = None
        try:
            while True:
                host = request.host
                target = _split_host_port(host)
                if target is not None:
                    address = Address.from_host_port("tcp", target[0], target[1])
                else:
                    address = Address.from_host_port("tcp", host, 80)
                log.debug("http dest %s", address)
                forward = HttpForwardConn(conn, Metadata(address=address))
                if not self._put(forward):
                    return
                forward._request_pipe.write(request.to_bytes())
                try:
                    response, until_eof = _read_response(
                        _Reader(forward._response_pipe.read), request.method
                    )
                except TunnelError as exc:
                    log.error("http failed to read http response: %s", exc)
                    return
                try:
                    conn.write(response)
                except OSError as exc:
                    log.error("http failed to write the response back: %s", exc)
                    return
                forward.close()
                if until_eof:
                    return
                try:
                    request = _read_request(reader)
                except (OSError, TunnelError) as exc:
                    log.error("http failed to the read request from local: %s", exc)
                    return
        finally:
            if forward is not None:
                forward.close()
            conn.close()

    def accept_conn(self, overlay: Any = None) -> Any:
        while True:
            try:
                return self._conns.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if self._closed.is_set():
                    raise TunnelError("http server closed")

    def accept_packet(self, overlay: Any = None) -> Any:
        self._closed.wait()
        raise TunnelError("http server closed")

    def close(self) -> None:
        self._closed.set()
        self._underlay.close()

    def __enter__(self) -> "HttpServer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()