import socket

import pytest

from proxytunnel.tunnel.adapter import AdapterConfig, AdapterServer
from proxytunnel.tunnel.http_proxy import HttpServer
from proxytunnel.tunnel.metadata import TunnelError


@pytest.fixture
def proxy():
    adapter = AdapterServer(AdapterConfig(local_host="127.0.0.1", local_port=0))
    server = HttpServer(adapter)
    yield server, adapter.port
    server.close()


def _read_until(read, predicate):
    data = b""
    while not predicate(data):
        chunk = read(8192)
        assert chunk
        data += chunk
    return data


def _recv_exact(sock, size):
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        assert chunk
        data += chunk
    return data


def _connect(port):
    return socket.create_connection(("127.0.0.1", port), timeout=5)


def test_get_request_is_forwarded(proxy):
    server, port = proxy
    client = _connect(port)
    try:
        client.sendall(
            b"GET http://example.com/index.html HTTP/1.1\r\n"
            b"Host: example.com\r\nAccept: */*\r\n\r\n"
        )
        fwd = server.accept_conn(None)
        assert fwd.metadata.address.domain_name == "example.com"
        assert fwd.metadata.address.port == 80
        request = _read_until(fwd.read, lambda d: d.endswith(b"\r\n\r\n"))
        assert request.startswith(b"GET /index.html HTTP/1.1\r\n")
        assert b"Host: example.com\r\n" in request
        assert b"Accept: */*\r\n" in request

        response = b"HTTP/1.1 200 OK\r\nContent-Length: 5\r\n\r\nhello"
        fwd.write(response)
        assert _recv_exact(client, len(response)) == response
        with pytest.raises(TunnelError):
            fwd.read()
    finally:
        client.close()


def test_keep_alive_requests_each_get_a_conn(proxy):
    server, port = proxy
    client = _connect(port)
    try:
        for i in range(3):
            client.sendall(f"GET /item{i} HTTP/1.1\r\nHost: example.com:8080\r\n\r\n".encode())
            fwd = server.accept_conn(None)
            assert fwd.metadata.address.domain_name == "example.com"
            assert fwd.metadata.address.port == 8080
            request = _read_until(fwd.read, lambda d: d.endswith(b"\r\n\r\n"))
            assert request.startswith(f"GET /item{i} HTTP/1.1\r\n".encode())
            body = f"r{i}".encode()
            response = b"HTTP/1.1 200 OK\r\nContent-Length: 2\r\n\r\n" + body
            fwd.write(response)
            assert _recv_exact(client, len(response)) == response
    finally:
        client.close()


def test_request_body_and_chunked_response(proxy):
    server, port = proxy
    client = _connect(port)
    try:
        client.sendall(
            b"POST /submit?x=1 HTTP/1.1\r\nHost: example.com\r\n"
            b"Content-Length: 4\r\n\r\ndata"
        )
        fwd = server.accept_conn(None)
        request = _read_until(fwd.read, lambda d: d.endswith(b"data"))
        assert request.startswith(b"POST /submit?x=1 HTTP/1.1\r\n")
        assert request.endswith(b"\r\n\r\ndata")

        head = b"HTTP/1.1 200 OK\r\nTransfer-Encoding: chunked\r\n\r\n"
        body = b"5\r\nhello\r\n0\r\n\r\n"
        fwd.write(head)
        fwd.write(body)
        assert _recv_exact(client, len(head + body)) == head + body
    finally:
        client.close()


def test_connect_tunnel(proxy):
    server, port = proxy
    client = _connect(port)
    try:
        client.sendall(b"CONNECT google.com:443 HTTP/1.1\r\nHost: google.com:443\r\n\r\n")
        conn = server.accept_conn(None)
        assert conn.metadata.address.port == 443
        assert conn.metadata.address.domain_name == "google.com"
        reply = b"HTTP/1.1 200 Connection established\r\n\r\n"
        assert _recv_exact(client, len(reply)) == reply

        client.sendall(b"ping")
        assert _read_until(conn.read, lambda d: len(d) >= 4) == b"ping"
        conn.write(b"pong")
        assert _recv_exact(client, 4) == b"pong"
        conn.close()
    finally:
        client.close()


def test_connect_keeps_early_data(proxy):
    server, port = proxy
    client = _connect(port)
    try:
        client.sendall(b"CONNECT example.com:8443 HTTP/1.0\r\n\r\nearly")
        conn = server.accept_conn(None)
        reply = b"HTTP/1.0 200 Connection established\r\n\r\n"
        assert _recv_exact(client, len(reply)) == reply
        assert _read_until(conn.read, lambda d: len(d) >= 5) == b"early"
        conn.close()
    finally:
        client.close()


def test_connect_with_invalid_target_closes(proxy):
    _, port = proxy
    client = _connect(port)
    try:
        client.sendall(b"CONNECT nohost HTTP/1.1\r\n\r\n")
        assert client.recv(100) == b""
    finally:
        client.close()


def test_closed_server_refuses():
    adapter = AdapterServer(AdapterConfig(local_host="127.0.0.1", local_port=0))
    server = HttpServer(adapter)
    server.close()
    with pytest.raises(TunnelError):
        server.accept_conn(None)
    with pytest.raises(TunnelError):
        server.accept_packet(None)