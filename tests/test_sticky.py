from unittest import mock

from proxytunnel.tunnel.sticky import MuxConfig, StickyConn


class RecordingConn:
    def __init__(self, incoming=b""):
        self.writes = []
        self.closed = False
        self.incoming = incoming
        self.metadata = "meta"

    def write(self, data):
        self.writes.append(bytes(data))
        return len(data)

    def read(self, size):
        chunk, self.incoming = self.incoming[:size], self.incoming[size:]
        return chunk

    def close(self):
        self.closed = True


SYN = bytes([1, 0, 0, 0, 3, 0, 0, 0])
FIN = bytes([1, 1, 0, 0, 3, 0, 0, 0])


def test_syn_header_is_held_back_and_prepended():
    inner = RecordingConn()
    conn = StickyConn(inner)
    assert conn.write(SYN) == 8
    assert inner.writes == []
    assert conn.write(b"payload") == 7
    assert inner.writes == [SYN + b"payload"]


def test_fin_header_is_appended_to_next_write():
    inner = RecordingConn()
    conn = StickyConn(inner)
    conn.write(SYN)
    conn.write(FIN)
    conn.write(b"data")
    assert inner.writes == [SYN + b"data" + FIN]


def test_other_headers_pass_through():
    inner = RecordingConn()
    conn = StickyConn(inner)
    push = bytes([1, 2, 0, 0, 3, 0, 0, 0])
    other = bytes([9, 0, 0, 0, 0, 0, 0, 0])
    assert conn.write(push) == 8
    assert conn.write(other) == 8
    assert inner.writes == [push, other]


def test_queued_headers_are_sent_once():
    inner = RecordingConn()
    conn = StickyConn(inner)
    conn.write(SYN)
    conn.write(b"a")
    conn.write(b"b")
    assert inner.writes == [SYN + b"a", b"b"]


def test_close_flushes_headers_with_padding():
    inner = RecordingConn()
    conn = StickyConn(inner)
    conn.write(FIN)
    with mock.patch("random.randrange", return_value=10):
        conn.close()
    assert inner.closed
    assert inner.writes == [FIN + b"ABCDEF" + bytes(4)]


def test_read_and_metadata_delegate():
    inner = RecordingConn(incoming=b"hello world")
    conn = StickyConn(inner)
    assert conn.read(5) == b"hello"
    assert conn.read(100) == b" world"
    assert conn.metadata == "meta"


def test_mux_config_defaults():
    config = MuxConfig()
    assert (config.enabled, config.idle_timeout, config.concurrency) == (False, 30, 8)