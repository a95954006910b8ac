import socketserver
import threading

import pytest

from redisc.connection import DialOptions, Pool, RedisError, dial
from redisc.resp.decode import decode_request
from redisc.resp.encode import Array, Error, Pong, encode_to_bytes


def _reply(cmd, args):
    if cmd == "PING":
        return Pong()
    if cmd == "ECHO":
        return args[0]
    if cmd == "FAIL":
        return Error("ERR " + args[0])
    if cmd == "LIST":
        return Array(args)
    if cmd == "NIL":
        return None
    if cmd == "NUM":
        return int(args[0])
    return Error("unexpected command " + cmd)


class _Handler(socketserver.StreamRequestHandler):
    def handle(self):
        while True:
            try:
                request = decode_request(self.rfile)
            except (EOFError, ValueError, OSError):
                return
            self.wfile.write(encode_to_bytes(_reply(request[0], request[1:])))
            self.wfile.flush()


@pytest.fixture
def address():
    server = socketserver.ThreadingTCPServer(("127.0.0.1", 0), _Handler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield "127.0.0.1:%d" % server.server_address[1]
    server.shutdown()
    server.server_close()


def test_do_replies(address):
    with dial(address, DialOptions(connect_timeout=2, read_timeout=2)) as conn:
        assert conn.do("PING") == "PONG"
        assert conn.do("ECHO", "hello") == b"hello"
        assert conn.do("NUM", 42) == 42
        assert conn.do("NIL") is None
        assert conn.do("LIST", "a", "b") == [b"a", b"b"]


def test_error_reply_raises(address):
    with dial(address) as conn:
        with pytest.raises(RedisError) as info:
            conn.do("FAIL", "boom")
        assert str(info.value) == "ERR boom"
        assert conn.err() is None


def test_pipeline_send_flush_receive(address):
    with dial(address) as conn:
        conn.send("ECHO", "x")
        conn.send("NUM", 7)
        conn.flush()
        assert conn.receive() == b"x"
        assert conn.receive_with_timeout(1.0) == 7


def test_blank_do_collects_pending(address):
    with dial(address) as conn:
        conn.send("ECHO", "x")
        conn.send("FAIL", "e")
        replies = conn.do("")
        assert replies == [b"x", RedisError("ERR e")]
        assert conn.do("") == []


def test_do_raises_first_pending_error(address):
    with dial(address) as conn:
        conn.send("FAIL", "first")
        with pytest.raises(RedisError, match="ERR first"):
            conn.do("ECHO", "y")


def test_closed_connection(address):
    conn = dial(address)
    conn.close()
    assert isinstance(conn.err(), ConnectionError)
    with pytest.raises(ConnectionError):
        conn.do("PING")


def test_pool_reuses_idle_connections(address):
    pool = Pool(lambda: dial(address), max_idle=2, max_active=5)
    conn = pool.get()
    assert conn.do("PING") == "PONG"
    conn.close()
    stats = pool.stats()
    assert (stats.active_count, stats.idle_count) == (1, 1)
    again = pool.get()
    assert pool.stats().idle_count == 0
    again.close()
    pool.close()
    assert pool.stats().active_count == 0
    with pytest.raises(ConnectionError):
        pool.get()


def test_pool_wait_times_out(address):
    pool = Pool(lambda: dial(address), max_active=1, wait=True)
    first = pool.get()
    with pytest.raises(TimeoutError):
        pool.get(timeout=0.1)
    threading.Timer(0.05, first.close).start()
    second = pool.get(timeout=2)
    assert second.do("PING") == "PONG"
    second.close()
    pool.close()


def test_pool_exhausted_without_wait(address):
    pool = Pool(lambda: dial(address), max_active=1)
    held = pool.get()
    with pytest.raises(ConnectionError):
        pool.get()
    held.close()
    assert pool.stats().active_count == 0