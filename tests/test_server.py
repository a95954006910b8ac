import socket
import threading

import pytest

from redisc.redistest.server import (
    cluster_config,
    get_cluster_free_port,
    get_free_port,
    new_pool,
    start_cluster,
    start_cluster_with_replicas,
    start_server,
    wait_for_port,
)
from redisc.resp.decode import DecodeError, decode_request


@pytest.fixture
def ping_server():
    listener = socket.create_server(("127.0.0.1", 0))

    def handle(sock):
        with sock, sock.makefile("rb") as reader:
            while True:
                try:
                    request = decode_request(reader)
                except (EOFError, OSError, DecodeError):
                    return
                reply = b"+PONG\r\n" if request[0].upper() == "PING" else b"+OK\r\n"
                try:
                    sock.sendall(reply)
                except OSError:
                    return

    def serve():
        while True:
            try:
                sock, _ = listener.accept()
            except OSError:
                return
            threading.Thread(target=handle, args=(sock,), daemon=True).start()

    threading.Thread(target=serve, daemon=True).start()
    yield f"127.0.0.1:{listener.getsockname()[1]}"
    listener.close()


def test_cluster_config_uses_port():
    conf = cluster_config("7123")
    assert "port 7123\n" in conf
    assert "cluster-config-file nodes.7123.conf" in conf
    assert "cluster-enabled yes" in conf


def test_get_free_port_is_bindable():
    port = get_free_port()
    assert port.isdigit()
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", int(port)))
        assert sock.getsockname()[1] == int(port)


def test_get_cluster_free_port_below_bus_limit():
    for _ in range(20):
        port = get_cluster_free_port()
        assert port.isdigit()
        assert 0 < int(port) < 55535


def test_wait_for_port_listening():
    listener = socket.create_server(("127.0.0.1", 0))
    with listener:
        port = str(listener.getsockname()[1])
        assert wait_for_port(port, 1.0) is True


def test_wait_for_port_closed():
    port = get_free_port()
    assert wait_for_port(port, 0.05) is False


def test_start_server_without_binary(monkeypatch, tmp_path):
    monkeypatch.setenv("PATH", str(tmp_path))
    with pytest.raises(FileNotFoundError, match="redis-server not found"):
        start_server(None, "")


def test_start_cluster_without_binary(monkeypatch, tmp_path):
    monkeypatch.setenv("PATH", str(tmp_path))
    with pytest.raises(FileNotFoundError, match="redis-server not found"):
        start_cluster(None)
    with pytest.raises(FileNotFoundError, match="redis-server not found"):
        start_cluster_with_replicas(None)


def test_new_pool_reuses_connection(ping_server):
    pool = new_pool(ping_server)
    try:
        conn = pool.get()
        assert conn.do("PING") == "PONG"
        conn.close()
        stats = pool.stats()
        assert stats.active_count == 1
        assert stats.idle_count == 1

        again = pool.get()
        assert again.do("SET", "k", "v") == "OK"
        assert pool.stats().idle_count == 0
        again.close()
        assert pool.max_active == 10
        assert pool.max_idle == 2
    finally:
        pool.close()
    assert pool.stats().idle_count == 0