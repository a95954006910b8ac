"""Helpers that start redis-server processes, alone or as a cluster, for tests."""

from __future__ import annotations

import logging
import shutil
import socket
import subprocess
import tempfile
import time
import weakref
from collections.abc import Callable, Iterable
from typing import IO, Any

from ..connection import Connection, Pool, dial
from ..slots import HASH_SLOTS

_log = logging.getLogger(__name__)

# Configuration of a node started in cluster mode; {port} is the node's port.
CLUSTER_CONFIG = """
port {port}
cluster-enabled yes
cluster-config-file nodes.{port}.conf
cluster-node-timeout 5000
appendonly no
"""

# Number of master nodes in a test cluster; with replicas there is one per master.
NUM_CLUSTER_NODES = 3

# Cluster nodes talk to each other on port + 10000, so ports must stay below this.
_MAX_CLUSTER_PORT = 55535

_WAIT_TIMEOUT = 10.0

Output = IO[Any] | int | None


def cluster_config(port: str) -> str:
    """Return the cluster-mode configuration for a node listening on *port*."""
    return CLUSTER_CONFIG.format(port=port)


def get_free_port() -> str:
    """Return a TCP port on 127.0.0.1 that is free right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return str(sock.getsockname()[1])


def get_cluster_free_port() -> str:
    """Return a free port low enough for its cluster bus port to be valid too."""
    port = int(get_free_port())
    if port >= _MAX_CLUSTER_PORT:
        port -= 10000
    return str(port)


def wait_for_port(port: str, timeout: float) -> bool:
    """Wait up to *timeout* seconds for 127.0.0.1:*port* to accept connections."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            with socket.create_connection(("127.0.0.1", int(port)), timeout=1.0):
                return True
        except OSError:
            time.sleep(0.01)
    return False


def _require_redis_server() -> None:
    if shutil.which("redis-server") is None:
        raise FileNotFoundError("redis-server not found in $PATH")


def _dial_port(port: str) -> Connection:
    return dial(f"127.0.0.1:{port}")


def _stop(procs: Iterable[subprocess.Popen[bytes]]) -> None:
    for proc in procs:
        if proc.poll() is None:
            proc.kill()
        proc.wait()


def _start_server_with_config(port: str, output: Output, conf: str) -> subprocess.Popen[bytes]:
    args = ["redis-server", "-"] if conf else ["redis-server", "--port", port]
    workdir = tempfile.mkdtemp(prefix="redis-server-")
    stream = subprocess.DEVNULL if output is None else output
    proc = subprocess.Popen(
        args,
        cwd=workdir,
        stdin=subprocess.PIPE if conf else subprocess.DEVNULL,
        stdout=stream,
        stderr=stream,
    )
    weakref.finalize(proc, shutil.rmtree, workdir, True)
    if conf:
        assert proc.stdin is not None
        proc.stdin.write(conf.encode("utf-8"))
        proc.stdin.close()

    if not wait_for_port(port, _WAIT_TIMEOUT):
        _stop([proc])
        raise RuntimeError(f"redis-server did not start on port {port}")
    _log.info("redis-server started on port %s", port)
    return proc


def start_server(output: Output = None, conf: str = "") -> tuple[subprocess.Popen[bytes], str]:
    """Start a redis-server on a free port and return the process and the port.

    The caller must stop the process. *output* receives the server's stdout
    and stderr; a non-empty *conf* is given to the server on stdin.
    """
    _require_redis_server()
    port = get_free_port()
    return _start_server_with_config(port, output, conf), port


def _setup_cluster_node(port: str, start: int, count: int) -> None:
    with _dial_port(port) as conn:
        conn.do("CLUSTER", "ADDSLOTS", *range(start, start + count))


def _join_cluster(node_port: str, cluster_port: str) -> None:
    with _dial_port(node_port) as conn:
        conn.do("CLUSTER", "MEET", "127.0.0.1", cluster_port)


def _setup_replica(replica_port: str, master_id: str) -> None:
    with _dial_port(replica_port) as conn:
        conn.do("CLUSTER", "REPLICATE", master_id)


def _cluster_nodes(conn: Connection) -> list[list[str]]:
    reply = conn.do("CLUSTER", "NODES")
    text = reply.decode("utf-8") if isinstance(reply, bytes) else str(reply)
    return [line.split() for line in text.splitlines() if line.strip()]


def _get_cluster_node_ids(ports: list[str]) -> dict[str, str]:
    if not ports:
        return {}
    with _dial_port(ports[0]) as conn:
        nodes = _cluster_nodes(conn)

    mapping: dict[str, str] = {}
    for fields in nodes:
        addr = fields[1].split("@", 1)[0]
        for port in ports:
            if addr == f"127.0.0.1:{port}":
                mapping[port] = fields[0]
                break
    if len(mapping) != len(ports):
        raise RuntimeError("could not find the node IDs of all ports")
    return mapping


def _wait_for_cluster(timeout: float, ports: Iterable[str]) -> bool:
    deadline = time.monotonic() + timeout
    for port in ports:
        with _dial_port(port) as conn:
            while time.monotonic() < deadline:
                info = conn.do("CLUSTER", "INFO")
                if b"cluster_state:ok" in info:
                    break
                time.sleep(0.1)
        if time.monotonic() > deadline:
            return False
    return True


def _wait_for_replicas(timeout: float, ports: Iterable[str]) -> bool:
    deadline = time.monotonic() + timeout
    for port in ports:
        with _dial_port(port) as conn:
            while time.monotonic() < deadline:
                masters = replicas = 0
                for fields in _cluster_nodes(conn):
                    if fields[7] == "connected":
                        if "master" in fields[2]:
                            masters += 1
                        else:
                            replicas += 1
                if masters == NUM_CLUSTER_NODES and replicas == NUM_CLUSTER_NODES:
                    break
                time.sleep(0.1)
        if time.monotonic() > deadline:
            return False
    return True


def start_cluster(output: Output = None) -> tuple[Callable[[], None], list[str]]:
    """Start a cluster of :data:`NUM_CLUSTER_NODES` masters.

    Returns a function that stops the nodes, and the list of their ports.
    """
    _require_redis_server()
    procs: list[subprocess.Popen[bytes]] = []
    ports: list[str] = []
    slots_per_node = HASH_SLOTS // NUM_CLUSTER_NODES
    try:
        for i in range(NUM_CLUSTER_NODES):
            port = get_cluster_free_port()
            procs.append(_start_server_with_config(port, output, cluster_config(port)))
            ports.append(port)

            count = slots_per_node
            if i == NUM_CLUSTER_NODES - 1:
                # the last node takes all remaining slots
                count = HASH_SLOTS - i * slots_per_node
            _setup_cluster_node(port, i * slots_per_node, count)
            if i > 0:
                _join_cluster(port, ports[i - 1])

        if not _wait_for_cluster(_WAIT_TIMEOUT, ports):
            raise RuntimeError("timed out waiting for the cluster")
    except BaseException:
        _stop(procs)
        raise

    return lambda: _stop(procs), ports


def start_cluster_with_replicas(output: Output = None) -> tuple[Callable[[], None], list[str]]:
    """Start a cluster whose masters have one replica each.

    Returns a function that stops all nodes, and the ports: masters first,
    then replicas.
    """
    stop_masters, ports = start_cluster(output)
    replica_procs: list[subprocess.Popen[bytes]] = []
    replica_ports: list[str] = []
    try:
        node_ids = _get_cluster_node_ids(ports)
        replica_master: dict[str, str] = {}
        for master in ports:
            port = get_cluster_free_port()
            replica_procs.append(_start_server_with_config(port, output, cluster_config(port)))
            _join_cluster(port, master)
            replica_ports.append(port)
            replica_master[port] = master

        if not _wait_for_cluster(_WAIT_TIMEOUT, replica_ports):
            raise RuntimeError("timed out waiting for the cluster replicas")
        for port in replica_ports:
            _setup_replica(port, node_ids[replica_master[port]])
        if not _wait_for_replicas(_WAIT_TIMEOUT, ports + replica_ports):
            raise RuntimeError("timed out waiting for the replicas to join")
    except BaseException:
        _stop(replica_procs)
        stop_masters()
        raise

    def stop() -> None:
        _stop(replica_procs)
        stop_masters()

    return stop, ports + replica_ports


def _ping(conn: Connection, _last_used: float) -> None:
    conn.do("PING")


def new_pool(address: str) -> Pool:
    """Return a connection pool for the server at *address*."""
    return Pool(
        lambda: dial(address),
        max_idle=2,
        max_active=10,
        idle_timeout=60.0,
        test_on_borrow=_ping,
    )