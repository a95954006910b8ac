"""Management of a redis cluster: slot mapping, node connections and pools."""

from __future__ import annotations

import enum
import random
import threading
from collections.abc import Callable, Iterable, Sequence
from typing import Any

from .conn import ClusterError, Conn, RedirError
from .connection import DialOptions, Pool, PoolStats, RedisError
from .connection import dial as dial_address
from .options import PipeOption, PipeOptions
from .pipeline import PipeConn
from .slots import HASH_SLOTS, slot as key_slot, split_by_slot

_rng = random.Random()

Mapping = list[tuple[str, ...]]


class BgErrorSource(enum.IntEnum):
    """Where an error reported to ``Cluster.bg_error`` comes from."""

    # a background refresh of the slot mapping, e.g. after a MOVED reply
    CLUSTER_REFRESH = 0
    # closing the previous connection before a retry on a new one
    RETRY_CLOSE_CONN = 1


class _NoNodeForSlot(ClusterError):
    def __init__(self) -> None:
        super().__init__("redisc: no node for slot")


def _text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    if isinstance(value, str):
        return value
    raise ClusterError(f"redisc: unexpected value {value!r} in CLUSTER SLOTS reply")


def _integer(value: Any) -> int:
    if isinstance(value, bool):
        raise ClusterError(f"redisc: unexpected value {value!r} in CLUSTER SLOTS reply")
    if isinstance(value, int):
        return value
    try:
        return int(_text(value))
    except ValueError:
        raise ClusterError(
            f"redisc: unexpected value {value!r} in CLUSTER SLOTS reply"
        ) from None


def _parse_cluster_slots(reply: Any) -> list[tuple[int, int, tuple[str, ...]]]:
    if not isinstance(reply, list):
        raise ClusterError("redisc: unexpected CLUSTER SLOTS reply")
    ranges = []
    for entry in reply:
        if not isinstance(entry, list) or len(entry) < 2:
            raise ClusterError("redisc: unexpected slot range in CLUSTER SLOTS reply")
        start, end = _integer(entry[0]), _integer(entry[1])
        if not 0 <= start <= end < HASH_SLOTS:
            raise ClusterError(f"redisc: invalid slot range {start}-{end}")
        nodes = []
        for node in entry[2:]:
            if not isinstance(node, list) or len(node) < 2:
                raise ClusterError("redisc: unexpected node in CLUSTER SLOTS reply")
            nodes.append(f"{_text(node[0])}:{_integer(node[1])}")
        ranges.append((start, end, tuple(nodes)))
    return ranges


class Cluster:
    """A redis cluster.

    When *create_pool* is set, a pool is created for each node and
    connections returned by :meth:`get` come from it; otherwise, and always
    for :meth:`dial`, connections are dialed directly.
    *pool_wait_time* bounds, in seconds, the wait for a pooled connection.
    """

    def __init__(
        self,
        startup_nodes: Iterable[str] = (),
        *,
        dial_options: DialOptions | None = None,
        create_pool: Callable[[str, DialOptions | None], Pool] | None = None,
        pool_wait_time: float = 0.0,
        bg_error: Callable[[BgErrorSource, Exception], None] | None = None,
        layout_refresh: Callable[[Mapping, Mapping], None] | None = None,
    ) -> None:
        self.startup_nodes = list(startup_nodes)
        self.dial_options = dial_options
        self.create_pool = create_pool
        self.pool_wait_time = pool_wait_time
        self.bg_error = bg_error
        self.layout_refresh = layout_refresh

        self._lock = threading.Lock()
        self._err: Exception | None = None
        self._pools: dict[str, Pool] = {}
        self._masters: dict[str, None] | None = None
        self._replicas: dict[str, None] = {}
        self._mapping: Mapping = [()] * HASH_SLOTS
        self._refreshing = False

    def __enter__(self) -> "Cluster":
        return self

    def __exit__(self, *exc_info: object) -> None:
        with self._lock:
            closed = self._err is not None
        if not closed:
            self.close()

    # -- slot mapping ----------------------------------------------------

    def refresh(self) -> None:
        """Update the slot mapping with CLUSTER SLOTS from the first node that answers."""
        with self._lock:
            if self._err is not None:
                raise self._err
            self._refreshing = True
        self._refresh(background=False)

    def _refresh(self, background: bool) -> None:
        addrs, _ = self._node_addrs(False)
        if not addrs:
            addrs, _ = self._node_addrs(True)
            if not addrs:
                addrs = list(self.startup_nodes)

        messages = []
        for addr in addrs:
            try:
                ranges = self._get_cluster_slots(addr)
            except Exception as exc:  # noqa: BLE001 - collected into the final error
                messages.append(str(exc))
                continue
            self._apply_layout(ranges)
            return

        with self._lock:
            self._refreshing = False
        err = ClusterError("redisc: all nodes failed\n" + "\n".join(messages))
        if background and self.bg_error is not None:
            self.bg_error(BgErrorSource.CLUSTER_REFRESH, err)
        raise err

    def _apply_layout(self, ranges: Sequence[tuple[int, int, tuple[str, ...]]]) -> None:
        removed_pools = []
        with self._lock:
            old = list(self._mapping)
            masters: dict[str, None] = {}
            replicas: dict[str, None] = {}
            for start, end, nodes in ranges:
                for position, node in enumerate(nodes):
                    (replicas if position else masters)[node] = None
                for index in range(start, end + 1):
                    self._mapping[index] = nodes

            gone = [a for a in (self._masters or {}) if a not in masters]
            gone += [a for a in self._replicas if a not in replicas]
            self._masters, self._replicas = masters, replicas
            for addr in gone:
                pool = self._pools.pop(addr, None)
                if pool is not None:
                    removed_pools.append(pool)

            self._refreshing = False
            new = list(self._mapping)

        for pool in removed_pools:
            pool.close()
        if self.layout_refresh is not None:
            self.layout_refresh(old, new)

    def _refresh_in_background(self) -> None:
        try:
            self._refresh(background=True)
        except Exception:  # noqa: BLE001 - already reported through bg_error
            pass

    def _needs_refresh(self, redir: RedirError | None) -> None:
        with self._lock:
            if redir is not None:
                current = self._mapping[redir.new_slot]
                if current and current[0] == redir.addr:
                    # already pointing there, e.g. a replica redirecting to its master
                    return
                self._mapping[redir.new_slot] = (redir.addr,)
            if self._refreshing:
                return
            self._refreshing = True
        threading.Thread(target=self._refresh_in_background, daemon=True).start()

    def _get_cluster_slots(self, addr: str) -> list[tuple[int, int, tuple[str, ...]]]:
        conn = self._get_conn_for_addr(addr, False)
        try:
            reply = conn.do("CLUSTER", "SLOTS")
        finally:
            conn.close()
        return _parse_cluster_slots(reply)

    def _slot_nodes(self, slot: int) -> list[str]:
        with self._lock:
            return list(self._mapping[slot])

    def _node_addrs(self, prefer_replicas: bool) -> tuple[list[str], bool]:
        with self._lock:
            if self._masters is None:
                self._masters = dict.fromkeys(self.startup_nodes)
                self._replicas = {}
            if prefer_replicas and self._replicas:
                return list(self._replicas), True
            return list(self._masters), False

    # -- node connections ------------------------------------------------

    def _get_conn_for_addr(self, addr: str, force_dial: bool) -> Any:
        use_pool = self.create_pool is not None and not force_dial
        with self._lock:
            if self._err is not None:
                raise self._err
            pool = self._pools.get(addr) if use_pool else None
        if not use_pool:
            return dial_address(addr, self.dial_options)

        if pool is None:
            created = self.create_pool(addr, self.dial_options)  # type: ignore[misc]
            with self._lock:
                pool = self._pools.get(addr)
                if pool is None:
                    self._pools[addr] = pool = created
                    created = None
            if created is not None:
                # a concurrent call registered a pool first
                created.close()
        return self._get_from_pool(pool)

    def _get_from_pool(self, pool: Pool) -> Any:
        if self.pool_wait_time <= 0:
            return pool.get()
        return pool.get(self.pool_wait_time)

    def _get_conn_for_slot(self, slot: int, force_dial: bool, read_only: bool) -> tuple[Any, str]:
        addrs = self._slot_nodes(slot)
        if not addrs:
            raise _NoNodeForSlot()
        addr = addrs[0]
        if read_only and len(addrs) > 1:
            addr = addrs[1] if len(addrs) == 2 else addrs[1 + _rng.randrange(len(addrs) - 1)]
        else:
            read_only = False
        conn = self._get_conn_for_addr(addr, force_dial)
        if read_only:
            try:
                conn.do("READONLY")
            except (OSError, RedisError):
                pass
        return conn, addr

    def _get_random_conn(self, force_dial: bool, read_only: bool) -> tuple[Any, str]:
        addrs, _ = self._node_addrs(read_only)
        _rng.shuffle(addrs)
        messages = []
        for addr in addrs:
            try:
                conn = self._get_conn_for_addr(addr, force_dial)
            except Exception as exc:  # noqa: BLE001 - collected into the final error
                messages.append(str(exc))
                continue
            if read_only:
                try:
                    conn.do("READONLY")
                except (OSError, RedisError):
                    pass
            return conn, addr
        message = "redisc: failed to get a connection"
        if messages:
            message += "\n" + "\n".join(messages)
        raise ClusterError(message)

    def _get_conn(self, slot: int, force_dial: bool, read_only: bool) -> tuple[Any, str]:
        if slot >= 0:
            try:
                return self._get_conn_for_slot(slot, force_dial, read_only)
            except _NoNodeForSlot:
                self._needs_refresh(None)
            except Exception:  # noqa: BLE001 - fall back to any node
                pass
        return self._get_random_conn(force_dial, read_only)

    def _on_retry_close_error(self, err: Exception) -> None:
        if self.bg_error is not None:
            threading.Thread(
                target=self.bg_error,
                args=(BgErrorSource.RETRY_CLOSE_CONN, err),
                daemon=True,
            ).start()

    # -- public connections ----------------------------------------------

    def dial(self) -> Conn:
        """Return a cluster connection that never uses the pools."""
        with self._lock:
            if self._err is not None:
                raise self._err
        return Conn(self, force_dial=True)

    def get(self) -> Conn:
        """Return a cluster connection; on a closed cluster it is already broken."""
        with self._lock:
            err = self._err
        return Conn(self, err=err)

    def get_pipeline(self, *options: PipeOption) -> PipeConn:
        """Return a pipeline over the cluster configured by *options*."""
        with self._lock:
            err = self._err
        settings = PipeOptions()
        for option in options:
            option.apply(settings)
        return PipeConn(
            self,
            transaction=settings.transaction,
            read_only=settings.read_only,
            err=err,
        )

    def each_node(self, replicas: bool, fn: Callable[[str, Conn], Any]) -> None:
        """Call ``fn(addr, conn)`` for each known primary, or each replica.

        The connection is closed after each call; an exception raised by
        *fn* stops the visit and propagates.
        """
        addrs, got_replicas = self._node_addrs(replicas)
        if not addrs or (replicas and not got_replicas):
            raise ClusterError("redisc: no known node address")
        for addr in addrs:
            try:
                rc, err = self._get_conn_for_addr(addr, False), None
            except Exception as exc:  # noqa: BLE001 - handed to fn as a broken conn
                rc, err = None, exc
            with Conn(self, rc=rc, bound_addr=addr, err=err) as conn:
                fn(addr, conn)

    def close(self) -> None:
        """Close the cluster and its pools; closing twice raises."""
        with self._lock:
            if self._err is not None:
                raise self._err
            self._err = ClusterError("redisc: closed")
            pools = list(self._pools.values())
        # pools are kept so that stats() still works
        for pool in pools:
            pool.close()

    def stats(self) -> dict[str, PoolStats]:
        """Return the statistics of every pool, keyed by node address."""
        with self._lock:
            pools = dict(self._pools)
        return {addr: pool.stats() for addr, pool in pools.items()}


def split_by_node_with_slot(cluster: Cluster, groups: Iterable[Sequence[str]]) -> list[list[str]]:
    """Merge groups of same-slot keys into one group per master node.

    Groups whose slot has no known node come first, unchanged.
    """
    unmapped: list[list[str]] = []
    by_node: dict[str, list[str]] = {}
    for group in groups:
        nodes = cluster._slot_nodes(key_slot(group[0]))
        if nodes:
            by_node.setdefault(nodes[0], []).extend(group)
        else:
            unmapped.append(list(group))
    return unmapped + list(by_node.values())


def split_by_node(cluster: Cluster, keys: Iterable[str]) -> list[list[str]]:
    """Group *keys* by the master node serving their slot."""
    return split_by_node_with_slot(cluster, split_by_slot(keys))