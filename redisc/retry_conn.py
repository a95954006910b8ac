"""A cluster connection that follows redirections and retries TRYAGAIN."""

from __future__ import annotations

import time
from typing import Any, Protocol

from .conn import ClusterError, Conn, RedirError, is_try_again, parse_redir
from .connection import RedisError


class _RedirectingCluster(Protocol):
    def _get_conn_for_addr(self, addr: str, force_dial: bool) -> Any: ...

    def _get_conn_for_slot(
        self, slot: int, force_dial: bool, read_only: bool
    ) -> tuple[Any, str]: ...

    def _slot_nodes(self, slot: int) -> list[str]: ...


class RetryConn:
    """Wraps a :class:`Conn` so that MOVED, ASK and TRYAGAIN replies are handled.

    Only :meth:`do`, :meth:`err` and :meth:`close` are supported; pipelining
    calls raise :class:`ClusterError`.
    """

    def __init__(self, conn: Conn, max_attempts: int, try_again_delay: float) -> None:
        self._conn = conn
        self._max_attempts = max_attempts
        self._try_again_delay = try_again_delay

    def __enter__(self) -> "RetryConn":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._conn.__exit__(*exc_info)

    @property
    def conn(self) -> Conn:
        return self._conn

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def try_again_delay(self) -> float:
        return self._try_again_delay

    def do(self, command: str, *args: Any) -> Any:
        """Run *command*, following redirections, within the attempt limit."""
        attempts = 0
        asking = False
        while self._max_attempts <= 0 or attempts < self._max_attempts:
            if asking:
                self._conn.send("ASKING")
                asking = False

            redir: RedirError | None = None
            try:
                return self._conn.do(command, *args)
            except RedisError as err:
                redir = parse_redir(err)
                if redir is None:
                    if not is_try_again(err):
                        raise
                    time.sleep(self._try_again_delay)
                    attempts += 1
                    continue

            self._follow(redir)
            asking = redir.type == "ASK"
            attempts += 1
        raise ClusterError("redisc: too many attempts")

    def _follow(self, redir: RedirError) -> None:
        conn = self._conn
        cluster: _RedirectingCluster = conn.cluster  # type: ignore[assignment]
        read_only = conn.is_read_only
        bound_addr = conn.bound_addr
        if read_only and bound_addr in cluster._slot_nodes(redir.new_slot):
            # the replica cannot serve this command: go to the slot's master
            read_only = False

        if redir.type == "ASK":
            new_conn = cluster._get_conn_for_addr(redir.addr, conn.force_dial)
            addr = redir.addr
            read_only = False
        else:
            # the mapping was already updated by the MOVED reply
            new_conn, addr = cluster._get_conn_for_slot(
                redir.new_slot, conn.force_dial, read_only
            )

        close_err = conn._redirect(new_conn, addr, read_only)
        if close_err is not None:
            report = getattr(cluster, "_on_retry_close_error", None)
            if callable(report):
                report(close_err)

    def err(self) -> Exception | None:
        """Return the error that broke the wrapped connection, or None."""
        return self._conn.err()

    def close(self) -> None:
        """Close the wrapped connection."""
        self._conn.close()

    def send(self, command: str, *args: Any) -> None:
        raise ClusterError("redisc: unsupported call to Send")

    def receive(self) -> Any:
        raise ClusterError("redisc: unsupported call to Receive")

    def flush(self) -> None:
        raise ClusterError("redisc: unsupported call to Flush")


def retry_conn(conn: Any, max_attempts: int, try_again_delay: float) -> RetryConn:
    """Wrap *conn*, which must be a cluster :class:`Conn`, in a :class:`RetryConn`.

    *max_attempts* <= 0 means no limit; *try_again_delay* is in seconds.
    """
    if not isinstance(conn, Conn):
        raise ClusterError("redisc: connection is not a cluster Conn")
    return RetryConn(conn, max_attempts, try_again_delay)