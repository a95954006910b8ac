"""Cluster connections that bind lazily to the node serving a key's slot."""

from __future__ import annotations

import threading
from collections.abc import Sequence
from typing import Any, Protocol

from .connection import RedisError
from .slots import slot as key_slot


class ClusterError(Exception):
    """An error raised by the cluster client itself."""


class NoBindMethodError(ClusterError):
    """The connection given to :func:`bind_conn` has no ``bind`` method."""

    def __init__(self) -> None:
        super().__init__("redisc: no Bind method")


class RedirError(RedisError):
    """A MOVED or ASK redirection reply sent by a cluster node."""

    def __init__(self, type: str, new_slot: int, addr: str, raw: str) -> None:
        super().__init__(raw)
        self.type = type
        self.new_slot = new_slot
        self.addr = addr


class _ClusterLike(Protocol):
    def _get_conn(self, slot: int, force_dial: bool, read_only: bool) -> tuple[Any, str]: ...

    def _needs_refresh(self, redir: RedirError | None) -> None: ...


def _is_redis_err(err: BaseException | None, kind: str) -> bool:
    if not isinstance(err, RedisError):
        return False
    parts = str(err).split()
    return bool(parts) and parts[0] == kind


def is_try_again(err: BaseException | None) -> bool:
    """Tell whether *err* is a TRYAGAIN cluster error."""
    return _is_redis_err(err, "TRYAGAIN")


def is_cross_slot(err: BaseException | None) -> bool:
    """Tell whether *err* is a CROSSSLOT cluster error."""
    return _is_redis_err(err, "CROSSSLOT")


def parse_redir(err: BaseException | None) -> RedirError | None:
    """Parse *err* as a MOVED or ASK redirection; None if it is not one."""
    if not isinstance(err, RedisError):
        return None
    raw = str(err)
    parts = raw.split()
    if len(parts) != 3 or parts[0] not in ("MOVED", "ASK"):
        return None
    try:
        new_slot = int(parts[1])
    except ValueError:
        return None
    return RedirError(parts[0], new_slot, parts[2], raw)


def cmd_key(command: str, args: Sequence[Any]) -> str:
    """Return the key argument of *command*.

    The key is the first argument, or the third one for EVAL and EVALSHA.
    Raises :class:`ValueError` when there is no string in that position.
    """
    index = 2 if command in ("EVAL", "EVALSHA") else 0
    if len(args) <= index:
        raise ValueError("can not get key from args")
    key = args[index]
    if not isinstance(key, str):
        raise ValueError(f"can not get key from args {key!r}")
    return key


def cmd_slot(command: str, args: Sequence[Any]) -> int:
    """Return the slot of the command's key, or -1 when it has none."""
    if not args:
        return -1
    try:
        return key_slot(cmd_key(command, args))
    except ValueError:
        return -1


def bind_conn(conn: Any, *keys: str) -> None:
    """Call ``conn.bind(*keys)``; raise :class:`NoBindMethodError` if it has none."""
    bind = getattr(conn, "bind", None)
    if not callable(bind):
        raise NoBindMethodError()
    bind(*keys)


def bind_conn_kind(conn: Any, *keys: str) -> None:
    """Like :func:`bind_conn`, but plain connections without ``bind`` are accepted."""
    try:
        bind_conn(conn, *keys)
    except NoBindMethodError:
        pass


def read_only_conn(conn: Any) -> None:
    """Call ``conn.read_only()``; raise :class:`ClusterError` if it has none."""
    read_only = getattr(conn, "read_only", None)
    if not callable(read_only):
        raise ClusterError("redisc: no ReadOnly method")
    read_only()


class Conn:
    """A connection to a cluster, bound to a node on first use.

    A call to ``do`` or ``send`` binds to the node serving the slot of the
    command's key (a random node when there is no key); ``receive`` binds to a
    random node; ``bind`` binds to the node serving the given keys.
    """

    def __init__(
        self,
        cluster: _ClusterLike,
        *,
        force_dial: bool = False,
        rc: Any = None,
        bound_addr: str = "",
        err: Exception | None = None,
    ) -> None:
        self._cluster = cluster
        self._force_dial = force_dial
        self._lock = threading.Lock()
        self._read_only = False
        self._bound_addr = bound_addr
        self._err = err
        self._rc = rc

    def __enter__(self) -> "Conn":
        return self

    def __exit__(self, *exc_info: object) -> None:
        with self._lock:
            if self._err is None:
                self._err = ClusterError("redisc: closed")
                self._close_locked()

    @property
    def cluster(self) -> _ClusterLike:
        return self._cluster

    @property
    def force_dial(self) -> bool:
        return self._force_dial

    @property
    def bound_addr(self) -> str:
        with self._lock:
            return self._bound_addr

    @property
    def is_read_only(self) -> bool:
        with self._lock:
            return self._read_only

    @property
    def is_bound(self) -> bool:
        with self._lock:
            return self._rc is not None

    def _bind(self, slot: int) -> tuple[Any, bool]:
        with self._lock:
            if self._err is not None:
                raise self._err
            if self._rc is not None:
                return self._rc, False
            conn, addr = self._cluster._get_conn(slot, self._force_dial, self._read_only)
            self._rc = conn
            self._bound_addr = addr
            return conn, True

    def _close_locked(self) -> None:
        if self._rc is None:
            return
        if self._read_only:
            # may be a pooled connection: reset the read-only mode
            try:
                self._rc.do("READWRITE")
            except (OSError, RedisError):
                pass
        self._rc.close()

    def _redirect(self, conn: Any, addr: str, read_only: bool) -> Exception | None:
        """Replace the bound connection; return the error closing the old one."""
        with self._lock:
            close_err: Exception | None = None
            try:
                self._close_locked()
            except Exception as exc:  # noqa: BLE001 - reported to the caller
                close_err = exc
            self._rc = conn
            self._bound_addr = addr
            self._read_only = read_only
            return close_err

    def _check_redir(self, err: RedisError) -> None:
        redir = parse_redir(err)
        if redir is not None and redir.type == "MOVED":
            self._cluster._needs_refresh(redir)

    def bind(self, *keys: str) -> None:
        """Bind to the node serving *keys*, which must share one slot.

        With no key, a random node is chosen.
        """
        slot = -1
        for key in keys:
            ks = key_slot(key)
            if slot != -1 and ks != slot:
                raise ClusterError("redisc: keys do not belong to the same slot")
            slot = ks
        _, bound = self._bind(slot)
        if not bound:
            raise ClusterError("redisc: connection already bound to a node")

    def read_only(self) -> None:
        """Mark the connection to be served by a replica once bound."""
        with self._lock:
            if self._err is not None:
                raise self._err
            if self._rc is not None:
                raise ClusterError("redisc: connection already bound to a node")
            self._read_only = True

    def do(self, command: str, *args: Any) -> Any:
        """Send *command* and return its reply."""
        return self._do(None, False, command, args)

    def do_with_timeout(self, timeout: float | None, command: str, *args: Any) -> Any:
        """Like :meth:`do`, overriding the read timeout of the node connection."""
        return self._do(timeout, True, command, args)

    def _do(
        self, timeout: float | None, use_timeout: bool, command: str, args: tuple[Any, ...]
    ) -> Any:
        # the blank command flushes pending replies; do not bind for it
        if not command and not args:
            with self._lock:
                if self._rc is None and self._err is None:
                    return None
        rc, _ = self._bind(cmd_slot(command, args))
        try:
            if not use_timeout:
                return rc.do(command, *args)
            do_with_timeout = getattr(rc, "do_with_timeout", None)
            if do_with_timeout is None:
                raise ClusterError("redisc: connection does not support ConnWithTimeout")
            return do_with_timeout(timeout, command, *args)
        except RedisError as err:
            self._check_redir(err)
            raise

    def send(self, command: str, *args: Any) -> None:
        """Buffer *command* on the bound node connection."""
        rc, _ = self._bind(cmd_slot(command, args))
        rc.send(command, *args)

    def receive(self) -> Any:
        """Receive a single reply."""
        return self._receive(None, False)

    def receive_with_timeout(self, timeout: float | None) -> Any:
        """Receive a single reply, overriding the read timeout."""
        return self._receive(timeout, True)

    def _receive(self, timeout: float | None, use_timeout: bool) -> Any:
        rc, _ = self._bind(-1)
        try:
            if not use_timeout:
                return rc.receive()
            receive_with_timeout = getattr(rc, "receive_with_timeout", None)
            if receive_with_timeout is None:
                raise ClusterError("redisc: connection does not support ConnWithTimeout")
            return receive_with_timeout(timeout)
        except RedisError as err:
            self._check_redir(err)
            raise

    def flush(self) -> None:
        """Flush the output buffer of the bound node connection."""
        with self._lock:
            if self._err is not None:
                raise self._err
            if self._rc is not None:
                self._rc.flush()

    def err(self) -> Exception | None:
        """Return the error that broke the connection, or None."""
        with self._lock:
            if self._err is not None:
                return self._err
            if self._rc is not None:
                return self._rc.err()
            return None

    def close(self) -> None:
        """Close the connection; closing twice raises the closed error."""
        with self._lock:
            if self._err is not None:
                raise self._err
            self._err = ClusterError("redisc: closed")
            self._close_locked()