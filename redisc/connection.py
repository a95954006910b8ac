"""A minimal redis client connection and connection pool."""

from __future__ import annotations

import socket
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


class RedisError(Exception):
    """An error reply sent by a redis server."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message

    def __eq__(self, other: object) -> bool:
        return isinstance(other, RedisError) and other.message == self.message

    def __hash__(self) -> int:
        return hash(self.message)


@dataclass(frozen=True)
class DialOptions:
    """Timeouts, in seconds, applied to a new connection. None means no limit."""

    connect_timeout: float | None = None
    read_timeout: float | None = None
    write_timeout: float | None = None


def _split_address(address: str) -> tuple[str, int]:
    host, _, port = address.rpartition(":")
    return (host or "localhost", int(port))


def _encode_arg(arg: Any) -> bytes:
    if isinstance(arg, (bytes, bytearray, memoryview)):
        return bytes(arg)
    if isinstance(arg, bool):
        return b"1" if arg else b"0"
    if arg is None:
        return b""
    if isinstance(arg, float):
        return repr(arg).encode("ascii")
    return str(arg).encode("utf-8")


def _encode_command(command: str, args: tuple[Any, ...]) -> bytes:
    parts = [command.encode("utf-8"), *(_encode_arg(a) for a in args)]
    out = [b"*%d\r\n" % len(parts)]
    for part in parts:
        out.append(b"$%d\r\n%s\r\n" % (len(part), part))
    return b"".join(out)


class Connection:
    """A connection to a single redis server.

    Replies are ``str`` for simple strings, ``int``, ``bytes`` for bulk
    strings, ``list`` for arrays and ``None`` for nil. Error replies are raised
    as :class:`RedisError`, except inside arrays and the list returned by
    ``do("")`` where they appear as values.
    """

    def __init__(self, sock: socket.socket, options: DialOptions | None = None) -> None:
        self._options = options or DialOptions()
        self._sock = sock
        self._sock.settimeout(self._options.read_timeout)
        self._rfile = sock.makefile("rb")
        self._out = bytearray()
        self._pending = 0
        self._err: Exception | None = None
        self._lock = threading.Lock()

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _fatal(self, exc: Exception) -> Exception:
        if self._err is None:
            self._err = exc
            self._shutdown()
        return exc

    def _shutdown(self) -> None:
        try:
            self._rfile.close()
        finally:
            self._sock.close()

    def _check(self) -> None:
        if self._err is not None:
            raise self._err

    def _read_reply(self) -> Any:
        line = self._rfile.readline()
        if not line:
            raise ConnectionError("redisc: connection closed by server")
        if not line.endswith(b"\r\n"):
            raise ConnectionError("redisc: bad response line terminator")
        prefix, body = line[:1], line[1:-2]
        if prefix == b"+":
            return body.decode("utf-8", "replace")
        if prefix == b"-":
            return RedisError(body.decode("utf-8", "replace"))
        if prefix == b":":
            return int(body)
        if prefix == b"$":
            length = int(body)
            if length < 0:
                return None
            data = self._rfile.read(length + 2)
            if len(data) != length + 2 or data[-2:] != b"\r\n":
                raise ConnectionError("redisc: bad bulk string")
            return data[:length]
        if prefix == b"*":
            count = int(body)
            if count < 0:
                return None
            return [self._read_reply() for _ in range(count)]
        raise ConnectionError(f"redisc: unexpected response line {line!r}")

    def _write(self) -> None:
        if not self._out:
            return
        self._sock.settimeout(self._options.write_timeout)
        try:
            self._sock.sendall(self._out)
        finally:
            self._sock.settimeout(self._options.read_timeout)
        self._out.clear()

    def _receive_one(self, timeout: float | None, use_timeout: bool) -> Any:
        if use_timeout:
            self._sock.settimeout(timeout)
        try:
            reply = self._read_reply()
        except (OSError, ValueError) as exc:
            raise self._fatal(exc) from None
        finally:
            if use_timeout and self._err is None:
                self._sock.settimeout(self._options.read_timeout)
        if self._pending > 0:
            self._pending -= 1
        return reply

    def send(self, command: str, *args: Any) -> None:
        """Buffer *command* for sending on the next flush."""
        with self._lock:
            self._check()
            self._out += _encode_command(command, args)
            self._pending += 1

    def flush(self) -> None:
        """Write the buffered commands to the server."""
        with self._lock:
            self._check()
            try:
                self._write()
            except OSError as exc:
                raise self._fatal(exc) from None

    def receive(self) -> Any:
        """Read a single reply."""
        return self._receive(None, False)

    def receive_with_timeout(self, timeout: float | None) -> Any:
        """Read a single reply, overriding the read timeout."""
        return self._receive(timeout, True)

    def _receive(self, timeout: float | None, use_timeout: bool) -> Any:
        with self._lock:
            self._check()
            reply = self._receive_one(timeout, use_timeout)
        if isinstance(reply, RedisError):
            raise reply
        return reply

    def do(self, command: str, *args: Any) -> Any:
        """Send *command*, flush and return its reply."""
        return self._do(None, False, command, args)

    def do_with_timeout(self, timeout: float | None, command: str, *args: Any) -> Any:
        """Like :meth:`do`, overriding the read timeout."""
        return self._do(timeout, True, command, args)

    def _do(
        self, timeout: float | None, use_timeout: bool, command: str, args: tuple[Any, ...]
    ) -> Any:
        with self._lock:
            self._check()
            pending = self._pending
            if command:
                self._out += _encode_command(command, args)
            try:
                self._write()
            except OSError as exc:
                raise self._fatal(exc) from None
            if not command:
                return [self._receive_one(timeout, use_timeout) for _ in range(pending)]
            self._pending += 1
            first_error: RedisError | None = None
            reply: Any = None
            for _ in range(pending + 1):
                reply = self._receive_one(timeout, use_timeout)
                if isinstance(reply, RedisError) and first_error is None:
                    first_error = reply
        if first_error is not None:
            raise first_error
        return reply

    def err(self) -> Exception | None:
        """Return the error that broke the connection, or None."""
        return self._err

    def close(self) -> None:
        """Close the connection."""
        with self._lock:
            if self._err is None:
                self._err = ConnectionError("redisc: closed")
                self._shutdown()


def dial(address: str, options: DialOptions | None = None) -> Connection:
    """Open a connection to the server at ``host:port`` (``:port`` for localhost)."""
    options = options or DialOptions()
    sock = socket.create_connection(_split_address(address), timeout=options.connect_timeout)
    sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    return Connection(sock, options)


@dataclass(frozen=True)
class PoolStats:
    """Counters of a pool; active connections include idle ones."""

    active_count: int
    idle_count: int


class _PooledConnection:
    """A pool-managed connection; closing it returns it to the pool."""

    def __init__(self, pool: "Pool", conn: Connection) -> None:
        self._pool = pool
        self._conn: Connection | None = conn

    def _live(self) -> Connection:
        if self._conn is None:
            raise ConnectionError("redisc: connection closed")
        return self._conn

    def __enter__(self) -> "_PooledConnection":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def do(self, command: str, *args: Any) -> Any:
        return self._live().do(command, *args)

    def do_with_timeout(self, timeout: float | None, command: str, *args: Any) -> Any:
        return self._live().do_with_timeout(timeout, command, *args)

    def send(self, command: str, *args: Any) -> None:
        self._live().send(command, *args)

    def flush(self) -> None:
        self._live().flush()

    def receive(self) -> Any:
        return self._live().receive()

    def receive_with_timeout(self, timeout: float | None) -> Any:
        return self._live().receive_with_timeout(timeout)

    def err(self) -> Exception | None:
        if self._conn is None:
            return ConnectionError("redisc: connection closed")
        return self._conn.err()

    def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        if conn.err() is None:
            try:
                conn.do("")
            except (OSError, RedisError):
                pass
        self._pool._put(conn)


class Pool:
    """A pool of connections created by *dial*."""

    def __init__(
        self,
        dial: Callable[[], Connection],
        *,
        max_idle: int = 0,
        max_active: int = 0,
        idle_timeout: float | None = None,
        test_on_borrow: Callable[[Connection, float], None] | None = None,
        wait: bool = False,
    ) -> None:
        self._dial = dial
        self.max_idle = max_idle
        self.max_active = max_active
        self.idle_timeout = idle_timeout
        self.test_on_borrow = test_on_borrow
        self.wait = wait
        self._cond = threading.Condition()
        self._idle: deque[tuple[Connection, float]] = deque()
        self._active = 0
        self._closed = False

    def _prune(self) -> None:
        if not self.idle_timeout:
            return
        limit = time.monotonic() - self.idle_timeout
        while self._idle and self._idle[0][1] < limit:
            conn, _ = self._idle.popleft()
            conn.close()
            self._active -= 1

    def get(self, timeout: float | None = None) -> _PooledConnection:
        """Return a connection, waiting at most *timeout* seconds when full."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._closed:
                    raise ConnectionError("redisc: get on closed pool")
                self._prune()
                while self._idle:
                    conn, used = self._idle.pop()
                    if self.test_on_borrow is not None:
                        try:
                            self.test_on_borrow(conn, used)
                        except (OSError, RedisError):
                            conn.close()
                            self._active -= 1
                            continue
                    return _PooledConnection(self, conn)
                if self.max_active <= 0 or self._active < self.max_active:
                    self._active += 1
                    break
                if not self.wait:
                    raise ConnectionError("redisc: connection pool exhausted")
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise TimeoutError("redisc: timed out waiting for a pooled connection")
                self._cond.wait(remaining)
        try:
            conn = self._dial()
        except BaseException:
            with self._cond:
                self._active -= 1
                self._cond.notify()
            raise
        return _PooledConnection(self, conn)

    def _put(self, conn: Connection) -> None:
        with self._cond:
            if not self._closed and conn.err() is None and len(self._idle) < self.max_idle:
                self._idle.append((conn, time.monotonic()))
            else:
                conn.close()
                self._active -= 1
            self._cond.notify()

    def stats(self) -> PoolStats:
        """Return the pool's current counters."""
        with self._cond:
            return PoolStats(active_count=self._active, idle_count=len(self._idle))

    def close(self) -> None:
        """Close idle connections and refuse further gets."""
        with self._cond:
            self._closed = True
            while self._idle:
                conn, _ = self._idle.pop()
                conn.close()
                self._active -= 1
            self._cond.notify_all()