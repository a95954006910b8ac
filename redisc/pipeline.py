"""Pipelined commands spread over the nodes of a cluster."""

from __future__ import annotations

import threading
from collections import defaultdict, deque
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from .conn import ClusterError, RedirError, cmd_key, parse_redir
from .connection import RedisError
from .slots import slot as key_slot, split_by_slot


class _PipelineCluster(Protocol):
    def _get_conn(self, slot: int, force_dial: bool, read_only: bool) -> tuple[Any, str]: ...

    def _needs_refresh(self, redir: RedirError | None) -> None: ...

    def _slot_nodes(self, slot: int) -> list[str]: ...


@dataclass
class _Command:
    command: str
    args: tuple[Any, ...]
    reply: Any = None
    err: BaseException | None = None
    redir: RedirError | None = None


@dataclass
class _Batch:
    """Commands sent as one real pipeline to a single node."""

    indexes: list[int]
    conn: Any = None


@dataclass
class _Outcome:
    reply: Any = None
    err: BaseException | None = field(default=None)


class PipeConn:
    """A pipeline over a cluster.

    Queued commands are split into one batch per node on :meth:`flush`; the
    batches run concurrently, and commands that get a MOVED or ASK reply are
    sent once more to the node they were redirected to. Replies are then
    read back in order with :meth:`receive`.
    """

    def __init__(
        self,
        cluster: _PipelineCluster,
        *,
        transaction: bool = False,
        read_only: bool = False,
        force_dial: bool = False,
        err: Exception | None = None,
    ) -> None:
        self._cluster = cluster
        self._transaction = transaction
        self._read_only = read_only
        self._force_dial = force_dial
        self._err = err
        self._lock = threading.Lock()
        self._cmds: list[_Command] = []
        self._sent = 0
        self._received = 0

    def __enter__(self) -> "PipeConn":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def transaction(self) -> bool:
        return self._transaction

    @property
    def read_only(self) -> bool:
        return self._read_only

    def send(self, command: str, *args: Any) -> None:
        """Queue *command*; it must carry a key."""
        try:
            cmd_key(command, args)
        except ValueError:
            raise ClusterError("key should not be empty") from None
        with self._lock:
            self._cmds.append(_Command(command, args))

    def flush(self) -> None:
        """Send the queued commands and collect their replies."""
        with self._lock:
            self._run_batches(self._build_batches())
            self._run_batches(self._redirect_batches())
            self._sent = len(self._cmds)

    def receive(self) -> Any:
        """Return the next reply, raising it if the command failed."""
        with self._lock:
            outcome = self._next_outcome()
        if outcome.err is not None:
            raise outcome.err
        return outcome.reply

    def do(self, command: str, *args: Any) -> Any:
        """Queue *command* if given, flush, and read back every reply.

        With a command, its reply is returned; with the blank command the
        list of all replies is. The first failed command's error is raised.
        """
        if command:
            self.send(command, *args)
        self.flush()
        with self._lock:
            outcomes = []
            while self._received < self._sent:
                outcomes.append(self._next_outcome())
        for outcome in outcomes:
            if outcome.err is not None:
                raise outcome.err
        if not command:
            return [outcome.reply for outcome in outcomes]
        return outcomes[-1].reply if outcomes else None

    def err(self) -> Exception | None:
        """Return the error the pipeline was created with, or None."""
        with self._lock:
            return self._err

    def close(self) -> None:
        """Release the pipeline; batch connections are closed after each flush."""

    def _next_outcome(self) -> _Outcome:
        if self._sent <= self._received:
            raise ClusterError("no more reply")
        cmd = self._cmds[self._received]
        self._received += 1
        if self._received == self._sent:
            # keep commands queued after the last flush
            self._cmds = self._cmds[self._sent :]
            self._sent = self._received = 0
        return _Outcome(cmd.reply, cmd.err)

    def _build_batches(self) -> list[_Batch]:
        pending = self._cmds[self._sent :]
        if not pending:
            return []
        keys = [cmd_key(cmd.command, cmd.args) for cmd in pending]
        groups = split_by_slot(keys)
        if self._transaction and len(groups) > 1:
            raise ClusterError("keys must be one slot in transaction mode")

        positions: dict[str, deque[int]] = defaultdict(deque)
        for offset, key in enumerate(keys):
            positions[key].append(self._sent + offset)
        return [
            _Batch([positions[key].popleft() for key in group])
            for group in self._group_by_node(groups)
        ]

    def _group_by_node(self, groups: Sequence[list[str]]) -> list[list[str]]:
        unmapped: list[list[str]] = []
        by_node: dict[str, list[str]] = {}
        for group in groups:
            nodes = self._cluster._slot_nodes(key_slot(group[0]))
            if nodes:
                by_node.setdefault(nodes[0], []).extend(group)
            else:
                unmapped.append(group)
        return unmapped + list(by_node.values())

    def _redirect_batches(self) -> list[_Batch]:
        by_addr: dict[str, list[int]] = {}
        for index in range(self._sent, len(self._cmds)):
            redir = self._cmds[index].redir
            if redir is not None:
                by_addr.setdefault(redir.addr, []).append(index)
        return [_Batch(indexes) for indexes in by_addr.values()]

    def _run_batches(self, batches: list[_Batch]) -> None:
        if len(batches) == 1:
            self._run_and_release(batches[0])
            return
        threads = [
            threading.Thread(target=self._run_and_release, args=(batch,), daemon=True)
            for batch in batches
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    def _run_and_release(self, batch: _Batch) -> None:
        try:
            self._run_batch(batch)
        finally:
            if batch.conn is not None:
                try:
                    batch.conn.close()
                except Exception:  # noqa: BLE001 - nothing to report it to
                    pass

    def _run_batch(self, batch: _Batch) -> None:
        cmds = [self._cmds[index] for index in batch.indexes]
        if not cmds:
            return
        for cmd in cmds:
            cmd.reply = cmd.err = cmd.redir = None
        try:
            replies = self._execute(batch, cmds)
        except Exception as exc:  # noqa: BLE001 - stored as each command's error
            for cmd in cmds:
                cmd.err = exc
            return
        for cmd, reply in zip(cmds, replies):
            if isinstance(reply, BaseException):
                cmd.err = reply
                redir = parse_redir(reply)
                if redir is not None:
                    cmd.redir = redir
                    if redir.type == "MOVED":
                        self._cluster._needs_refresh(redir)
            else:
                cmd.reply = reply

    def _execute(self, batch: _Batch, cmds: list[_Command]) -> list[Any]:
        if batch.conn is None:
            first = cmds[0]
            try:
                key = cmd_key(first.command, first.args)
            except ValueError:
                key = ""
            batch.conn, _ = self._cluster._get_conn(
                key_slot(key), self._force_dial, self._read_only
            )
        conn = batch.conn

        if self._transaction:
            conn.send("MULTI")
        for cmd in cmds:
            conn.send(cmd.command, *cmd.args)

        if self._transaction:
            replies = conn.do("EXEC")
            if not isinstance(replies, list):
                raise ClusterError("redisc: transaction aborted")
        else:
            conn.flush()
            replies = []
            for _ in cmds:
                try:
                    replies.append(conn.receive())
                except (RedisError, OSError, ValueError) as exc:
                    replies.append(exc)

        if len(replies) != len(cmds):
            raise ClusterError("unexpected reply")
        return replies