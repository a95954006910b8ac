# redisc

A Redis Cluster client for Python with no runtime dependencies. It keeps a
map of the cluster's 16384 hash slots to master and replica nodes, and
routes each command to the node that serves the slot of its key.

## Installation

```
pip install redisc
```

## Modules

- `redisc.slots`: `slot(key)` returns the hash slot of a key, hashing only
  the `{hash tag}` when one is present; `split_by_slot(keys)` groups keys by
  slot, with groups ordered by ascending slot. `HASH_SLOTS` is 16384.
- `redisc.crc16`: `crc16(data)`, the CRC-16/XMODEM checksum used for slots.
- `redisc.connection`: a plain single-server client. `dial(address, options)`
  opens a `Connection` (`do`, `do_with_timeout`, `send`, `flush`, `receive`,
  `receive_with_timeout`, `err`, `close`). `DialOptions` holds connect, read
  and write timeouts in seconds. `Pool` hands out pooled connections with
  `get(timeout)` and reports `PoolStats` with `stats()`. Error replies are
  raised as `RedisError`; bulk strings come back as `bytes`.
- `redisc.cluster`: `Cluster`, `BgErrorSource`, `split_by_node`,
  `split_by_node_with_slot`.
- `redisc.conn`: `Conn`, the cluster connection, and the helpers
  `bind_conn`, `bind_conn_kind`, `read_only_conn`, `is_try_again`,
  `is_cross_slot`, `parse_redir`, `cmd_key`, `cmd_slot`, with the errors
  `ClusterError`, `NoBindMethodError` and `RedirError`.
- `redisc.retry_conn`: `retry_conn(conn, max_attempts, try_again_delay)` and
  `RetryConn`.
- `redisc.pipeline`: `PipeConn`, returned by `Cluster.get_pipeline`.
- `redisc.options`: `enable_transaction()` and `enable_read_only()`, the
  options for `Cluster.get_pipeline`.
- `redisc.resp`: a RESP encoder (`encode`, `encode_to_bytes`) and decoder
  (`decode`, `decode_request`).
- `redisc.redistest.server`: helpers that start `redis-server` processes for
  tests (`start_server`, `start_cluster`, `start_cluster_with_replicas`,
  `new_pool`, `get_free_port`, `wait_for_port`). They need `redis-server` on
  the `PATH` and raise `FileNotFoundError` without it.

## Hash slots

```python
from redisc.slots import slot, split_by_slot

slot("a")                      # 15495
slot("{a}bc")                  # 15495, only the hash tag is hashed
split_by_slot(["a", "b"])      # [["b"], ["a"]], ordered by slot
```

## Using a cluster

```python
from redisc.cluster import Cluster
from redisc.connection import DialOptions, Pool, dial
from redisc.retry_conn import retry_conn

def create_pool(addr, options):
    return Pool(lambda: dial(addr, options), max_idle=5, max_active=10)

cluster = Cluster(
    ["127.0.0.1:7000", "127.0.0.1:7001"],
    dial_options=DialOptions(connect_timeout=2.0),
    create_pool=create_pool,
)
cluster.refresh()              # load the slot mapping with CLUSTER SLOTS

conn = cluster.get()
conn.do("SET", "some-key", 1)
conn.close()

rc = retry_conn(cluster.get(), 3, 0.1)
rc.do("GET", "some-key")       # follows MOVED/ASK, retries TRYAGAIN
rc.close()

cluster.close()
```

- `get()` returns a `Conn` from the node pools when `create_pool` is set;
  `dial()` always dials directly. A `Conn` binds to a node on the first
  `do`, `send` or `receive` (using the slot of the first argument, or the
  third for `EVAL`/`EVALSHA`), or explicitly with `bind(*keys)`; keys of
  different slots, or binding twice, raise `ClusterError`.
- `read_only()` before binding makes the connection use a replica of the
  slot and sends `READONLY`; on close a read-only connection sends
  `READWRITE` before release.
- A `MOVED` reply updates the mapping for that slot and starts a background
  refresh when none is running. Errors of background refreshes go to the
  `bg_error` callback; `layout_refresh(old, new)` is called after each
  successful refresh.
- `each_node(replicas, fn)` calls `fn(addr, conn)` for every known master,
  or every known replica, and raises `ClusterError` when none is known.
- `stats()` returns the `PoolStats` of each node pool, even after `close()`.
- Closing a cluster or a connection twice raises the closed error.
- `Cluster`, `Conn`, `RetryConn`, `PipeConn` and `Connection` can be used as
  context managers.

## Pipelines

```python
from redisc.options import enable_transaction

pipe = cluster.get_pipeline()
pipe.send("INCR", "foo")
pipe.send("INCR", "bar")
pipe.do("")                    # [1, 1]: every reply, in order
```

Commands are split into one batch per node and the batches run
concurrently; commands that get a `MOVED` or `ASK` reply are sent once more
to the node they were redirected to. With `enable_transaction()` each batch
runs inside `MULTI`/`EXEC`, and keys from more than one slot raise
`ClusterError`. Every queued command must carry a key.

## RESP

```python
import io
from redisc.resp.encode import encode_to_bytes, SimpleString
from redisc.resp.decode import decode

encode_to_bytes(SimpleString("OK"))      # b"+OK\r\n"
decode(io.BytesIO(b":-123\r\n"))         # -123
```

## What the package does not do

The package is a library only and installs no command. It has no
long-running tool that exercises a live cluster during failovers or
resharding; such checks have to be written against the `Cluster` API.

## Tests

```
pip install "redisc[test]"
pytest
```