# s3mount

Building blocks for presenting an S3 bucket as a file system: a prefetcher
for object reads, a thread-local metrics system, and the `mount-s3`
command's option parsing and process handling.

The package has no dependencies outside the standard library.

- **`s3mount.prefetch`**: reads objects through ranged GET requests that
  grow in size while the reader stays sequential.
- **`s3mount.metrics`**: counters, gauges and latency histograms recorded
  per thread and logged by a global sink on a fixed period.
- **`s3mount.cli`**: the `mount-s3` command.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## What this package does not do

The package contains no FUSE file system and no S3 client. The `mount-s3`
command parses and checks its options, sets up logging and metrics, and
then stops with an error, because there is no file system backend to
mount:

```
Error: Failed to create FUSE session: no FUSE filesystem backend is available to mount bucket my-bucket
```

In the background mode (the default), the command forks. The child
process reports failure through a pipe, and the parent process then
reports `Failed to create mount process`. In both cases the exit status
is 1.

The prefetcher works with any object you supply that has a matching
`get_object` method. The package itself never talks to S3.

## The `mount-s3` command

```
mount-s3 [OPTIONS] BUCKET_NAME MOUNT_POINT
```

The mount point must be an existing directory. If it is not, the command
prints `Error: Mount point ... does not exist or it is not a directory` and
exits with status 1.

| Option | Meaning |
| --- | --- |
| `-l`, `--log-directory DIR` | Directory for log files. The default is `$HOME/.mountpoint-s3`. |
| `--prefix PREFIX` | Prefix inside the bucket to mount. |
| `--region REGION` | AWS region of the bucket. The default is `us-east-1`. |
| `--endpoint-url URL` | Endpoint override. It must be an `http` or `https` URL. |
| `--virtual-addressing` / `--path-addressing` | Force an addressing style. The two options cannot be used together. |
| `--auto-unmount`, `--allow-root`, `--allow-other` | Extra mount options. |
| `--throughput-target-gbps N` | Desired throughput in Gbps (1 or more). |
| `--thread-count N` | Number of FUSE daemon threads (1 or more). The default is 1. |
| `--part-size N` | Part size for multi-part GET and PUT (1 or more). |
| `--uid N`, `--gid N` | Owner of files and directories (1 or more). The default is the current user and group. |
| `--dir-mode MODE`, `--file-mode MODE` | Permission bits in octal. The defaults are `0755` and `0644`. |
| `-f`, `--foreground` | Run in the foreground instead of forking. |
| `-V`, `--version` | Print `mountpoint-s3 0.1.0` and exit. |

A mode must be a valid octal number no larger than `777`:

- `800` is rejected with "must be a valid octal number".
- `7755` is rejected with "only user/group/other permissions are supported".

Invalid options produce a usage error from `argparse`, with exit status 2.

### Logging

Log files are named `mountpoint_s3_YYYYmmddHHMMSS.log`, using the time in
UTC. The environment variable `S3MOUNT_LOG` sets the log level. It takes
one of these values:

- `trace`
- `debug`
- `info`
- `warn` or `warning`
- `error`
- `off`

Without the variable, the log file records errors only. In the foreground,
messages at `info` and above are also written to standard output. Setting
the variable to `off` turns logging off.

### From Python

- `parse_args(argv)` returns a `CliArgs` dataclass. Its
  `addressing_style()` method returns an `AddressingStyle`.
- `parse_perm_bits(text)` returns the mode as an integer, or raises
  `ValueError`.
- `validate_mount_point(path)` returns a `Path`, or raises `CliError`.
- `build_parser()` returns the underlying `argparse.ArgumentParser`.
- `main(argv=None)` runs the command and returns its exit status.

## Prefetching

`Prefetcher` wraps an object client. The client needs a method
`get_object(bucket, key, byte_range)`, where `byte_range` is a half-open
`(start, end)` tuple. The method returns an async iterator of
`(offset, body)` chunks, or an awaitable that resolves to one. The
`ObjectClient` protocol in `s3mount.prefetch.request` describes this
method.

```python
from s3mount.prefetch.prefetcher import Prefetcher
from s3mount.prefetch.request import PrefetcherConfig

prefetcher = Prefetcher(client, PrefetcherConfig())
handle = prefetcher.get("my-bucket", "path/to/object", size)
data = await handle.read(0, 1024 * 1024)
handle.close()
```

`read(offset, length)` must be awaited inside a running event loop. It
returns exactly `length` bytes, except at the end of the object, where it
returns what is left. That may be `b""`.

Requests run as background tasks:

- While reads stay sequential, each new request is the previous size
  times `sequential_prefetch_multiplier`, capped at `max_request_size`.
- The next request starts once the current one is more than half
  consumed.
- A read at any other offset cancels the inflight requests and starts
  again at `first_request_size`. If a metrics sink is installed, such a
  read also increments the `prefetch.out_of_order` counter.
- If the client fails, `read` raises
  `s3mount.prefetch.part_queue.PrefetchReadError`. The exception's
  `cause` attribute holds the original error.

`PrefetcherConfig` defaults:

| Field | Default |
| --- | --- |
| `first_request_size` | 256 KiB |
| `max_request_size` | 2 GiB |
| `sequential_prefetch_multiplier` | 8 |
| `read_timeout` | 60.0 seconds |

Reads do not apply `read_timeout`.

The lower-level pieces are also public:

- `PartQueue`, a queue of parts whose head can be read in pieces.
- `Part`, a slice of an object that only gives up its bytes for the
  right key and offset. Otherwise it raises `KeyMismatchError` or
  `OffsetMismatchError`.
- `spawn_request`.
- `RequestTask`.

## Metrics

Install the global sink before recording anything. Leaving the `with`
block stops the publishing thread, after one final drain:

```python
from s3mount.metrics.sink import MetricsSink, counter, gauge, histogram, request_span

with MetricsSink.init(5.0):
    counter("prefetch.out_of_order", 1)
    gauge("queue_depth", 3.0, type="in_queue")
    histogram("latency_us", 250.0, op="read")
    with request_span("read"):
        ...
```

Keyword arguments become the metric's labels.

Each thread records into its own local sink. Every period, the global sink
drains the local sinks and logs one line per metric, sorted by key, to the
`s3mount.aggregate_metrics` logger at INFO level. The lines look like
these:

```
prefetch.out_of_order: 3
queue_depth[type=in_queue]: 3 (n=1)
```

A histogram line shows:

- `n`, the number of recorded values;
- `min`;
- `p10`;
- `p50`;
- `avg`;
- `p90`;
- `p99`;
- `p99.9`;
- `max`.

Histograms keep two significant figures and saturate at 60,000,000.
`request_span(op)` records the outermost span's duration in microseconds
as `fuse.op_latency_us` with label `op`.

Some calls raise `RuntimeError`:

- recording a metric before a sink is installed;
- installing a second sink.

The data types are `Metrics`, `Metric`, `MetricKey`, `MetricType` and
`Histogram`, all in `s3mount.metrics.data`. Use them to aggregate or
format metrics yourself.