"""Per-thread metric collection drained into a global sink on a fixed cadence."""

from __future__ import annotations

import contextlib
import contextvars
import logging
import threading
import time
from typing import Callable, Iterator, Optional

from .data import AGGREGATE_LOGGER_NAME, Metric, MetricKey, Metrics, MetricType

AGGREGATION_PERIOD = 5.0
"""Seconds between drains of each thread's local metrics into the global sink."""

REQUEST_LATENCY_METRIC = "fuse.op_latency_us"

_global_lock = threading.Lock()
_global_sink: Optional["MetricsSink"] = None
_local = threading.local()
_in_request: contextvars.ContextVar[bool] = contextvars.ContextVar("_in_request", default=False)


class _ThreadMetricsSink:
    """Metrics collected by one thread, guarded by a lock that is almost never contended."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._metrics = Metrics()

    def update(self, kind: MetricType, key: MetricKey, action: Callable[[Metric], None]) -> None:
        with self._lock:
            action(self._metrics.get_or_create(kind, key))

    def take(self) -> Metrics:
        with self._lock:
            taken, self._metrics = self._metrics, Metrics()
        return taken


class MetricsSink:
    """A global sink that keeps the thread-local sinks it aggregates from."""

    def __init__(self) -> None:
        self._threads_lock = threading.Lock()
        self._threads: list[_ThreadMetricsSink] = []

    @classmethod
    def init(cls, period: float = AGGREGATION_PERIOD) -> "MetricsSinkHandle":
        """Create and install the global sink and start publishing every ``period`` seconds.

        Raises RuntimeError if a sink has already been installed.
        """
        sink = cls()
        sink.install()
        stop = threading.Event()

        def publish_loop() -> None:
            while not stop.wait(period):
                sink.aggregate_and_publish()
            # Drain once more so metrics produced before shutdown are not lost.
            sink.aggregate_and_publish()

        thread = threading.Thread(target=publish_loop, name="metrics-publisher", daemon=True)
        thread.start()
        return MetricsSinkHandle(stop, thread)

    def install(self) -> None:
        """Make this the global sink. Raises RuntimeError if one is already installed."""
        global _global_sink
        with _global_lock:
            if _global_sink is not None:
                raise RuntimeError("a global metrics sink is already installed")
            _global_sink = self

    def _register(self, thread_sink: _ThreadMetricsSink) -> None:
        with self._threads_lock:
            self._threads.append(thread_sink)

    def aggregate(self) -> Metrics:
        """Drain every thread's metrics and combine them into one map."""
        combined = Metrics()
        with self._threads_lock:
            threads = list(self._threads)
        for thread_sink in threads:
            combined.aggregate(thread_sink.take())
        return combined

    def aggregate_and_publish(self) -> None:
        """Drain all threads and log the combined metrics."""
        self.aggregate().emit(logging.getLogger(AGGREGATE_LOGGER_NAME))


class MetricsSinkHandle:
    """Handle that stops the publishing thread. It does not uninstall the sink."""

    def __init__(self, stop: threading.Event, thread: threading.Thread) -> None:
        self._stop = stop
        self._thread: Optional[threading.Thread] = thread

    def shutdown(self) -> None:
        """Stop publishing after one final drain; safe to call more than once."""
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join()

    def __enter__(self) -> "MetricsSinkHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()


def _reset_global_sink() -> None:
    global _global_sink
    with _global_lock:
        _global_sink = None


def _thread_sink() -> _ThreadMetricsSink:
    sink = _global_sink
    if sink is None:
        raise RuntimeError("global metrics sink must be installed first")
    entry = getattr(_local, "entry", None)
    if entry is None or entry[0] is not sink:
        local_sink = _ThreadMetricsSink()
        sink._register(local_sink)
        entry = (sink, local_sink)
        _local.entry = entry
    return entry[1]


def _key(name: str, labels: dict) -> MetricKey:
    return MetricKey(name, tuple((label, str(value)) for label, value in labels.items()))


def counter(name: str, value: int, **kwargs) -> None:
    """Add ``value`` to a counter; keyword arguments are labels."""
    _thread_sink().update(MetricType.COUNTER, _key(name, kwargs), lambda m: m.increment(value))


def gauge(name: str, value: float, **kwargs) -> None:
    """Set a gauge to ``value``; keyword arguments are labels."""
    _thread_sink().update(MetricType.GAUGE, _key(name, kwargs), lambda m: m.set(float(value)))


def histogram(name: str, value: float, **kwargs) -> None:
    """Record ``value`` in a histogram; keyword arguments are labels."""
    _thread_sink().update(
        MetricType.HISTOGRAM, _key(name, kwargs), lambda m: m.increment(int(value))
    )


@contextlib.contextmanager
def request_span(op: str) -> Iterator[None]:
    """Time a request and record its latency in microseconds, labelled by ``op``.

    Only the outermost span of a request is recorded; nested spans are not.
    """
    if _in_request.get():
        yield
        return
    token = _in_request.set(True)
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_us = (time.perf_counter() - start) * 1_000_000
        _in_request.reset(token)
        histogram(REQUEST_LATENCY_METRIC, elapsed_us, op=op)