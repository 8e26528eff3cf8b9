import asyncio

import pytest

from s3mount.prefetch.part import Part
from s3mount.prefetch.part_queue import PartQueue, PrefetchReadError
from s3mount.prefetch.request import PrefetcherConfig, RequestTask, spawn_request


def ramp(start, length):
    return bytes((start + i) % 256 for i in range(length))


class FakeClient:
    def __init__(self, objects, part_size, fail_after=None):
        self.objects = objects
        self.part_size = part_size
        self.fail_after = fail_after
        self.calls = []

    def get_object(self, bucket, key, byte_range):
        self.calls.append((bucket, key, byte_range))
        return self._stream(key, byte_range)

    async def _stream(self, key, byte_range):
        data = self.objects[key]
        start, end = byte_range
        sent = 0
        for offset in range(start, end, self.part_size):
            if self.fail_after is not None and sent >= self.fail_after:
                raise OSError("connection reset")
            chunk_end = min(offset + self.part_size, end)
            yield offset, data[offset:chunk_end]
            sent += 1


class AwaitingClient(FakeClient):
    async def get_object(self, bucket, key, byte_range):
        self.calls.append((bucket, key, byte_range))
        return self._stream(key, byte_range)


class RefusingClient:
    async def get_object(self, bucket, key, byte_range):
        raise KeyError(key)


async def drain(request, key, start, read_size):
    out = bytearray()
    offset = start
    while request.remaining > 0:
        part = await request.read(read_size)
        out += part.into_bytes(key, offset)
        offset += len(part)
    return bytes(out)


def test_config_defaults():
    config = PrefetcherConfig()
    assert config.first_request_size == 256 * 1024
    assert config.max_request_size == 2 * 1024 * 1024 * 1024
    assert config.sequential_prefetch_multiplier == 8
    assert config.read_timeout == 60.0


@pytest.mark.asyncio
async def test_reads_whole_range():
    data = ramp(0xAA, 5000)
    client = FakeClient({"hello": data}, part_size=700)
    request = spawn_request(client, "test-bucket", "hello", 1000, 4321)
    assert request.total_size == 3321
    body = await drain(request, "hello", 1000, 10_000)
    assert body == data[1000:4321]
    assert request.remaining == 0
    assert client.calls == [("test-bucket", "hello", (1000, 4321))]


@pytest.mark.asyncio
async def test_small_reads_split_parts():
    data = ramp(0xAA, 2048)
    client = AwaitingClient({"hello": data}, part_size=1024)
    request = spawn_request(client, "test-bucket", "hello", 0, 2048)
    first = await request.read(100)
    assert len(first) == 100
    assert first.into_bytes("hello", 0) == data[:100]
    assert request.remaining == 2048 - 100
    rest = await drain(request, "hello", 100, 37)
    assert rest == data[100:]


@pytest.mark.asyncio
async def test_request_failure_reported():
    request = spawn_request(RefusingClient(), "test-bucket", "missing", 0, 10)
    with pytest.raises(PrefetchReadError) as info:
        await request.read(10)
    assert isinstance(info.value.cause, KeyError)
    assert request.remaining == 10


@pytest.mark.asyncio
async def test_failure_mid_stream_after_good_parts():
    data = ramp(0xAA, 3000)
    client = FakeClient({"hello": data}, part_size=1000, fail_after=1)
    request = spawn_request(client, "test-bucket", "hello", 0, 3000)
    part = await request.read(1000)
    assert part.into_bytes("hello", 0) == data[:1000]
    with pytest.raises(PrefetchReadError) as info:
        await request.read(1000)
    assert isinstance(info.value.cause, OSError)


@pytest.mark.asyncio
@pytest.mark.parametrize("start,end", [(5, 5), (10, 3), (-1, 4)])
async def test_invalid_range_rejected(start, end):
    client = FakeClient({"hello": b"abc"}, part_size=1)
    with pytest.raises(ValueError):
        spawn_request(client, "test-bucket", "hello", start, end)
    assert client.calls == []


@pytest.mark.asyncio
async def test_request_task_counts_down_manual_parts():
    queue = PartQueue()
    task = RequestTask(6, queue)
    queue.push(Part("k", 0, b"abcdef"))
    part = await task.read(4)
    assert part.into_bytes("k", 0) == b"abcd"
    assert task.remaining == 2
    tail = await task.read(4)
    assert tail.into_bytes("k", 4) == b"ef"
    assert task.remaining == 0


@pytest.mark.asyncio
async def test_cancel_stops_background_request():
    class SlowClient:
        async def get_object(self, bucket, key, byte_range):
            await asyncio.sleep(3600)

    request = spawn_request(SlowClient(), "test-bucket", "hello", 0, 10)
    await asyncio.sleep(0)
    request.cancel()
    await asyncio.sleep(0)
    assert request._task.cancelled()