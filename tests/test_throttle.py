import pytest

from model_sync.models.throttle import BandwidthLimiter, format_rate


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.mark.asyncio
async def test_limiter_waits_out_spent_windows():
    clock = FakeClock()
    limiter = BandwidthLimiter(rate=100, clock=clock, sleep=clock.sleep)

    await limiter.consume(250)

    assert clock.sleeps == [1.0, 1.0]
    assert limiter.total_wait == 2.0
    assert limiter.total_bytes == 250


@pytest.mark.asyncio
async def test_unlimited_rate_never_sleeps():
    clock = FakeClock()
    limiter = BandwidthLimiter(rate=None, clock=clock, sleep=clock.sleep)

    await limiter.consume(10 ** 9)

    assert clock.sleeps == []
    assert not limiter.enabled


@pytest.mark.asyncio
async def test_throttle_keeps_chunks_intact():
    clock = FakeClock()
    limiter = BandwidthLimiter(rate=10, clock=clock, sleep=clock.sleep)

    async def chunks():
        for chunk in (b"abcdef", b"ghijkl", b"mnop"):
            yield chunk

    received = [chunk async for chunk in limiter.throttle(chunks())]

    assert received == [b"abcdef", b"ghijkl", b"mnop"]
    assert clock.now == 1.0


def test_rate_must_be_positive():
    with pytest.raises(ValueError):
        BandwidthLimiter(rate=0)


def test_format_rate():
    assert format_rate(None) == "unlimited"
    assert format_rate(10) == "10 B/s"
    assert format_rate(2 * 1024 ** 2) == "2.0 MB/s"
