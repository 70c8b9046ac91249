import asyncio

from modellkoppler.chat_handlers import stream_with_keepalive
from modellkoppler.sse import SSE_DONE, sse_comment, sse_data

KEEPALIVE = sse_comment("keepalive")


class _SlowSource:
    """Async byte-frame iterator that sleeps before every frame after the first `immediate` ones."""

    def __init__(self, frames: list[bytes], *, delay: float, immediate: int = 0) -> None:
        self._frames = list(frames)
        self._delay = delay
        self._immediate = immediate
        self.served = 0
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        if not self._frames:
            raise StopAsyncIteration
        if self.served >= self._immediate:
            await asyncio.sleep(self._delay)
        self.served += 1
        return self._frames.pop(0)

    async def aclose(self) -> None:
        self.closed = True


class _FakeRequest:
    def __init__(self, disconnected: bool) -> None:
        self.disconnected = disconnected
        self.checks = 0

    async def is_disconnected(self) -> bool:
        self.checks += 1
        return self.disconnected


def _collect(stream) -> list[bytes]:
    async def run() -> list[bytes]:
        return [frame async for frame in stream]

    return asyncio.run(run())


def test_client_disconnect_stops_forwarding_and_closes_source() -> None:
    source = _SlowSource([sse_data({"content": "a"}), sse_data({"content": "b"}), SSE_DONE], delay=5, immediate=1)
    request = _FakeRequest(disconnected=True)

    frames = _collect(stream_with_keepalive(source, keepalive_seconds=0, request=request))

    assert frames == [sse_data({"content": "a"})]
    assert request.checks >= 1
    assert source.closed is True


def test_keepalive_comments_are_sent_while_upstream_is_silent() -> None:
    source = _SlowSource([sse_data({"content": "a"}), SSE_DONE], delay=0.2, immediate=0)

    frames = _collect(stream_with_keepalive(source, keepalive_seconds=0.05))

    assert frames.count(KEEPALIVE) >= 1
    assert [frame for frame in frames if frame != KEEPALIVE] == [sse_data({"content": "a"}), SSE_DONE]
    assert source.closed is True


def test_no_keepalive_comments_when_interval_is_zero() -> None:
    source = _SlowSource([sse_data({"content": "a"}), SSE_DONE], delay=0.01)

    frames = _collect(stream_with_keepalive(source, keepalive_seconds=0, request=_FakeRequest(disconnected=False)))

    assert frames == [sse_data({"content": "a"}), SSE_DONE]
    assert source.closed is True
