import pytest

from spindle_service.core.interfaces import Processor, TelemetrySink
from spindle_service.core.types import StreamEnd, TextChunk


class RecordingTelemetry(TelemetrySink):
    def __init__(self):
        self.events = []

    def report(self, event, properties):
        self.events.append((str(event), dict(properties)))

    def names(self):
        return [name for name, _ in self.events]


class RecordingProcessor(Processor):
    def __init__(self):
        self.calls = []
        self.flags = []

    def on_start(self, tool_name, attrs):
        self.calls.append(("start", tool_name))

    async def on_end(self, tool_name, params, tool_call_id, **flags):
        self.calls.append(("end", tool_name, params))
        self.flags.append(flags)


class ChunkStream:
    """Async iterator over fixed chunks that remembers whether it was closed."""

    def __init__(self, items):
        self.items = list(items)
        self.closed = False
        self.consumed = 0

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.closed or self.consumed >= len(self.items):
            raise StopAsyncIteration
        item = self.items[self.consumed]
        self.consumed += 1
        return item

    async def aclose(self):
        self.closed = True


@pytest.fixture
def telemetry():
    return RecordingTelemetry()


@pytest.fixture
def recorder():
    return RecordingProcessor()


@pytest.fixture
def make_stream():
    """make_stream("a", "b") -> ChunkStream of TextChunks ending with StreamEnd("msg-1")."""
    def _make(*items, message_id="msg-1", end=True):
        chunks = [TextChunk(i) if isinstance(i, str) else i for i in items]
        if end:
            chunks.append(StreamEnd(message_id))
        return ChunkStream(chunks)
    return _make
