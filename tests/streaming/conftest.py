import pytest

from provkit.streaming.base import LineReader


async def _iter_bytes(parts):
    for part in parts:
        yield part


@pytest.fixture
def reader():
    """Build a LineReader over the given byte chunks."""

    def make(*parts: bytes) -> LineReader:
        return LineReader(_iter_bytes(parts))

    return make
