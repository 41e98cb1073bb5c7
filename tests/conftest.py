"""
Shared fixtures: sample byte signatures, settings, and an httpx client
backed by a MockTransport so no test touches the network.
"""

import httpx
import pytest

from media_quiz.config import Settings
from media_quiz.services import retry
from media_quiz.services.retry import RetryPolicy

PAD = b"\x00" * 32

MP3_ID3 = b"ID3\x04\x00\x00\x00\x00\x00\x21" + PAD
MP3_FRAME = b"\xff\xfb\x90\x64" + PAD
WEBM = b"\x1a\x45\xdf\xa3\x9f\x42\x86\x81" + PAD
M4A = b"\x00\x00\x00\x20ftypM4A \x00\x00\x00\x00" + PAD
WAV = b"RIFF\x24\x08\x00\x00WAVEfmt " + PAD
PDF = b"%PDF-1.7\n%\xe2\xe3\xcf\xd3\n" + PAD
HTML = b"<!doctype html><html><body>Not found</body></html>"
HLS = b"#EXTM3U\n#EXT-X-VERSION:3\n#EXTINF:10,\nseg0.ts\n"
GARBAGE = b"\x13\x37" * 20


def fast_policies(tries: int = 3) -> dict:
    return {
        name: RetryPolicy(tries=tries, base_delay=0.01)
        for name in ("DIRECT", "DOCUMENT", "FALLBACK", "VIDEO", "TRANSCRIBE", "QUIZ")
    }


@pytest.fixture
def settings():
    return Settings(retry=fast_policies())


@pytest.fixture(autouse=True)
def sleeps(monkeypatch):
    """Record backoff sleeps instead of actually sleeping."""
    calls = []

    async def fake_sleep(delay):
        calls.append(delay)

    monkeypatch.setattr(retry, "_sleep", fake_sleep)
    return calls


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))
