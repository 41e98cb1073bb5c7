"""
Tests for the streaming-video fallback chain.
"""

import dataclasses

import httpx
import pytest

from conftest import GARBAGE, HTML, MP3_ID3, WEBM, mock_client
from media_quiz.errors import (
    ConfigurationError,
    PayloadTooLarge,
    PermanentUpstreamError,
    RateLimitedError,
    TransientUpstreamError,
    UnsupportedContent,
)
from media_quiz.services.fallback import DESCRIPTOR_MAX_BYTES, ChainState, FallbackChain
from media_quiz.services.fetcher import ERROR_SNIPPET_BYTES
from media_quiz.services.media import MediaBuffer, MediaKind, SourceRequest

VIDEO_URL = "https://youtu.be/dQw4w9WgXcQ"


class FakePrimary:
    def __init__(self, error=None, buffer=None):
        self.error = error
        self.buffer = buffer
        self.calls = 0

    async def resolve(self, request):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.buffer


@pytest.fixture
def fallback_settings(settings):
    return dataclasses.replace(settings, video_fallback_url="https://resolver.test/api/",
                               video_fallback_token="s3cret")


def fallback_service(download_body=MP3_ID3, descriptor=None, cdn_status=200):
    calls = []

    def handler(request):
        calls.append(request)
        if request.url.host == "resolver.test":
            return httpx.Response(200, json=descriptor if descriptor is not None
                                  else {"download_url": "https://cdn.test/audio.mp3"})
        return httpx.Response(cdn_status, content=download_body if cdn_status == 200 else b"")

    return handler, calls


class TestFallbackChain:

    @pytest.mark.asyncio
    async def test_primary_success_stays_primary(self, fallback_settings):
        buffer = MediaBuffer(WEBM, MediaKind.WEBM, source=VIDEO_URL)
        handler, calls = fallback_service()
        async with mock_client(handler) as client:
            chain = FallbackChain(FakePrimary(buffer=buffer), fallback_settings, client)
            assert await chain.resolve(SourceRequest(url=VIDEO_URL)) is buffer
        assert chain.state == ChainState.PRIMARY
        assert calls == []

    @pytest.mark.asyncio
    async def test_rate_limit_switches_to_fallback(self, fallback_settings):
        handler, calls = fallback_service()
        primary = FakePrimary(error=RateLimitedError("VIDEO_RATE_LIMITED"))
        async with mock_client(handler) as client:
            chain = FallbackChain(primary, fallback_settings, client)
            buffer = await chain.resolve(SourceRequest(url=VIDEO_URL))

        assert chain.state == ChainState.FALLBACK
        assert buffer.kind == MediaKind.MP3
        assert buffer.data == MP3_ID3
        assert buffer.source == VIDEO_URL

        lookup, download = calls
        assert str(lookup.url).startswith("https://resolver.test/api/resolve?")
        assert lookup.url.params["url"] == VIDEO_URL
        assert lookup.headers["Authorization"] == "Bearer s3cret"
        assert str(download.url) == "https://cdn.test/audio.mp3"

    @pytest.mark.asyncio
    async def test_no_token_means_no_authorization_header(self, fallback_settings):
        handler, calls = fallback_service()
        anonymous = dataclasses.replace(fallback_settings, video_fallback_token=None)
        async with mock_client(handler) as client:
            await FallbackChain(FakePrimary(error=RateLimitedError("VIDEO_RATE_LIMITED")),
                                anonymous, client).resolve(SourceRequest(url=VIDEO_URL))
        assert "Authorization" not in calls[0].headers

    @pytest.mark.asyncio
    async def test_unconfigured_fallback_fails_without_http(self, settings):
        handler, calls = fallback_service()
        async with mock_client(handler) as client:
            chain = FallbackChain(FakePrimary(error=RateLimitedError("VIDEO_RATE_LIMITED")), settings, client)
            with pytest.raises(ConfigurationError) as info:
                await chain.resolve(SourceRequest(url=VIDEO_URL))
        assert info.value.reason == "VIDEO_FALLBACK_NOT_CONFIGURED"
        assert chain.state == ChainState.FALLBACK
        assert calls == []

    @pytest.mark.asyncio
    async def test_other_primary_failures_are_not_retried_elsewhere(self, fallback_settings):
        handler, calls = fallback_service()
        error = TransientUpstreamError("VIDEO_STREAM_503", upstream_status=503)
        async with mock_client(handler) as client:
            chain = FallbackChain(FakePrimary(error=error), fallback_settings, client)
            with pytest.raises(TransientUpstreamError) as info:
                await chain.resolve(SourceRequest(url=VIDEO_URL))
        assert info.value is error
        assert chain.state == ChainState.PRIMARY
        assert calls == []

    @pytest.mark.asyncio
    async def test_failure_in_fallback_is_terminal(self, fallback_settings):
        handler, calls = fallback_service(cdn_status=429)
        primary = FakePrimary(error=RateLimitedError("VIDEO_RATE_LIMITED"))
        async with mock_client(handler) as client:
            chain = FallbackChain(primary, fallback_settings, client)
            with pytest.raises(RateLimitedError) as info:
                await chain.resolve(SourceRequest(url=VIDEO_URL))
        assert info.value.reason == "FALLBACK_FETCH_429"
        assert primary.calls == 1
        # one lookup plus the full retry budget on the download
        assert len(calls) == 1 + fallback_settings.retry_policy("FALLBACK").tries

    @pytest.mark.asyncio
    async def test_descriptor_without_download_url(self, fallback_settings):
        handler, _ = fallback_service(descriptor={"status": "queued"})
        async with mock_client(handler) as client:
            chain = FallbackChain(FakePrimary(error=RateLimitedError("VIDEO_RATE_LIMITED")), fallback_settings, client)
            with pytest.raises(PermanentUpstreamError) as info:
                await chain.resolve(SourceRequest(url=VIDEO_URL))
        assert info.value.reason == "FALLBACK_NO_DOWNLOAD_URL"

    @pytest.mark.asyncio
    async def test_declared_audio_type_is_not_enough(self, fallback_settings):
        lenient = dataclasses.replace(fallback_settings, allow_unsniffed_mp3=True)

        def handler(request):
            if request.url.host == "resolver.test":
                return httpx.Response(200, json={"download_url": "https://cdn.test/audio.mp3"})
            return httpx.Response(200, content=GARBAGE, headers={"Content-Type": "audio/mpeg"})

        async with mock_client(handler) as client:
            chain = FallbackChain(FakePrimary(error=RateLimitedError("VIDEO_RATE_LIMITED")), lenient, client)
            with pytest.raises(UnsupportedContent) as info:
                await chain.resolve(SourceRequest(url=VIDEO_URL))
        assert info.value.reason == "FALLBACK_UNSUPPORTED_CONTENT"

    @pytest.mark.asyncio
    async def test_html_download_is_named_as_such(self, fallback_settings):
        handler, _ = fallback_service(download_body=HTML)
        async with mock_client(handler) as client:
            chain = FallbackChain(FakePrimary(error=RateLimitedError("VIDEO_RATE_LIMITED")), fallback_settings, client)
            with pytest.raises(UnsupportedContent) as info:
                await chain.resolve(SourceRequest(url=VIDEO_URL))
        assert info.value.reason == "FALLBACK_RETURNED_HTML_NOT_MEDIA"


class TestLookupDownloadUrl:

    @pytest.mark.asyncio
    async def test_error_body_is_not_drained(self, fallback_settings):
        produced = []

        async def body():
            for _ in range(64):
                produced.append(1)
                yield b"x" * 1024 * 1024

        def handler(request):
            return httpx.Response(502, content=body())

        async with mock_client(handler) as client:
            chain = FallbackChain(FakePrimary(), fallback_settings, client)
            with pytest.raises(TransientUpstreamError) as info:
                await chain.lookup_download_url(VIDEO_URL)
        assert info.value.reason == "FALLBACK_RESOLVE_502"
        assert len(info.value.details["body"]) == ERROR_SNIPPET_BYTES
        # superseded attempts are closed unread; only the final one is sampled
        assert len(produced) <= 2

    @pytest.mark.asyncio
    async def test_oversized_descriptor(self, fallback_settings):
        def handler(request):
            return httpx.Response(200, content=b"[" + b"0," * DESCRIPTOR_MAX_BYTES + b"0]")

        async with mock_client(handler) as client:
            with pytest.raises(PayloadTooLarge) as info:
                await FallbackChain(FakePrimary(), fallback_settings, client).lookup_download_url(VIDEO_URL)
        assert info.value.reason == "FALLBACK_RESPONSE_TOO_LARGE"

    @pytest.mark.asyncio
    async def test_non_json_descriptor(self, fallback_settings):
        async with mock_client(lambda request: httpx.Response(200, text="<html>oops</html>")) as client:
            with pytest.raises(PermanentUpstreamError) as info:
                await FallbackChain(FakePrimary(), fallback_settings, client).lookup_download_url(VIDEO_URL)
        assert info.value.reason == "FALLBACK_BAD_RESPONSE"
        assert info.value.details == "<html>oops</html>"
