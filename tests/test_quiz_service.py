"""
Tests for resolver selection and the resolve -> route -> text -> quiz
pipeline, with HTTP served by a MockTransport and the LLM faked.
"""

import fitz
import httpx
import pytest

from conftest import HTML, MP3_ID3, mock_client
from media_quiz.errors import UnsupportedContent
from media_quiz.services.fallback import FallbackChain
from media_quiz.services.media import SourceRequest
from media_quiz.services.quiz_service import QuizPipeline
from media_quiz.services.resolvers import DirectUrlResolver, DocumentUrlResolver, UploadResolver

QUESTION = {"text": "q", "choices": ["a", "b", "c", "d", "e"], "answer_index": 2}


class FakeTranscriber:
    def __init__(self, text="spoken words"):
        self.text = text
        self.calls = 0

    async def transcribe(self, buffer):
        self.calls += 1
        return self.text


class FakeQuizGenerator:
    def __init__(self):
        self.calls = []

    async def generate_quiz(self, source_text, num, *, language="English", max_chars=None):
        self.calls.append({"text": source_text, "num": num, "language": language, "max_chars": max_chars})
        return {"questions": [QUESTION] * num}


def pdf_bytes(text):
    doc = fitz.open()
    doc.new_page().insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


def pipeline_for(settings, handler):
    return QuizPipeline(settings, mock_client(handler), FakeTranscriber(), FakeQuizGenerator())


class TestResolverFor:

    @pytest.fixture
    def pipeline(self, settings):
        return pipeline_for(settings, lambda request: httpx.Response(200))

    def test_upload(self, pipeline):
        assert isinstance(pipeline.resolver_for(SourceRequest(upload=MP3_ID3, filename="a.mp3")), UploadResolver)

    @pytest.mark.parametrize("url", ["https://www.youtube.com/watch?v=abc", "https://youtu.be/abc"])
    def test_video_hosts_use_the_fallback_chain(self, pipeline, url):
        assert isinstance(pipeline.resolver_for(SourceRequest(url=url)), FallbackChain)

    def test_other_urls_use_the_document_resolver(self, pipeline):
        resolver = pipeline.resolver_for(SourceRequest(url="https://example.com/lecture.mp3"))
        assert isinstance(resolver, DocumentUrlResolver)

    def test_channel_overrides_detection(self, pipeline):
        resolver = pipeline.resolver_for(SourceRequest(url="https://example.com/lecture.mp3", channel="media"))
        assert isinstance(resolver, DirectUrlResolver)
        resolver = pipeline.resolver_for(SourceRequest(url="https://example.com/x", channel="video"))
        assert isinstance(resolver, FallbackChain)

    def test_a_fresh_chain_per_request(self, pipeline):
        request = SourceRequest(url="https://youtu.be/abc")
        assert pipeline.resolver_for(request) is not pipeline.resolver_for(request)


class TestBuildQuiz:

    @pytest.mark.asyncio
    async def test_pdf_url_is_extracted_not_transcribed(self, settings):
        document = pdf_bytes("Cells divide by mitosis")
        pipeline = pipeline_for(settings, lambda request: httpx.Response(
            200, content=document, headers={"content-type": "application/pdf"}))

        quiz = await pipeline.build_quiz(SourceRequest(url="https://example.com/notes.pdf", question_count=2))

        assert len(quiz["questions"]) == 2
        assert pipeline.transcriber.calls == 0
        call = pipeline.quiz_generator.calls[0]
        assert "Cells divide by mitosis" in call["text"]
        assert call["language"] == settings.quiz_language
        assert call["max_chars"] == settings.max_source_chars

    @pytest.mark.asyncio
    async def test_audio_url_is_transcribed(self, settings):
        pipeline = pipeline_for(settings, lambda request: httpx.Response(200, content=MP3_ID3))

        await pipeline.build_quiz(SourceRequest(url="https://example.com/talk", channel="media"))

        assert pipeline.transcriber.calls == 1
        assert pipeline.quiz_generator.calls[0]["text"] == "spoken words"

    @pytest.mark.asyncio
    async def test_html_from_a_media_url_is_rejected(self, settings):
        pipeline = pipeline_for(settings, lambda request: httpx.Response(
            200, content=HTML, headers={"content-type": "audio/mpeg"}))

        with pytest.raises(UnsupportedContent) as info:
            await pipeline.build_quiz(SourceRequest(url="https://example.com/talk.mp3", channel="media"))

        assert info.value.reason == "DIRECT_RETURNED_HTML_NOT_MEDIA"
        assert pipeline.transcriber.calls == 0
        assert pipeline.quiz_generator.calls == []

    @pytest.mark.asyncio
    async def test_upload(self, settings):
        pipeline = pipeline_for(settings, lambda request: pytest.fail("uploads make no HTTP calls"))
        quiz = await pipeline.build_quiz(SourceRequest(upload=MP3_ID3, filename="memo.bin", question_count=1))
        assert quiz["questions"] == [QUESTION]
        assert pipeline.transcriber.calls == 1
