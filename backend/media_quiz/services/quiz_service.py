import logging
from typing import Any, Dict

import httpx

from ..config import Settings
from .content_router import route
from .fallback import FallbackChain
from .llm_client import GeminiClient
from .media import SourceRequest
from .resolvers import DirectUrlResolver, DocumentUrlResolver, SourceResolver, UploadResolver
from .transcript_service import get_source_text
from .video_service import StreamingVideoResolver, is_streaming_video_url

logger = logging.getLogger("media_quiz.services.quiz_service")


class QuizPipeline:
    """
    resolve -> route -> text -> quiz, for one request at a time.
    Holds only shared, stateless collaborators; anything with per-request
    state (the fallback chain) is built fresh for every call.
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient,
                 transcriber: GeminiClient, quiz_generator: GeminiClient):
        self.settings = settings
        self.http_client = http_client
        self.transcriber = transcriber
        self.quiz_generator = quiz_generator

    def resolver_for(self, request: SourceRequest) -> SourceResolver:
        if request.upload is not None:
            return UploadResolver(self.settings)

        channel = request.channel
        if channel == "auto":
            channel = "video" if is_streaming_video_url(request.url) else "document"

        if channel == "video":
            primary = StreamingVideoResolver(self.http_client, self.settings)
            return FallbackChain(primary, self.settings, self.http_client)
        if channel == "media":
            return DirectUrlResolver(self.http_client, self.settings)
        return DocumentUrlResolver(self.http_client, self.settings)

    async def build_quiz(self, request: SourceRequest) -> Dict[str, Any]:
        resolver = self.resolver_for(request)
        logger.info(f"Resolving {request.url or request.filename!r} with {type(resolver).__name__}")

        buffer = await resolver.resolve(request)
        routed = route(buffer, url_hint=request.url or request.filename)
        logger.info(f"Routing {buffer!r} to {routed.path}")

        text = await get_source_text(routed, self.transcriber)
        return await self.quiz_generator.generate_quiz(
            text,
            request.question_count,
            language=self.settings.quiz_language,
            max_chars=self.settings.max_source_chars,
        )


def build_pipeline(settings: Settings, http_client: httpx.AsyncClient) -> QuizPipeline:
    transcriber = GeminiClient(
        settings.transcription_api_key,
        settings.transcription_model,
        settings.retry_policy("TRANSCRIBE"),
        purpose="TRANSCRIPTION",
    )
    quiz_generator = GeminiClient(
        settings.quiz_api_key,
        settings.quiz_model,
        settings.retry_policy("QUIZ"),
        purpose="QUIZ_GENERATION",
    )
    return QuizPipeline(settings, http_client, transcriber, quiz_generator)
