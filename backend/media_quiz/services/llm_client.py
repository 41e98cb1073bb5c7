# backend/media_quiz/services/llm_client.py
import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from ..errors import ConfigurationError, NetworkError, PermanentUpstreamError, upstream_error_for_status
from .media import MediaBuffer
from .retry import RetryPolicy, UpstreamReply, with_retries

logger = logging.getLogger("media_quiz.services.llm_client")

TRANSCRIBE_PROMPT = """Transcribe the speech in this audio verbatim.
Respond with the transcript text only: no timestamps, no speaker labels, no commentary."""

QUIZ_SYSTEM_PROMPT = "You are a quiz generator writing in {language}. Respond with ONLY valid JSON."

QUIZ_GENERATION_PROMPT = """Based on the text below, generate {num} multiple choice questions in {language}.
Each question must have exactly 5 choices (A, B, C, D, E), all in {language}, and exactly one correct choice.
The "answer_index" field MUST be an integer between 0 and 4 matching the correct entry in "choices".
Do not set every answer_index to 0; vary it with the correct answer.

Respond with ONLY a valid JSON object (no markdown, no code fences) with this structure:
{{
  "questions": [
    {{
      "text": "question text",
      "choices": ["choice A", "choice B", "choice C", "choice D", "choice E"],
      "answer_index": 0
    }}
  ]
}}

Text:
{source_text}
"""

CHOICE_COUNT = 5
LETTERS = ["A", "B", "C", "D", "E"]
_CORRECT_TAG = re.compile(r"\s*(\[correct\]|\(correct\))", re.IGNORECASE)


def _clean_json_response(text: str) -> str:
    """Strip markdown code fences and extract JSON content."""
    text = text.strip()

    # Remove markdown code fences
    if "```json" in text:
        parts = text.split("```json", 1)[1].split("```", 1)
        text = parts[0].strip()
    elif "```" in text:
        parts = text.split("```", 1)[1].split("```", 1)
        text = parts[0].strip()

    return text


def normalize_question(q: Dict[str, Any]) -> Dict[str, Any]:
    """
    Coerce one model-produced question into {text, choices[5], answer_index}.
    Models are inconsistent about how they mark the right answer, so several
    conventions are tried before giving up and using 0.
    """
    raw_choices = q.get("choices")
    out = {
        "text": str(q.get("text") or q.get("question") or "").strip(),
        "choices": [str(c if c is not None else "").strip() for c in raw_choices] if isinstance(raw_choices, list) else [],
        "answer_index": q.get("answer_index") if isinstance(q.get("answer_index"), int) else None,
    }

    if out["answer_index"] is None:
        letter = str(q.get("answer") or q.get("correct_letter") or "").strip().upper()
        if letter in LETTERS:
            out["answer_index"] = LETTERS.index(letter)

    if out["answer_index"] is None and isinstance(q.get("correct"), int) and not isinstance(q.get("correct"), bool):
        out["answer_index"] = q["correct"]

    if out["answer_index"] is None and isinstance(q.get("correct_choice"), str) and out["choices"]:
        wanted = q["correct_choice"].strip().lower()
        for i, choice in enumerate(out["choices"]):
            if choice.lower() == wanted:
                out["answer_index"] = i
                break

    # Markers left inside the choices themselves
    if out["answer_index"] is None and out["choices"]:
        starred = [i for i, c in enumerate(out["choices"]) if c.startswith("*")]
        tagged = [i for i, c in enumerate(out["choices"]) if _CORRECT_TAG.search(c)]
        if starred:
            out["answer_index"] = starred[0]
        elif tagged:
            out["answer_index"] = tagged[0]
        if starred or tagged:
            out["choices"] = [_CORRECT_TAG.sub("", c.lstrip("* ")).strip() for c in out["choices"]]

    if not isinstance(out["answer_index"], int) or isinstance(out["answer_index"], bool) \
            or not 0 <= out["answer_index"] < CHOICE_COUNT:
        out["answer_index"] = 0

    out["choices"] = (out["choices"] + [""] * CHOICE_COUNT)[:CHOICE_COUNT]
    return out


def parse_quiz(raw_response: str) -> Dict[str, List[Dict[str, Any]]]:
    cleaned = _clean_json_response(raw_response or "")
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse quiz JSON: {e}")
        logger.error(f"Response text: {raw_response[:500]}")
        parsed = {}

    if isinstance(parsed, list):
        questions = parsed
    elif isinstance(parsed, dict):
        questions = parsed.get("questions")
    else:
        questions = None
    if not isinstance(questions, list):
        questions = []

    return {"questions": [normalize_question(q) for q in questions if isinstance(q, dict)]}


def _retry_headers(exc: BaseException) -> Dict[str, str]:
    headers = getattr(getattr(exc, "response", None), "headers", None)
    if not headers:
        return {}
    retry_after = headers.get("retry-after")
    return {"retry-after": retry_after} if retry_after else {}


class GeminiClient:
    """
    Thin async wrapper over google-genai used for both transcription and
    quiz generation. Every call goes through the retry orchestrator; the SDK
    client is only built on first use so a missing key surfaces as a
    ConfigurationError on the request that needs it.
    """

    def __init__(self, api_key: Optional[str], model: str, policy: RetryPolicy, *,
                 purpose: str, client_factory: Optional[Callable[[str], Any]] = None):
        self.api_key = api_key
        self.model = model
        self.policy = policy
        self.purpose = purpose
        self._client_factory = client_factory or (lambda key: genai.Client(api_key=key))
        self._client = None

    @property
    def client(self):
        if self._client is None:
            if not self.api_key:
                raise ConfigurationError(f"{self.purpose}_API_KEY_MISSING",
                                         f"No API key configured for {self.purpose.lower()}")
            self._client = self._client_factory(self.api_key)
            logger.info(f"Initialized Gemini client for {self.purpose.lower()} with model: {self.model}")
        return self._client

    async def generate(self, contents: Any, config: Optional[types.GenerateContentConfig] = None) -> str:
        client = self.client

        async def attempt() -> UpstreamReply:
            try:
                response = await client.aio.models.generate_content(
                    model=self.model,
                    contents=contents,
                    config=config,
                )
            except genai_errors.APIError as exc:
                return UpstreamReply(status_code=exc.code or 500, error=exc, headers=_retry_headers(exc))
            return UpstreamReply(status_code=200, value=response)

        try:
            reply = await with_retries(attempt, self.policy, label=f"{self.purpose.lower()} call")
        except httpx.TransportError as exc:
            raise NetworkError(f"{self.purpose}_NETWORK_ERROR", f"{self.purpose.lower()} backend unreachable",
                               details=str(exc))

        if not reply.is_success:
            logger.error(f"{self.purpose} failed with status {reply.status_code}: {reply.error}")
            raise upstream_error_for_status(
                reply.status_code,
                f"{self.purpose}_FAILED_{reply.status_code}",
                details=str(reply.error),
            )
        return reply.value.text or ""

    async def transcribe(self, buffer: MediaBuffer) -> str:
        """Send audio bytes with their sniffed MIME type and return the transcript."""
        logger.info(f"Transcribing {len(buffer)} bytes of {buffer.mime_type}")
        contents = [
            types.Part.from_bytes(data=buffer.data, mime_type=buffer.mime_type),
            TRANSCRIBE_PROMPT,
        ]
        text = await self.generate(contents)
        return text.strip()

    async def generate_quiz(self, source_text: str, num: int, *, language: str = "English",
                            max_chars: Optional[int] = None) -> Dict[str, List[Dict[str, Any]]]:
        """
        Generate `num` multiple choice questions from `source_text`.
        Raises PermanentUpstreamError if the model produced no usable questions.
        """
        if max_chars and len(source_text) > max_chars:
            logger.info(f"Truncating source text from {len(source_text)} to {max_chars} characters")
            source_text = source_text[:max_chars]

        prompt = QUIZ_GENERATION_PROMPT.format(num=num, language=language, source_text=source_text)
        config = types.GenerateContentConfig(
            system_instruction=QUIZ_SYSTEM_PROMPT.format(language=language),
            response_mime_type="application/json",
            temperature=0.7,
        )

        logger.info(f"Generating quiz: {num} questions from {len(source_text)} characters")
        raw_response = await self.generate(prompt, config)
        logger.info(f"Raw quiz response: {raw_response[:200]}...")

        quiz = parse_quiz(raw_response)
        if not quiz["questions"]:
            raise PermanentUpstreamError("QUIZ_GENERATION_EMPTY", "The model returned no usable questions",
                                         details=raw_response[:500])
        quiz["questions"] = quiz["questions"][:num]
        logger.info(f"Successfully generated {len(quiz['questions'])} quiz questions")
        return quiz
