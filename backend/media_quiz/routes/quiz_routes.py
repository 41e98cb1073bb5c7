from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Body, File, Form, Request, UploadFile
from pydantic import BaseModel, Field

from ..errors import PayloadTooLarge, ValidationError
from ..services.media import SourceRequest
from ..services.quiz_service import QuizPipeline

router = APIRouter()


class QuizFromUrlRequest(BaseModel):
    url: Optional[str] = Field(None, description="Direct media/document URL or a video platform URL")
    num: int = Field(5, ge=1, le=50, description="Number of questions")
    channel: Literal["auto", "media", "document", "video"] = Field(
        "auto", description="Force a resolver instead of picking one from the URL"
    )


def get_pipeline(request: Request) -> QuizPipeline:
    return request.app.state.pipeline


@router.post("/quiz-from-url", response_model=Dict[str, Any])
async def quiz_from_url(request: Request, body: QuizFromUrlRequest = Body(...)):
    """
    Fetch the media or document behind `url`, turn it into text and
    generate a multiple choice quiz from it.
    """
    if not body.url or not body.url.strip():
        raise ValidationError("URL_REQUIRED", "Provide 'url'")
    source = SourceRequest(url=body.url, question_count=body.num, channel=body.channel)
    quiz = await get_pipeline(request).build_quiz(source)
    return {"quiz": quiz}


@router.post("/quiz-from-upload", response_model=Dict[str, Any])
async def quiz_from_upload(
    request: Request,
    file: Optional[UploadFile] = File(None),
    num: int = Form(5, ge=1, le=50),
):
    """
    Generate a quiz from an uploaded audio file or PDF
    (multipart/form-data, field 'file').
    """
    if file is None:
        raise ValidationError("UPLOAD_REQUIRED", "Send a file in the 'file' field (multipart/form-data)")

    pipeline = get_pipeline(request)
    limit = pipeline.settings.max_payload_bytes
    raw = await file.read(limit + 1)
    if len(raw) > limit:
        raise PayloadTooLarge("UPLOAD_TOO_LARGE", f"Upload exceeds the {limit} byte limit",
                              details={"limit_bytes": limit})

    source = SourceRequest(upload=raw, filename=file.filename, question_count=num)
    quiz = await pipeline.build_quiz(source)
    return {"quiz": quiz}
