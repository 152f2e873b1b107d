"""Post generation API.

Every generation passes the Usage Ledger gate and is charged only when it
succeeds.
"""

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, field_validator

from logtopost.core.auth import require_user_id
from logtopost.core.errors import AppError

router = APIRouter(prefix="/api/ai", tags=["ai"])

MAX_LOG_CHARS = 10000


class GeneratePostsRequest(BaseModel):
    text: str

    @field_validator("text")
    @classmethod
    def text_required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("text is required")
        if len(value) > MAX_LOG_CHARS:
            raise ValueError(f"text must be at most {MAX_LOG_CHARS} characters")
        return value


@router.post("/generate-posts")
def generate_posts(body: GeneratePostsRequest, request: Request, user_id: str = Depends(require_user_id)):
    ledger = request.app.state.usage_ledger
    generator = request.app.state.text_generator
    if generator is None:
        raise AppError("Post generation is not configured", code="generation_unavailable", status_code=503)

    with ledger.metered(user_id):
        posts = generator.generate_posts(body.text)

    entitlement = request.app.state.entitlement_store.require(user_id)
    return {"posts": posts, "usage": ledger.usage_snapshot(entitlement)}
