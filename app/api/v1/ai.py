"""
AI API Endpoints

Structured damage detection on a base64 photo.
"""

from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends
from pydantic import AliasChoices, BaseModel, Field

from app.api.v1.utils import success_response
from app.core.security import get_current_user
from app.models.database import User
from app.services.ai import AIAssistService, decode_base64_image
from app.services.file_storage import FileStorageService

logger = structlog.get_logger(__name__)
router = APIRouter()

ai_service = AIAssistService()
file_storage = FileStorageService()


class DetectDamageRequest(BaseModel):
    photo_base64: str = Field(..., validation_alias=AliasChoices("photoBase64", "photo_base64", "image"))
    mime_type: Optional[str] = Field(None, validation_alias=AliasChoices("mimeType", "mime_type"))


@router.post("/detect-damage", response_model=Dict[str, Any])
async def detect_damage(
    request: DetectDamageRequest,
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    """
    Assess the damage shown in a photo.

    The photo is checked like an upload (type, size, decodable image) but is
    not stored. A malformed model answer is reported as an error rather than
    filled in.
    """
    image_bytes, mime_type = decode_base64_image(request.photo_base64, request.mime_type)
    file_storage.validate_file(image_bytes, mime_type)

    analysis = await ai_service.analyze_damage(image_bytes, mime_type)
    payload = analysis.model_dump(mode="json", by_alias=True)

    logger.info(
        "Damage detected",
        user_id=str(current_user.id),
        severity=payload["severity"],
        confidence=payload["confidence"],
    )
    return success_response(payload, analysis=payload)
