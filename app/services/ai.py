"""
AI Assist Service

Thin client for the Gemini ``generateContent`` REST endpoint. Used for
free-text photo descriptions, structured damage detection and the
single-turn chatbot. Calls are one-shot: no retries, default httpx timeout.
"""

import base64
import binascii
import json
import math
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx
import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from app.core.config import settings
from app.core.exceptions import AiAnalysisError, AiParseError, ValidationError
from app.core.metrics import AI_REQUEST_DURATION, AI_REQUESTS
from app.models.database import PriorityLevel

# =============================================================================
# Logger Setup
# =============================================================================

logger = structlog.get_logger(__name__)

# =============================================================================
# Prompts
# =============================================================================

DAMAGE_PROMPT = """You are a campus facility damage detection AI.
Analyze the image and return ONLY a valid JSON object (no markdown, no code blocks) with exactly these fields:
{
  "detected_object": "what object/facility is damaged",
  "damage_type": "type of damage (e.g., crack, dent, broken, leak)",
  "severity": "one of: low, medium, high, critical",
  "repair_recommendation": "what repair is needed",
  "confidence_level": number between 0 and 1
}"""

DESCRIBE_PROMPT = """Analyze this image carefully and provide a detailed, professional description for a campus facility report system.

Your description should:
1. Identify the main subject or issue in the image (e.g., damaged facility, event, incident, or general observation)
2. Describe specific details: condition, location characteristics, severity (if applicable)
3. Note any safety concerns or urgency indicators
4. Mention relevant context (time of day, weather conditions if visible, people involved if any)
5. Use clear, objective language suitable for official documentation

Format your response as a cohesive paragraph (150-200 words) that would help administrators understand the situation without seeing the image. Be specific and factual, avoiding assumptions."""

CHAT_INSTRUCTION = "Answer the user's question concisely in under 100 words."

_FENCE_START = re.compile(r"^```[a-zA-Z]*\s*")
_FENCE_END = re.compile(r"\s*```$")
_DATA_URL = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,", re.IGNORECASE)

# =============================================================================
# Damage Analysis Decoding
# =============================================================================

class DamageAnalysis(BaseModel):
    """Structured damage assessment. Reads snake_case model output, emits camelCase."""

    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    detected_object: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("detected_object", "detectedObject"),
        serialization_alias="detectedObject",
    )
    damage_type: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("damage_type", "damageType"),
        serialization_alias="damageType",
    )
    severity: PriorityLevel
    recommendation: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("repair_recommendation", "recommendation", "repairRecommendation"),
        serialization_alias="recommendation",
    )
    confidence: float = Field(
        ...,
        validation_alias=AliasChoices("confidence_level", "confidence", "confidenceLevel"),
        serialization_alias="confidence",
    )

    @field_validator("severity", mode="before")
    @classmethod
    def normalize_severity(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("confidence")
    @classmethod
    def clamp_confidence(cls, v: float) -> float:
        if math.isnan(v):
            raise ValueError("confidence must be a number")
        return min(1.0, max(0.0, v))


@dataclass(frozen=True)
class DecodeResult:
    """Outcome of decoding a model answer: an analysis or a parse error, never both."""

    analysis: Optional[DamageAnalysis] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.analysis is not None


def strip_code_fences(text: str) -> str:
    text = text.strip()
    text = _FENCE_START.sub("", text)
    text = _FENCE_END.sub("", text)
    return text.strip()


def decode_damage_analysis(text: Optional[str]) -> DecodeResult:
    """Decode the model's textual answer into a DamageAnalysis without raising."""
    if not text or not text.strip():
        return DecodeResult(error="Empty response from AI model")

    body = strip_code_fences(text)

    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        return DecodeResult(error=f"Response is not valid JSON: {e.msg}")

    if not isinstance(data, dict):
        return DecodeResult(error="Response JSON is not an object")

    try:
        return DecodeResult(analysis=DamageAnalysis.model_validate(data))
    except PydanticValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        return DecodeResult(error=f"Response has missing or invalid fields: {', '.join(fields)}")


def decode_base64_image(data: str, mime_type: Optional[str] = None) -> Tuple[bytes, str]:
    """Decode a base64 photo, accepting an optional ``data:`` URL prefix."""
    if not data or not data.strip():
        raise ValidationError("Photo is required", field="photoBase64")

    data = data.strip()
    match = _DATA_URL.match(data)
    if match:
        mime_type = mime_type or match.group("mime")
        data = data[match.end():]

    try:
        image_bytes = base64.b64decode("".join(data.split()), validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("Photo is not valid base64", field="photoBase64")

    if not image_bytes:
        raise ValidationError("Photo is required", field="photoBase64")

    return image_bytes, mime_type or "image/jpeg"


def build_chat_context(counts: Dict[str, int], recent_titles: List[str], question: str) -> str:
    """Prompt for the chatbot: current counts, a few recent titles, then the question."""
    titles = ", ".join(recent_titles) if recent_titles else "none yet"
    return (
        f"You are a helpful assistant for {settings.APP_NAME}.\n\n"
        "Current Statistics:\n"
        f"- Total Reports: {counts.get('total', 0)}\n"
        f"- Pending: {counts.get('pending', 0)}\n"
        f"- In Progress: {counts.get('inProgress', 0)}\n"
        f"- Completed: {counts.get('done', 0)}\n"
        f"- Rejected: {counts.get('rejected', 0)}\n\n"
        f"Recent Reports: {titles}\n\n"
        f"{CHAT_INSTRUCTION}\n\n"
        f"User Question: {question}"
    )


# =============================================================================
# Gemini Client
# =============================================================================

def _upstream_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:300] or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return f"HTTP {response.status_code}"


def _extract_text(data: Dict[str, Any]) -> str:
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(part.get("text", "") for part in parts if isinstance(part, dict))


class AIAssistService:
    """Gemini REST client for image analysis and chatbot replies."""

    def __init__(self, api_key: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key if api_key is not None else settings.GEMINI_API_KEY
        self.base_url = settings.GEMINI_API_BASE_URL.rstrip("/")
        self._client = client

    async def _post(self, url: str, payload: Dict[str, Any]) -> httpx.Response:
        headers = {"x-goog-api-key": self.api_key or ""}
        if self._client is not None:
            return await self._client.post(url, json=payload, headers=headers)
        async with httpx.AsyncClient() as client:
            return await client.post(url, json=payload, headers=headers)

    async def _generate(self, model: str, parts: List[Dict[str, Any]], operation: str) -> str:
        if not self.api_key:
            AI_REQUESTS.labels(operation=operation, status="not_configured").inc()
            raise AiAnalysisError("AI service is not configured")

        url = f"{self.base_url}/models/{model}:generateContent"
        payload = {"contents": [{"role": "user", "parts": parts}]}
        start = time.perf_counter()

        try:
            response = await self._post(url, payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            upstream = _upstream_message(e.response)
            AI_REQUESTS.labels(operation=operation, status="error").inc()
            logger.error("AI request rejected", operation=operation, status_code=e.response.status_code, upstream=upstream)
            raise AiAnalysisError(f"AI request failed: {upstream}", upstream_message=upstream)
        except httpx.HTTPError as e:
            AI_REQUESTS.labels(operation=operation, status="error").inc()
            logger.error("AI request failed", operation=operation, error=str(e))
            raise AiAnalysisError(f"AI request failed: {e}", upstream_message=str(e))
        except ValueError as e:
            AI_REQUESTS.labels(operation=operation, status="error").inc()
            raise AiAnalysisError("AI service returned an invalid response", upstream_message=str(e))
        finally:
            AI_REQUEST_DURATION.labels(operation=operation).observe(time.perf_counter() - start)

        text = _extract_text(data)
        if not text:
            reason = (data.get("promptFeedback") or {}).get("blockReason") or "empty response"
            AI_REQUESTS.labels(operation=operation, status="empty").inc()
            raise AiAnalysisError("AI service returned no content", upstream_message=str(reason))

        AI_REQUESTS.labels(operation=operation, status="success").inc()
        logger.info("AI request completed", operation=operation, model=model, chars=len(text))
        return text

    @staticmethod
    def _image_part(image_bytes: bytes, mime_type: str) -> Dict[str, Any]:
        return {
            "inline_data": {
                "mime_type": mime_type,
                "data": base64.b64encode(image_bytes).decode("ascii"),
            }
        }

    async def analyze_image(self, image_bytes: bytes, mime_type: str) -> str:
        """Free-text description of a photo."""
        parts = [{"text": DESCRIBE_PROMPT}, self._image_part(image_bytes, mime_type)]
        return (await self._generate(settings.GEMINI_VISION_MODEL, parts, "analyze_image")).strip()

    async def analyze_damage(self, image_bytes: bytes, mime_type: str = "image/jpeg") -> DamageAnalysis:
        """
        Structured damage assessment of a photo.

        Raises:
            AiAnalysisError: the model call failed
            AiParseError: the answer is not a well-formed assessment
        """
        parts = [self._image_part(image_bytes, mime_type), {"text": DAMAGE_PROMPT}]
        text = await self._generate(settings.GEMINI_VISION_MODEL, parts, "analyze_damage")

        result = decode_damage_analysis(text)
        if not result.ok:
            logger.warning("AI damage analysis could not be parsed", error=result.error)
            raise AiParseError(result.error or "AI response could not be parsed", raw_response=text)
        return result.analysis

    async def chat(self, prompt_context: str) -> str:
        """Single-turn reply for an already-built prompt."""
        return (await self._generate(settings.GEMINI_TEXT_MODEL, [{"text": prompt_context}], "chat")).strip()


__all__ = [
    "AIAssistService",
    "DamageAnalysis",
    "DecodeResult",
    "build_chat_context",
    "decode_base64_image",
    "decode_damage_analysis",
    "strip_code_fences",
]
