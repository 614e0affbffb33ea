"""
Shared helpers for API v1 endpoints.
"""

import json
from typing import Any, Dict, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from app.core.exceptions import ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


def success_response(data: Any = None, message: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    """Standard ``{success, data, message}`` envelope."""
    body: Dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    body.update(extra)
    return body


def parse_model(model: Type[ModelT], data: Dict[str, Any]) -> ModelT:
    """Validate form data into ``model``, reporting problems as a 400 ValidationError."""
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        first = errors[0] if errors else {"field": None, "message": "Invalid input"}
        raise ValidationError(
            f"Invalid {first['field']}: {first['message']}" if first["field"] else first["message"],
            details={"errors": errors},
        )


def parse_json_field(value: Optional[str], field: str) -> Any:
    """Decode a JSON-encoded multipart field."""
    if value is None or not value.strip():
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        raise ValidationError(f"{field} must be valid JSON", field=field)
