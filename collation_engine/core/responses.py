"""Standardized API response utilities."""

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from fastapi import status
from fastapi.responses import JSONResponse

from collation_engine.core.errors import CollationError


class CustomJSONEncoder(json.JSONEncoder):
    """Custom JSON encoder that handles UUID, datetime, and other types."""

    def default(self, obj):
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, bytes):
            return obj.decode("utf-8")
        return super().default(obj)


def success_response(data: Any = None, message: str | None = None) -> dict[str, Any]:
    """Create a successful API response."""
    return {"success": True, "data": data, "message": message}


def error_response_dict(
    error_dict: dict[str, Any], status_code: int = status.HTTP_400_BAD_REQUEST
) -> JSONResponse:
    """Create an error response as a JSONResponse (for exception handlers)."""
    content = json.loads(json.dumps(error_dict, cls=CustomJSONEncoder))
    return JSONResponse(status_code=status_code, content=content)


def collation_error_response(exc: CollationError) -> JSONResponse:
    """Render a collation rule violation as a structured error response."""
    return error_response_dict(
        {
            "success": False,
            "message": exc.message,
            "data": None,
            "errors": exc.to_dict(),
        },
        exc.http_status,
    )
