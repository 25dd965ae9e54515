"""
Structured error bodies for SyncException
"""

from typing import Optional
import json

from fastapi.responses import JSONResponse

from core.exceptions import SyncException


def error_response(error: SyncException, table: Optional[str] = None) -> JSONResponse:
    body = {
        "success": False,
        "error": error.message,
        "code": error.code,
        "category": error.category,
        "details": {k: v for k, v in error.context.items() if k != "error_timestamp"},
    }
    if table:
        body["table"] = table
    return JSONResponse(status_code=error.http_status, content=json.loads(json.dumps(body, default=str)))
