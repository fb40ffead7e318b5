"""
両サービス共通の構造化エラーボディ

    {"status": 409, "message": "...", "details": [...], "path": "/...", "timestamp": "..."}

例外クラス名やスタックトレースはクライアントに返さず、サーバーログにだけ残す。
"""

import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .results import ErrorKindBase, Failure

logger = logging.getLogger(__name__)


class ErrorResponse(BaseModel):
    status: int
    message: str
    details: list[str] = Field(default_factory=list)
    path: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def error_response(failure: Failure, request: Request | None = None) -> JSONResponse:
    body = ErrorResponse(
        status=failure.http_status,
        message=failure.message,
        details=failure.details,
        path=request.url.path if request is not None else None,
    )
    return JSONResponse(status_code=failure.http_status, content=body.model_dump(mode="json"))


def install_error_handlers(app: FastAPI, invalid_request: ErrorKindBase) -> None:
    """リクエストの検証エラーは ``invalid_request`` に、未処理の例外は 500 に変換する。"""

    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        details = [
            f"{'.'.join(str(part) for part in err['loc'] if part != 'body')}: {err['msg']}"
            for err in exc.errors()
        ]
        return error_response(Failure(invalid_request, details=details), request)

    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled error on %s %s", request.method, request.url.path, exc_info=exc
        )
        body = ErrorResponse(status=500, message="Internal server error", path=request.url.path)
        return JSONResponse(status_code=500, content=body.model_dump(mode="json"))

    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
