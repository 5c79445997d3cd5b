"""
共通 — HTTP レスポンスの形式

各サービスの FastAPI エンドポイントが返すレスポンスを統一する。

  成功: {"message": "Successfully finished operation: \"GET\"", "body": ...}
  失敗: {"message": "Failed to perform operation.", "errorMsg": ..., "errorKind": ...}
"""

import json
import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from .errors import ServiceError, ValidationError

logger = logging.getLogger(__name__)


def success(method: str, body: Any) -> dict:
    return {
        "message": f'Successfully finished operation: "{method}"',
        "body": jsonable_encoder(body),
    }


def failure(error: Exception, kind: str) -> dict:
    return {
        "message": "Failed to perform operation.",
        "errorMsg": str(error),
        "errorKind": kind,
    }


async def read_json(request: Request) -> dict:
    """リクエストボディを JSON オブジェクトとして読む。ストアに触る前に検証する。"""
    raw = await request.body()
    try:
        payload = json.loads(raw or b"null")
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError(f"Request body is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        else:
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content=failure(exc, exc.kind))

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception("%s %s failed unexpectedly", request.method, request.url.path)
        return JSONResponse(status_code=500, content=failure(exc, type(exc).__name__))
