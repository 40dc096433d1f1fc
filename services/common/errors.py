"""
Common — エラー体系

サービス層の関数はこれらを送出する。各 FastAPI アプリは下のハンドラを
登録するので、コントローラがエラーレスポンスを手で組み立てることはない。
レスポンスは単一の JSON ボディ: {"error": "<message>"}
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    """入力不正・欠落、在庫不足、存在しない商品の参照"""
    status_code = 400


class NotFoundError(ServiceError):
    status_code = 404


class DownstreamUnavailable(ServiceError):
    """他サービス呼び出しの失敗（通信エラーまたは 5xx）"""
    status_code = 502


class PersistenceFailure(ServiceError):
    status_code = 500


class EventPublishFailure(ServiceError):
    status_code = 503


async def _service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def _request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{location}: {err.get('msg')}" if location else err.get("msg"))
    return JSONResponse(status_code=400, content={"error": "; ".join(problems)})


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, _service_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
