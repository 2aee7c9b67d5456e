import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from .exceptions import InternalServerError

logger = logging.getLogger("ledgerapi")


def _describe(request: Request) -> str:
    client = request.client.host if request.client else "-"
    return f"{request.method} {request.url.path} from {client}"


def _error_body(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "success": False,
        "error": {"code": code, "message": message, "details": details or {}},
    }


def _log_by_status(status_code: int, message: str) -> None:
    # 4xx는 정상적인 업무 거절(잔액 부족, 중복 수령 등)이므로 WARNING
    if status_code >= 500:
        logger.error(message)
    else:
        logger.warning(message)


async def handle_base_api_exception(request, exc):
    _log_by_status(
        exc.status_code,
        f"[{exc.error_code}] {_describe(request)} -> {exc.status_code}: {exc.message} {exc.details or ''}",
    )
    return JSONResponse(status_code=exc.status_code, content=exc.detail)  # type: ignore[arg-type]


async def handle_http_exception(request, exc):
    message = f"[HTTPException] {_describe(request)} -> {exc.status_code}: {exc.detail}"
    if exc.status_code >= 500:
        message += "\n" + "".join(traceback.format_tb(exc.__traceback__))
    _log_by_status(exc.status_code, message)

    if isinstance(exc.detail, dict) and "error" in exc.detail:
        content = exc.detail
    else:
        content = _error_body("HTTP_ERROR", str(exc.detail))
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


async def handle_validation_error(request, exc):
    # ctx에는 직렬화되지 않는 예외 객체가 들어갈 수 있음
    errors = [{k: v for k, v in e.items() if k != "ctx"} for e in exc.errors()]
    logger.warning(f"[VALIDATION_001] {_describe(request)} -> 422: {errors}")
    return JSONResponse(
        status_code=422,
        content=_error_body("VALIDATION_001", "Validation failed", {"errors": errors}),
    )


async def handle_unexpected_error(request, exc):
    tb_str = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    logger.error(
        f"[Unhandled {type(exc).__name__}] {_describe(request)}: {str(exc)}\n{tb_str}"
    )

    internal = InternalServerError()
    return JSONResponse(status_code=internal.status_code, content=internal.detail)  # type: ignore[arg-type]
