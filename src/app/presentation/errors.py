from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.app.domain.exceptions import (
    GatewayError,
    TaskAccessDeniedError,
    TaskNotFoundError,
    TaskStateError,
)

STATUS_BY_KIND: dict[str, int] = {
    "Unauthorized": 401,
    "Expired": 401,
    "Revoked": 401,
    "UnknownTool": 404,
    "TooManyConcurrentCalls": 429,
    "Overloaded": 429,
    "Unavailable": 503,
    "BackendUnavailable": 503,
    "Timeout": 504,
    "ProtocolError": 502,
    "ProcessExited": 502,
    "ToolError": 502,
}


def error_body(kind: str, message: str) -> dict:
    return {"error": {"kind": kind, "message": message}}


def status_for(error: GatewayError) -> int:
    return STATUS_BY_KIND.get(error.kind, 500)


async def _gateway_error(request: Request, exc: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=status_for(exc), content=error_body(exc.kind, exc.message))


async def _task_not_found(request: Request, exc: TaskNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content=error_body("TaskNotFound", str(exc)))


async def _task_access_denied(request: Request, exc: TaskAccessDeniedError) -> JSONResponse:
    return JSONResponse(status_code=403, content=error_body("TaskAccessDenied", str(exc)))


async def _task_state(request: Request, exc: TaskStateError) -> JSONResponse:
    return JSONResponse(status_code=409, content=error_body("TaskState", str(exc)))


async def _bad_request(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = sorted({".".join(str(part) for part in error["loc"][1:]) for error in exc.errors()})
    message = f"Invalid request: {', '.join(fields)}" if fields else "Invalid request body"
    return JSONResponse(status_code=400, content=error_body("BadRequest", message))


def install_error_handlers(app: FastAPI, *, validation_as_bad_request: bool = False) -> None:
    """Register the domain exception → HTTP response mapping on ``app``."""
    app.add_exception_handler(GatewayError, _gateway_error)
    app.add_exception_handler(TaskNotFoundError, _task_not_found)
    app.add_exception_handler(TaskAccessDeniedError, _task_access_denied)
    app.add_exception_handler(TaskStateError, _task_state)
    if validation_as_bad_request:
        app.add_exception_handler(RequestValidationError, _bad_request)
