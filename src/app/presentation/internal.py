"""
Sandbox-facing surface. Served on its own port and only reachable from the
networks listed in ``INTERNAL_ALLOWED_NETWORKS``.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from src.app.application.services import ToolService
from src.app.domain.models import InternalToolCall
from src.app.presentation.errors import error_body, install_error_handlers
from src.setup.api_config import get_api_settings

logger = logging.getLogger(__name__)


def require_internal_network(request: Request) -> None:
    host = request.client.host if request.client else None
    try:
        address = ipaddress.ip_address(host or "")
    except ValueError:
        address = None
    networks = get_api_settings().INTERNAL_ALLOWED_NETWORKS
    if address is None or not any(address in ipaddress.ip_network(net) for net in networks):
        logger.warning("Rejected internal call from %s", host)
        raise HTTPException(status_code=403, detail="Forbidden")


router = APIRouter(prefix="/internal", tags=["internal"], dependencies=[Depends(require_internal_network)])

_tool_service = ToolService()


class ToolCallResponse(BaseModel):
    correlation_id: str
    output: Any = None


def _bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    return value.strip() if scheme.lower() == "bearer" and value.strip() else None


@router.post("/tool-call", response_model=ToolCallResponse)
async def tool_call(body: InternalToolCall):
    missing = [name for name in ("auth_token", "tool_name") if not getattr(body, name)]
    if missing:
        return JSONResponse(
            status_code=400,
            content=error_body("BadRequest", f"Missing required field(s): {', '.join(missing)}"),
        )
    result = await _tool_service.call_tool(body.auth_token, body.tool_name, body.input, body.deadline)
    return ToolCallResponse(correlation_id=result.correlation_id, output=result.output)


@router.get("/tools")
async def list_tools(authorization: str | None = Header(default=None)) -> list[dict]:
    return await _tool_service.list_tools(_bearer(authorization))


def create_internal_app() -> FastAPI:
    settings = get_api_settings()
    app = FastAPI(
        title=f"{settings.APP_NAME}-internal",
        version=settings.APP_VERSION,
        description="Tool calls issued by sandboxed task code",
        docs_url=None,
        redoc_url=None,
    )
    install_error_handlers(app, validation_as_bad_request=True)
    app.include_router(router, prefix="")
    return app
