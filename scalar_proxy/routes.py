import asyncio
import logging
from pathlib import Path

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse, Response
from opentelemetry import trace

from scalar_proxy import vars as config
from scalar_proxy.guard import is_blocked
from scalar_proxy.proxy.forwarder import (
    BODYLESS_METHODS,
    blocked_response,
    cors_headers,
    forward,
    parse_target_url,
    target_host,
)

router = APIRouter()

logger = logging.getLogger("uvicorn.error")

tracer = trace.get_tracer(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"]

# Status recorded when the client went away before the upstream answered
CLIENT_CLOSED_REQUEST = 499


@router.options("/{path:path}")
async def preflight(path: str):
    """Answer CORS preflight for any path without looking at the target."""
    return Response(status_code=204, headers=cors_headers())


@router.api_route("/ping", methods=PROXY_METHODS, response_class=PlainTextResponse)
async def ping():
    return "pong"


@router.api_route("/openapi.yaml", methods=PROXY_METHODS)
def openapi_document():
    try:
        content = Path(config.OPENAPI_DOCUMENT_PATH).read_text(encoding="utf-8")
    except OSError as e:
        logger.error(f"Failed to read {config.OPENAPI_DOCUMENT_PATH}: {e}")
        return PlainTextResponse("Error reading openapi.yaml", status_code=500)
    return Response(content=content, media_type="text/yaml")


async def _wait_for_disconnect(request: Request):
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


async def _cancel_on_disconnect(request: Request, work):
    """
    Run ``work`` until it finishes or the client disconnects, whichever comes
    first. A disconnect cancels the work, aborting any pending resolution or
    upstream call.

    Only for bodyless requests: the receive channel has no body left to
    deliver, so the next message it yields is the disconnect.
    """
    work_task = asyncio.create_task(work)
    disconnect = asyncio.create_task(_wait_for_disconnect(request))
    try:
        await asyncio.wait(
            {work_task, disconnect}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        disconnect.cancel()
        if not work_task.done():
            work_task.cancel()
            await asyncio.wait({work_task})

    if work_task.cancelled():
        logger.info("[Proxy] Client disconnected, request cancelled")
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    return work_task.result()


async def _guard_and_forward(request: Request, target_url, origin):
    with tracer.start_as_current_span("access_guard") as span:
        host = target_host(target_url)
        span.set_attribute("proxy.target_host", host)
        blocked = await is_blocked(host)
        span.set_attribute("proxy.blocked", blocked)

    if blocked:
        return blocked_response(origin)

    return await forward(request, target_url)


@router.api_route("/{path:path}", methods=PROXY_METHODS)
async def proxy(request: Request, path: str):
    """
    Proxy the request to the URL named by the target query parameter.

    The target must be an absolute http(s) URL whose host does not resolve to
    a private or internal address.
    """
    origin = request.headers.get("origin")

    target = request.query_params.get(config.PROXY_URL_PARAM)
    if not target:
        raise HTTPException(
            status_code=400,
            detail=f"Missing {config.PROXY_URL_PARAM}",
            headers=cors_headers(origin),
        )

    target_url = parse_target_url(target)
    if target_url is None:
        raise HTTPException(
            status_code=400, detail="Invalid URL", headers=cors_headers(origin)
        )

    if request.method.upper() in BODYLESS_METHODS:
        return await _cancel_on_disconnect(
            request, _guard_and_forward(request, target_url, origin)
        )
    return await _guard_and_forward(request, target_url, origin)
