import logging
from typing import Dict, List, Optional, Tuple

import httpx
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse, Response
from opentelemetry import trace

from scalar_proxy import vars as config
from scalar_proxy.guard import is_blocked
from scalar_proxy.utils import redact_url
from scalar_proxy.utils.traced_requests import traced_request

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# Request headers that describe the inbound hop, not the outbound call
INBOUND_ONLY_HEADERS = {"host", "origin", "accept-encoding"}

# The body is handed back decoded and re-measured
BODY_FRAMING_HEADERS = {"content-length", "content-encoding"}

UPSTREAM_CORS_HEADERS = {
    "access-control-allow-origin",
    "access-control-allow-credentials",
    "access-control-allow-methods",
    "access-control-allow-headers",
    "access-control-expose-headers",
}

ALLOWED_METHODS = "GET, POST, PUT, PATCH, DELETE, OPTIONS"
BODYLESS_METHODS = {"GET", "HEAD"}

# Diagnostic header carrying the URL that was finally fetched
FINAL_URL_HEADER = "X-Forwarded-Host"

BLOCKED_MESSAGE = "Forbidden: private network access"


def cors_headers(origin: Optional[str] = None) -> Dict[str, str]:
    """CORS headers the proxy puts on every response it produces."""
    return {
        "Access-Control-Allow-Origin": origin or "*",
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Allow-Methods": ALLOWED_METHODS,
        "Access-Control-Allow-Headers": "*",
        "Access-Control-Expose-Headers": "*",
    }


def blocked_response(origin: Optional[str] = None) -> JSONResponse:
    return JSONResponse(
        status_code=403,
        content={"error": BLOCKED_MESSAGE},
        headers=cors_headers(origin),
    )


def parse_target_url(value: str) -> Optional[httpx.URL]:
    """Parse the caller-supplied target; None unless it is an absolute http(s) URL."""
    try:
        url = httpx.URL(value)
    except (httpx.InvalidURL, TypeError, ValueError):
        return None
    if url.scheme not in ("http", "https") or not url.raw_host:
        return None
    return url


def target_host(url: httpx.URL) -> str:
    """Return ``host[:port]`` for a URL, bracketing IPv6 literals."""
    host = url.raw_host.decode("ascii")
    if ":" in host:
        host = f"[{host}]"
    return f"{host}:{url.port}" if url.port is not None else host


def prepare_headers(request: Request) -> httpx.Headers:
    """
    Prepare headers for forwarding to the target.

    Drops hop-by-hop headers and those describing the inbound hop (Origin,
    Host), and moves the renamed cookie header into Cookie.
    """
    headers = httpx.Headers(
        [
            (name, value)
            for name, value in request.headers.items()
            if name.lower() not in HOP_BY_HOP_HEADERS
            and name.lower() not in INBOUND_ONLY_HEADERS
        ]
    )

    renamed_cookie = headers.get(config.COOKIE_HEADER)
    if renamed_cookie is not None:
        headers["cookie"] = renamed_cookie
        del headers[config.COOKIE_HEADER]

    if request.method.upper() in BODYLESS_METHODS:
        headers.pop("content-length", None)

    return headers


def outbound_body(request: Request):
    """Inbound body as a stream, or None when the request must not carry one."""
    if request.method.upper() in BODYLESS_METHODS:
        return None
    if "content-length" not in request.headers and "transfer-encoding" not in request.headers:
        return None
    return request.stream()


def rewrite_response_headers(
    upstream_headers: httpx.Headers, origin: Optional[str], final_url
) -> List[Tuple[str, str]]:
    """
    Build the client-facing header list from the upstream response headers.

    Multi-valued headers such as Set-Cookie are kept. Upstream CORS headers
    are replaced by the proxy's own.
    """
    rewritten = []
    for name, value in upstream_headers.multi_items():
        name_lower = name.lower()
        if (
            name_lower in HOP_BY_HOP_HEADERS
            or name_lower in BODY_FRAMING_HEADERS
            or name_lower in UPSTREAM_CORS_HEADERS
            or name_lower == FINAL_URL_HEADER.lower()
        ):
            continue
        rewritten.append((name_lower, value))

    rewritten.extend(cors_headers(origin).items())
    rewritten.append((FINAL_URL_HEADER, str(final_url)))
    return rewritten


def build_client() -> httpx.AsyncClient:
    # Caller-chosen targets get neither .netrc credentials nor env proxies
    return httpx.AsyncClient(
        timeout=httpx.Timeout(config.PROXY_TIMEOUT),
        follow_redirects=False,
        trust_env=False,
    )


def same_origin(url: httpx.URL, other: httpx.URL) -> bool:
    return (
        url.scheme == other.scheme
        and url.host == other.host
        and url.port == other.port
    )


def _restore_cookie(next_request: httpx.Request, cookie: str) -> None:
    # httpx rebuilds Cookie on redirects from its own (per-call) jar only
    jar_cookie = next_request.headers.get("cookie")
    next_request.headers["cookie"] = f"{cookie}; {jar_cookie}" if jar_cookie else cookie


async def _send_checked(
    client: httpx.AsyncClient, outbound: httpx.Request, span
) -> Optional[httpx.Response]:
    """
    Send a request and follow redirects, clearing every hop with the access
    guard. Returns None when a hop points at a disallowed host.

    The forwarded cookie goes along only to hops on the target's own origin.
    """
    cookie = outbound.headers.get("cookie")
    upstream = await client.send(outbound)
    redirects = 0
    while upstream.next_request is not None:
        redirects += 1
        if redirects > config.MAX_REDIRECTS:
            raise httpx.TooManyRedirects(
                f"Exceeded {config.MAX_REDIRECTS} redirects", request=upstream.next_request
            )

        next_request = upstream.next_request
        logger.debug(
            f"[Proxy] {upstream.status_code} redirect -> {redact_url(next_request.url)}"
        )
        if await is_blocked(target_host(next_request.url)):
            span.set_attribute("proxy.error", "redirect_blocked")
            logger.warning(
                f"[Proxy] Refusing redirect to {redact_url(next_request.url)}"
            )
            return None
        if cookie is not None and same_origin(next_request.url, outbound.url):
            _restore_cookie(next_request, cookie)
        upstream = await client.send(next_request)

    span.set_attribute("proxy.redirects", redirects)
    return upstream


async def forward(request: Request, target_url: httpx.URL) -> Response:
    """
    Relay the inbound request to ``target_url`` and return the buffered,
    CORS-normalized upstream response.

    The caller must already have cleared ``target_url`` with the access guard.
    Transport failures surface as HTTPException (504 on timeout, 502 otherwise).
    """
    method = request.method.upper()
    origin = request.headers.get("origin")
    headers = prepare_headers(request)

    with traced_request(
        tracer,
        "proxy_request",
        method,
        target_url,
        extra_attrs={"proxy.target_host": target_host(target_url)},
    ) as span:
        try:
            async with build_client() as client:
                outbound = client.build_request(
                    method,
                    target_url,
                    headers=headers,
                    content=outbound_body(request),
                )
                upstream = await _send_checked(client, outbound, span)
                if upstream is None:
                    return blocked_response(origin)

                body = upstream.content

        except httpx.TimeoutException as e:
            logger.error(f"[Proxy] Timeout for {redact_url(target_url)}: {e}")
            span.set_attribute("proxy.error", "timeout")
            raise HTTPException(
                status_code=504, detail="Gateway timeout", headers=cors_headers(origin)
            )

        except httpx.ConnectError as e:
            logger.error(f"[Proxy] Failed to connect to {redact_url(target_url)}: {e}")
            span.set_attribute("proxy.error", "connection_failed")
            raise HTTPException(
                status_code=502, detail="Bad gateway - cannot connect to target",
                headers=cors_headers(origin),
            )

        except httpx.TooManyRedirects as e:
            logger.error(f"[Proxy] {e} for {redact_url(target_url)}")
            span.set_attribute("proxy.error", "too_many_redirects")
            raise HTTPException(
                status_code=502, detail="Bad gateway - too many redirects",
                headers=cors_headers(origin),
            )

        except (httpx.HTTPError, httpx.StreamError) as e:
            logger.error(
                f"[Proxy] Upstream error for {redact_url(target_url)}: {e!r}",
                exc_info=True,
            )
            span.set_attribute("proxy.error", type(e).__name__)
            raise HTTPException(
                status_code=502, detail="Bad gateway", headers=cors_headers(origin)
            )

        span.set_attribute("proxy.status_code", upstream.status_code)
        span.set_attribute("proxy.final_url", redact_url(upstream.url))

        response = Response(content=body, status_code=upstream.status_code)
        for name, value in rewrite_response_headers(
            upstream.headers, origin, upstream.url
        ):
            response.headers.append(name, value)
        # A HEAD body is empty, so report the upstream length unless it
        # measures an encoding that was stripped
        if (
            method == "HEAD"
            and "content-length" in upstream.headers
            and "content-encoding" not in upstream.headers
        ):
            response.headers["content-length"] = upstream.headers["content-length"]
        return response
