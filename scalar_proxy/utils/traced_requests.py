import logging
from typing import Optional, Dict
from contextlib import contextmanager

from opentelemetry.trace import Tracer

from scalar_proxy.utils import redact_url

logger = logging.getLogger("uvicorn.error")


@contextmanager
def traced_request(
    tracer: Tracer,
    operation: str,
    method: str,
    target_url,
    extra_attrs: Optional[Dict] = None,
):
    """Context manager to create a span, set common proxy attributes, and log the call."""
    safe_url = redact_url(target_url)
    with tracer.start_as_current_span(operation) as span:
        span.set_attribute("proxy.method", method)
        span.set_attribute("proxy.target_url", safe_url)
        if extra_attrs:
            for k, v in extra_attrs.items():
                span.set_attribute(k, v)
        logger.info(f"[Proxy] {method} -> {safe_url}")
        yield span
