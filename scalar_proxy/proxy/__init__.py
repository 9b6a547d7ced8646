from .forwarder import forward, cors_headers

__all__ = ["forward", "cors_headers"]
