from urllib.parse import urlsplit, urlunsplit


def redact_url(url) -> str:
    """Strip userinfo and query from a URL so it is safe to log."""
    text = str(url)
    try:
        parts = urlsplit(text)
    except ValueError:
        return "<unparseable url>"
    netloc = parts.netloc.rsplit("@", 1)[-1]
    query = "<redacted>" if parts.query else ""
    return urlunsplit((parts.scheme, netloc, parts.path, query, ""))
