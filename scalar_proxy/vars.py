import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "scalar-proxy")
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8080"))

# Query parameter carrying the absolute URL to proxy
PROXY_URL_PARAM = os.environ.get("PROXY_URL_PARAM", "scalar_url")
# Browsers will not let a page set Cookie for another site, so clients send
# the target's cookies under this name instead
COOKIE_HEADER = os.environ.get("COOKIE_HEADER", "x-scalar-cookie").lower()

PROXY_TIMEOUT = float(os.getenv("PROXY_TIMEOUT", "30"))
RESOLVE_TIMEOUT = float(os.getenv("RESOLVE_TIMEOUT", "5"))
MAX_REDIRECTS = int(os.getenv("MAX_REDIRECTS", "20"))

OPENAPI_DOCUMENT_PATH = os.getenv("OPENAPI_DOCUMENT_PATH", "public/openapi.yaml")

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
