import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "exchange-bypass-gateway")
GATEWAY_MODE = os.getenv("GATEWAY_MODE", "REST + WebSocket Relay")
HOST = os.environ.get("HOSTNAME", "0.0.0.0")
PORT = int(os.environ.get("PORT", "3000"))

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")

# Upstream HTTP calls are bounded to 8-20 seconds
UPSTREAM_TIMEOUT = min(20.0, max(8.0, float(os.getenv("UPSTREAM_TIMEOUT", "10"))))

PRICE_CACHE_TTL = float(os.getenv("PRICE_CACHE_TTL", "2.0"))
STATS_CACHE_TTL = float(os.getenv("STATS_CACHE_TTL", "5.0"))
STALE_CACHE_TTL = float(os.getenv("STALE_CACHE_TTL", "60.0"))
RATE_LIMIT_WINDOW = float(os.getenv("RATE_LIMIT_WINDOW", "60.0"))
RETRY_AFTER_SECONDS = int(os.getenv("RETRY_AFTER_SECONDS", "5"))
DIAGNOSTIC_PEEK_BYTES = int(os.getenv("DIAGNOSTIC_PEEK_BYTES", "2000"))

WAF_HARDENED_PREFIXES = [
    p.strip()
    for p in os.getenv("WAF_HARDENED_PREFIXES", "/futures/data/").split(",")
    if p.strip()
]

DEFAULT_USER_AGENT = os.getenv(
    "DEFAULT_USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
)
DEFAULT_ACCEPT = os.getenv("DEFAULT_ACCEPT", "application/json, text/plain, */*")
DEFAULT_ACCEPT_LANGUAGE = os.getenv("DEFAULT_ACCEPT_LANGUAGE", "en-US,en;q=0.9")

WS_OPEN_TIMEOUT = float(os.getenv("WS_OPEN_TIMEOUT", "10"))

CORS_ALLOW_ORIGINS = [
    o.strip() for o in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",") if o.strip()
]

TOP_SYMBOLS_LIMIT = int(os.getenv("TOP_SYMBOLS_LIMIT", "100"))
