from typing import Dict, Iterable, Optional
from urllib.parse import urlparse

# Discovery documents and the OAuth endpoints MCP clients call from browsers.
PUBLIC_PATH_PREFIXES = ("/.well-known/", "/api/oauth/")


def get_cors_headers(
    origin_value: Optional[str],
    path: str,
    allowed_origins: Iterable[str],
    debug: bool,
) -> Dict[str, str]:
    """Return appropriate CORS headers based on origin and path."""
    allowed_debug_hosts = {
        "localhost",
        "127.0.0.1",
    }

    headers = {
        "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": (
            "Keep-Alive, User-Agent, X-Requested-With, "
            "If-Modified-Since, Cache-Control, Content-Type, "
            "Authorization, Mcp-Protocol-Version"
        ),
        "Vary": "Origin",
    }

    if path.startswith(PUBLIC_PATH_PREFIXES):
        headers["Access-Control-Allow-Origin"] = "*"
    elif origin_value:
        parsed = urlparse(origin_value)
        base = (
            f"{parsed.scheme}://{parsed.netloc}"
            if parsed.scheme and parsed.netloc
            else origin_value
        )

        if base in set(allowed_origins):
            headers["Access-Control-Allow-Origin"] = origin_value
            headers["Access-Control-Allow-Credentials"] = "true"
        elif debug and parsed.hostname in allowed_debug_hosts:
            headers["Access-Control-Allow-Origin"] = origin_value
            headers["Access-Control-Allow-Credentials"] = "true"

    return headers
