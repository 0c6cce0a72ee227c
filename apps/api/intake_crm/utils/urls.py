"""URL helpers."""

from urllib.parse import urlsplit


def safe_url(url: str | None) -> str:
    """Strip query string and credentials before logging a URL."""
    if not url:
        return ""
    parts = urlsplit(url)
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return f"{parts.scheme}://{host}{parts.path}"
