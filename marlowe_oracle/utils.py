"""Shared utilities for the Marlowe Oracle Service."""

import logging
from datetime import datetime, timezone

import httpx

from .errors import RequestError

MASK = "********"


def check_response(resp: httpx.Response, name: str) -> httpx.Response:
    """Raise ``RequestError`` carrying status and body for any non-2xx response."""
    try:
        resp.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise RequestError(
            name,
            f"{resp.request.method} {resp.request.url} returned {resp.status_code}",
            status=resp.status_code,
            body=resp.text,
        ) from e
    return resp


def wrap_transport_error(e: httpx.HTTPError, name: str) -> RequestError:
    """Convert a connection-level failure into a ``RequestError`` without status."""
    return RequestError(name, f"{type(e).__name__}: {e}")


def to_posix_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def from_posix_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def to_iso(moment: datetime) -> str:
    """ISO-8601 with millisecond precision and a ``Z`` suffix, as the runtime expects."""
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class SecretMaskingFilter(logging.Filter):
    """Replace configured secrets (API keys, private URLs) in log records."""

    def __init__(self, secrets: list[str]):
        super().__init__()
        self.secrets = [s for s in secrets if s]

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.secrets:
            return True
        message = record.getMessage()
        masked = message
        for secret in self.secrets:
            masked = masked.replace(secret, MASK)
        if masked != message:
            record.msg = masked
            record.args = None
        return True
