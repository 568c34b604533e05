"""HTTP delivery of span records to the collector."""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Any, Mapping, MutableMapping, Optional, Protocol
import urllib.error
import urllib.request

from .errors import DeliveryFailure

_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class HttpResponse:
    """Lightweight HTTP response wrapper."""

    status_code: int
    text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class HTTPSession:
    """Minimal urllib-backed session that posts JSON documents."""

    def __init__(self, headers: Optional[Mapping[str, str]] = None) -> None:
        self.headers: MutableMapping[str, str] = dict(headers or {})

    def post_json(self, url: str, payload: Any, *, timeout: float) -> HttpResponse:
        request_headers = dict(self.headers)
        request_headers.setdefault("Content-Type", "application/json")
        body = json.dumps(payload, default=str).encode("utf-8")
        request = urllib.request.Request(url, data=body, headers=request_headers, method="POST")
        try:
            with urllib.request.urlopen(request, timeout=timeout) as response:
                return HttpResponse(status_code=response.status, text=response.read().decode("utf-8"))
        except urllib.error.HTTPError as err:
            text = err.read().decode("utf-8") if err.fp else ""
            return HttpResponse(status_code=err.code, text=text)
        except (urllib.error.URLError, OSError) as err:
            raise DeliveryFailure(f"POST {url} failed: {getattr(err, 'reason', err)}") from err


class SpanTransport(Protocol):
    """Sends one serialised span; raises :class:`DeliveryFailure` on error."""

    def send(self, payload: Mapping[str, Any], *, timeout: float) -> None:
        ...


class HttpSpanTransport:
    """Authenticated POST of span payloads to ``{base_url}/v1/traces``."""

    def __init__(self, base_url: str, api_key: str, *, session: Optional[HTTPSession] = None) -> None:
        self.endpoint = f"{base_url.rstrip('/')}/v1/traces"
        self._session = session or HTTPSession()
        self._session.headers["Authorization"] = f"Bearer {api_key}"

    def send(self, payload: Mapping[str, Any], *, timeout: float) -> None:
        response = self._session.post_json(self.endpoint, dict(payload), timeout=timeout)
        if not response.ok:
            raise DeliveryFailure(
                f"collector rejected span with status {response.status_code}",
                status_code=response.status_code,
            )
        _LOGGER.debug("Span delivered", extra={"span_id": payload.get("span_id")})


__all__ = ["HTTPSession", "HttpResponse", "HttpSpanTransport", "SpanTransport"]
