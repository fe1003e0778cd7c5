"""Request/response logging for the network pipeline.

Events go to the ``bm.network.logger`` logger at DEBUG level and, when given, to a
sink callable receiving each event as a dict. Logging never changes the outcome of
a call: a failing sink is reported and ignored.
"""

import json
import logging
from typing import Any, Callable, Dict, Mapping, Optional

from bm.network.models import EncodedRequest

logger = logging.getLogger(__name__)

LogSink = Callable[[Dict[str, Any]], None]

SENSITIVE_HEADERS = frozenset({"authorization", "proxy-authorization", "cookie", "set-cookie"})
MASK = "***"
MAX_BODY_LOG_LENGTH = 4096


def mask_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {k: MASK if k.lower() in SENSITIVE_HEADERS else v for k, v in headers.items()}


def _preview_body(body: Optional[bytes]) -> Optional[str]:
    if not body:
        return None
    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError:
        return f"<{len(body)} bytes>"
    try:
        text = json.dumps(json.loads(text), indent=2, ensure_ascii=False)
    except ValueError:
        pass
    if len(text) > MAX_BODY_LOG_LENGTH:
        return text[:MAX_BODY_LOG_LENGTH] + "... (truncated)"
    return text


class NetworkLogger:
    def __init__(self, *, enabled: bool = True, sink: Optional[LogSink] = None, log_bodies: bool = True):
        self.enabled = enabled
        self.sink = sink
        self.log_bodies = log_bodies

    def _emit(self, event: Dict[str, Any], message: str) -> None:
        logger.debug(message)
        if self.sink is None:
            return
        try:
            self.sink(event)
        except Exception as e:
            logger.warning(f"Network log sink failed: {e}")

    def log_request(self, request: EncodedRequest, *, description: Optional[str] = None) -> None:
        if not self.enabled:
            return
        headers = mask_headers(request.headers)
        body = _preview_body(request.content) if self.log_bodies else None
        event = {
            "event": "request",
            "method": request.method,
            "url": request.url,
            "headers": headers,
            "body": body,
            "description": description,
        }
        message = f"Will send {request.method} request for {request.url}"
        if description:
            message += f" ({description})"
        if headers:
            message += "\nHeaders:\n" + "\n".join(f"{k} : {v}" for k, v in headers.items())
        if body:
            message += f"\nBody: {body}"
        self._emit(event, message)

    def log_response(
        self,
        *,
        method: str,
        url: str,
        status_code: Optional[int] = None,
        body: Optional[bytes] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        if not self.enabled:
            return
        preview = _preview_body(body) if self.log_bodies else None
        event = {
            "event": "response",
            "method": method,
            "url": url,
            "status_code": status_code,
            "body": preview,
            "error": repr(error) if error is not None else None,
        }
        if error is not None:
            message = f"Request {method} {url} failed: {error!r}"
        else:
            message = f"Received {status_code} for {method} {url}"
            if preview:
                message += f"\nBody: {preview}"
        self._emit(event, message)
