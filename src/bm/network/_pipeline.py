"""Transport-independent steps shared by the sync and async executors."""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path, PurePosixPath
from typing import Any, Mapping, Optional, Union
from urllib.parse import unquote, urlsplit

from bm.network.converters import ConverterRegistry
from bm.network.cookies import parse_set_cookie_header
from bm.network.errors import APIError, APIErrorType
from bm.network.models import EncodedRequest, NetworkResponse, RawResponse
from bm.network.pinning import CertificatePinningError
from bm.network.status import HTTPStatusCode

logger = logging.getLogger(__name__)

DEFAULT_DOWNLOAD_NAME = "download"

_CONTENT_RANGE = re.compile(r"^\s*bytes\s+(\d+)-\d+/(?:\d+|\*)\s*$", re.IGNORECASE)


def error_detail(content: bytes) -> Optional[str]:
    """Try to get the error message from a response body."""
    if not content:
        return None
    try:
        js = json.loads(content)
        err_message = js.get("message", js) if isinstance(js, dict) else js
    except (ValueError, UnicodeDecodeError):
        err_message = content.decode("utf-8", errors="replace")
    return f"Got error in response: '{err_message}'"


def http_error(category: HTTPStatusCode, status: int, content: bytes = b"") -> APIError:
    return APIError.http_error(category, status=status, detail=error_detail(content))


def network_response(data: Any, status_code: int, headers: Mapping[str, str]) -> NetworkResponse:
    raw_set_cookie = headers.get("set-cookie")
    return NetworkResponse(
        data=data,
        status_code=status_code,
        headers=headers,
        raw_set_cookie_header=raw_set_cookie,
        cookies=parse_set_cookie_header(raw_set_cookie),
    )


def decode_response(converters: ConverterRegistry, response: RawResponse, cls: Any) -> NetworkResponse:
    return network_response(converters.decode(response.content, cls), response.status_code, response.headers)


def wrap_unexpected(error: Exception) -> APIError:
    """Anything that is not already an APIError becomes INVALID_RESPONSE."""
    if isinstance(error, APIError):
        return error
    logger.exception("Unexpected error in request pipeline")
    wrapped = APIError(APIErrorType.INVALID_RESPONSE, detail=repr(error))
    wrapped.__cause__ = error
    return wrapped


def download_path(remote_url: str, destination: Union[str, os.PathLike, None] = None) -> Path:
    """Where to store a download.

    No destination means the system temp dir; a directory gets the last segment of
    the URL path as file name.
    """
    name = PurePosixPath(unquote(urlsplit(remote_url).path)).name or DEFAULT_DOWNLOAD_NAME
    if destination is None:
        return Path(tempfile.gettempdir()).resolve() / name
    path = Path(destination).expanduser()
    if path.is_dir():
        return path.resolve() / name
    return path.resolve()


def content_range_start(headers: Mapping[str, str]) -> Optional[int]:
    """First byte position of a ``Content-Range: bytes <first>-<last>/<length>`` header, if any."""
    match = _CONTENT_RANGE.match(headers.get("content-range") or "")
    return int(match.group(1)) if match else None


def resume_append(status_code: int, headers: Mapping[str, str], resume_offset: Optional[int], path: Path) -> bool:
    """Whether the response body continues the partial file at ``path``.

    A 206 answer to a ranged request appends, after cutting the file back to the
    offset when it is longer. Anything else rewrites the file.

    Raises:
        APIError: DATA_CONVERSION_FAILED when the partial content does not line up with the file
    """
    if not resume_offset or status_code != 206:
        return False
    start = content_range_start(headers)
    if start is not None and start != resume_offset:
        raise APIError(
            APIErrorType.DATA_CONVERSION_FAILED,
            detail=f"Partial content starts at byte {start}, requested {resume_offset}.",
        )
    size = path.stat().st_size if path.exists() else 0
    if size < resume_offset:
        raise APIError(
            APIErrorType.DATA_CONVERSION_FAILED,
            detail=f"Cannot resume {path} at byte {resume_offset}, it holds {size} bytes.",
        )
    if size > resume_offset:
        logger.debug(f"Truncating {path} from {size} to {resume_offset} bytes before resuming")
        os.truncate(path, resume_offset)
    return True


def _is_pinning_failure(error: BaseException) -> bool:
    """Look for a pinning rejection among the causes the HTTP libraries wrap around it."""
    pending = [error]
    seen = set()
    while pending:
        current = pending.pop()
        if id(current) in seen:
            continue
        if isinstance(current, CertificatePinningError):
            return True
        seen.add(id(current))
        candidates = [current.__cause__, current.__context__, getattr(current, "reason", None), *current.args]
        pending.extend(c for c in candidates if isinstance(c, BaseException))
    return False


def network_error(request: EncodedRequest, error: BaseException) -> APIError:
    """Translate a transport exception into NETWORK_ERROR, keeping it as the cause."""
    if _is_pinning_failure(error):
        detail = f"Certificate pinning rejected {request.url}"
    else:
        detail = f"{request.method} {request.url}: {error}"
    api_error = APIError(APIErrorType.NETWORK_ERROR, detail=detail)
    api_error.__cause__ = error
    return api_error
