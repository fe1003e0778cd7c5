"""Turns request descriptors into transport-ready requests."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from urllib3 import encode_multipart_formdata

from bm.network import serde
from bm.network.errors import APIError, APIErrorType
from bm.network.models import (
    BinaryPart,
    Download,
    DownloadResumable,
    EncodedBody,
    EncodedRequest,
    Parameters,
    Plain,
    RequestDescriptor,
    TextPart,
    UploadFile,
    UploadMultipart,
)

ALLOWED_SCHEMES = ("http", "https")

# Replaced by the multipart content type (with its boundary) and body length
_MULTIPART_MANAGED_HEADERS = frozenset({"content-type", "content-length"})


def validate_url(url: str) -> str:
    """Return ``url`` if it is an absolute http(s) URL, raise INVALID_URL otherwise."""
    if not url:
        raise APIError(APIErrorType.INVALID_URL, detail="URL is empty.")
    try:
        parts = urlsplit(url)
        parts.port  # noqa: B018 - raises ValueError for a malformed port
    except ValueError as e:
        raise APIError(APIErrorType.INVALID_URL, detail=f"{url!r}: {e}") from e
    if parts.scheme.lower() not in ALLOWED_SCHEMES or not parts.hostname:
        raise APIError(APIErrorType.INVALID_URL, detail=f"{url!r} is not an absolute http(s) URL.")
    return url


def _set_header(headers: Dict[str, str], name: str, value: str) -> None:
    for key in [k for k in headers if k.lower() == name.lower()]:
        del headers[key]
    headers[name] = value


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _query_items(parameters: Mapping[str, Any]) -> Iterator[Tuple[str, str]]:
    for key, value in parameters.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, set, frozenset)):
            for item in value:
                yield key, _query_value(item)
        else:
            yield key, _query_value(value)


def append_query(url: str, parameters: Mapping[str, Any]) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend(_query_items(parameters))
    return urlunsplit(parts._replace(query=urlencode(query)))


class TaskEncoder:
    """Builds an :class:`EncodedRequest` from a :class:`RequestDescriptor`.

    Headers are merged as default < standard < auth, and auth headers are resolved
    on every call so a retried request carries the latest token.
    """

    def encode(self, descriptor: RequestDescriptor) -> EncodedRequest:
        url = validate_url(descriptor.url)
        headers = descriptor.merged_headers()
        task = descriptor.task
        method = descriptor.method.value

        if isinstance(task, Parameters):
            return self._request(descriptor, append_query(url, task.parameters), headers)
        if isinstance(task, EncodedBody):
            return self._encode_body(descriptor, url, headers, task)
        if isinstance(task, UploadFile):
            return self._encode_file(descriptor, url, headers, task)
        if isinstance(task, UploadMultipart):
            return self._encode_multipart(descriptor, url, headers, task)
        if isinstance(task, DownloadResumable):
            if task.resume_offset is not None:
                if task.resume_offset < 0:
                    raise APIError(
                        APIErrorType.DATA_CONVERSION_FAILED,
                        detail=f"Resume offset must not be negative, got {task.resume_offset}.",
                    )
                _set_header(headers, "Range", f"bytes={task.resume_offset}-")
            return self._request(descriptor, url, headers)
        if isinstance(task, (Plain, Download)):
            return self._request(descriptor, url, headers)
        raise TypeError(f"Unsupported request task {type(task).__name__} for {method} {url}")

    @staticmethod
    def _request(descriptor: RequestDescriptor, url: str, headers: Dict[str, str], **kwargs) -> EncodedRequest:
        return EncodedRequest(
            method=descriptor.method.value,
            url=url,
            headers=headers,
            tls_policy=descriptor.tls_policy,
            **kwargs,
        )

    def _encode_body(
        self, descriptor: RequestDescriptor, url: str, headers: Dict[str, str], task: EncodedBody
    ) -> EncodedRequest:
        try:
            content = serde.dumps(task.body)
        except (TypeError, ValueError) as e:
            raise APIError(APIErrorType.DATA_CONVERSION_FAILED, detail=str(e)) from e
        _set_header(headers, "Content-Type", "application/json")
        _set_header(headers, "Content-Length", str(len(content)))
        return self._request(descriptor, url, headers, content=content)

    def _encode_file(
        self, descriptor: RequestDescriptor, url: str, headers: Dict[str, str], task: UploadFile
    ) -> EncodedRequest:
        # Whole file is buffered in memory
        path = Path(task.path)
        if not path.is_file():
            raise APIError(APIErrorType.INVALID_URL, detail=f"File to upload not found: {path}")
        content = path.read_bytes()
        _set_header(headers, "Content-Length", str(len(content)))
        return self._request(descriptor, url, headers, content=content)

    def _encode_multipart(
        self, descriptor: RequestDescriptor, url: str, headers: Dict[str, str], task: UploadMultipart
    ) -> EncodedRequest:
        fields: List[Tuple[str, Any]] = []
        for name, part in task.fields.items():
            if isinstance(part, BinaryPart):
                fields.append((name, (part.filename, part.data, part.mime_type)))
            elif isinstance(part, TextPart):
                fields.append((name, str(part.value)))
            else:
                raise APIError(
                    APIErrorType.DATA_CONVERSION_FAILED,
                    detail=f"Unsupported form part {type(part).__name__} for field {name!r}.",
                )
        content, content_type = encode_multipart_formdata(fields)
        headers = {k: v for k, v in headers.items() if k.lower() not in _MULTIPART_MANAGED_HEADERS}
        headers["Content-Type"] = content_type
        headers["Content-Length"] = str(len(content))
        return self._request(descriptor, url, headers, content=content)
