"""Request and response value types of the network pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from http.cookies import Morsel
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, TypeVar, Union

from bm.network import DEFAULT_HEADERS
from bm.network.pinning import PinningPolicy

T = TypeVar("T")


class HTTPMethod(Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    PATCH = "PATCH"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"
    TRACE = "TRACE"
    CONNECT = "CONNECT"


# Multipart form parts


@dataclass(frozen=True)
class BinaryPart:
    data: bytes
    filename: str
    mime_type: str


@dataclass(frozen=True)
class TextPart:
    value: Any


FormPart = Union[BinaryPart, TextPart]


# Request tasks, i.e. the payload shape of a request


@dataclass(frozen=True)
class Plain:
    pass


@dataclass(frozen=True)
class Parameters:
    parameters: Mapping[str, Any]


@dataclass(frozen=True)
class EncodedBody:
    body: Any


@dataclass(frozen=True)
class UploadFile:
    path: Union[str, Path]


@dataclass(frozen=True)
class UploadMultipart:
    fields: Mapping[str, FormPart]


@dataclass(frozen=True)
class Download:
    url: str


@dataclass(frozen=True)
class DownloadResumable:
    resume_offset: Optional[int] = None


Task = Union[Plain, Parameters, EncodedBody, UploadFile, UploadMultipart, Download, DownloadResumable]

HeaderSource = Union[Mapping[str, str], Callable[[], Mapping[str, str]]]


@dataclass(frozen=True)
class RequestDescriptor:
    """Declarative description of one network call.

    ``auth_headers`` may be a mapping or a zero-argument callable. A callable is
    evaluated every time the request is encoded, so a token persisted by a refresh
    handler is picked up when the request is retried.

    ``is_authorized`` marks calls allowed to trigger a token refresh on 401.
    """

    method: HTTPMethod
    base_url: str
    path: str = ""
    task: Task = field(default_factory=Plain)
    headers: Mapping[str, str] = field(default_factory=dict)
    auth_headers: HeaderSource = field(default_factory=dict)
    is_authorized: bool = False
    tls_policy: Optional[PinningPolicy] = None

    def __post_init__(self):
        if isinstance(self.method, str):
            object.__setattr__(self, "method", HTTPMethod(self.method.upper()))

    @property
    def url(self) -> str:
        return self.base_url + self.path

    def resolve_auth_headers(self) -> Dict[str, str]:
        source = self.auth_headers
        if callable(source):
            source = source()
        return dict(source or {})

    def merged_headers(self) -> Dict[str, str]:
        """Default headers, overridden by standard headers, overridden by auth headers.

        Header names are compared case-insensitively; the later spelling wins.
        """
        merged: Dict[str, str] = {}
        for source in (DEFAULT_HEADERS, self.headers, self.resolve_auth_headers()):
            for name, value in source.items():
                for existing in [k for k in merged if k.lower() == name.lower()]:
                    del merged[existing]
                merged[name] = value
        return merged

    @property
    def task_description(self) -> str:
        task = self.task
        if isinstance(task, Parameters):
            return f"Parameters: {dict(task.parameters)}"
        if isinstance(task, EncodedBody):
            return f"Body: {task.body}"
        if isinstance(task, UploadFile):
            return f"Upload file: {task.path}"
        if isinstance(task, UploadMultipart):
            return f"Multipart fields: {list(task.fields)}"
        if isinstance(task, Download):
            return f"Download from: {task.url}"
        if isinstance(task, DownloadResumable):
            return f"Resumable download with offset: {task.resume_offset}"
        return "Plain request"


@dataclass(frozen=True)
class EncodedRequest:
    """Transport-ready request. Built fresh for every attempt, never mutated."""

    method: str
    url: str
    headers: Dict[str, str]
    content: Optional[bytes] = None
    tls_policy: Optional[PinningPolicy] = None

    @property
    def is_multipart(self) -> bool:
        content_type = next((v for k, v in self.headers.items() if k.lower() == "content-type"), "")
        return content_type.startswith("multipart/")


@dataclass(frozen=True)
class RawResponse:
    status_code: int
    headers: Mapping[str, str]
    content: bytes
    url: str

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class NetworkResponse(Generic[T]):
    """Decoded data together with the response metadata it came with."""

    data: T
    status_code: int
    headers: Mapping[str, str]
    raw_set_cookie_header: Optional[str] = None
    cookies: List[Morsel] = field(default_factory=list)

    @property
    def cookie_header(self) -> Optional[str]:
        """Value usable as a ``Cookie`` request header, or None when no cookies were set."""
        if not self.cookies:
            return None
        return "; ".join(f"{c.key}={c.value}" for c in self.cookies)


@dataclass(frozen=True)
class DownloadedFile:
    path: Path
    remote_url: str
    status_code: int
    headers: Mapping[str, str] = field(default_factory=dict)
    resumed: bool = False

    def to_json(self) -> dict:
        return {
            "downloadedUrl": self.path.as_uri(),
            "remoteUrl": self.remote_url,
        }
