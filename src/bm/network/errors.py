"""Error taxonomy of the request pipeline."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from bm.network.status import HTTPStatusCode


class APIErrorType(Enum):
    INVALID_URL = "invalid_url"
    DATA_CONVERSION_FAILED = "data_conversion_failed"
    INDEXED_CONVERSION_FAILED = "indexed_conversion_failed"
    NO_NETWORK = "no_network"
    NETWORK_ERROR = "network_error"
    HTTP_ERROR = "http_error"
    INVALID_RESPONSE = "invalid_response"


_MESSAGES = {
    APIErrorType.INVALID_URL: "Invalid URL formation.",
    APIErrorType.DATA_CONVERSION_FAILED: "Failed to convert data.",
    APIErrorType.INDEXED_CONVERSION_FAILED: "Failed to convert list item.",
    APIErrorType.NO_NETWORK: "No internet connection.",
    APIErrorType.NETWORK_ERROR: "Network error while sending request.",
    APIErrorType.INVALID_RESPONSE: "Invalid response.",
}


class APIError(Exception):
    """Raised (or returned inside a Failure) when a call does not produce a usable result.

    Attributes:
        type: The error kind.
        status_code: Classified status for HTTP_ERROR.
        status: Raw status code of the last response, when there was one.
        detail: Extra context, e.g. the server's error message or the failing converter's message.
    """

    def __init__(
        self,
        type: APIErrorType,
        *,
        status_code: Optional[HTTPStatusCode] = None,
        status: Optional[int] = None,
        detail: Optional[str] = None,
    ):
        self.type = type
        self.status_code = status_code
        self.status = status
        self.detail = detail
        super().__init__(self._format())

    def _format(self) -> str:
        if self.type is APIErrorType.HTTP_ERROR:
            message = f"HTTP Error with status code: {self.status_code.name if self.status_code else None}"
            if self.status is not None:
                message += f" ({self.status})"
        else:
            message = _MESSAGES[self.type]
        if self.detail:
            message += f" {self.detail}"
        return message

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, APIError):
            return NotImplemented
        return (self.type, self.status_code) == (other.type, other.status_code)

    def __hash__(self) -> int:
        return hash((self.type, self.status_code))

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.type.name}, status_code={self.status_code})"

    @classmethod
    def http_error(
        cls, status_code: HTTPStatusCode, status: Optional[int] = None, detail: Optional[str] = None
    ) -> APIError:
        return cls(APIErrorType.HTTP_ERROR, status_code=status_code, status=status, detail=detail)


class IndexedConversionError(APIError):
    """Element ``index`` of a list response could not be converted."""

    def __init__(self, index: int, detail: Optional[str] = None):
        self.index = index
        super().__init__(
            APIErrorType.INDEXED_CONVERSION_FAILED, detail=f"Item {index}: {detail}" if detail else f"Item {index}."
        )
