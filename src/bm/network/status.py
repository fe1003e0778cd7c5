"""Coarse classification of HTTP status codes."""

from enum import Enum


class HTTPStatusCode(Enum):
    INFORMATIONAL = "informational"
    SUCCESS = "success"
    REDIRECT = "redirect"
    NOT_FOUND = "not_found"
    NOT_AUTHORIZED = "not_authorized"
    CLIENT_ERROR = "client_error"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown"

    @classmethod
    def from_code(cls, code: int) -> "HTTPStatusCode":
        """Map a numeric status to its category.

        401 and 404 are checked before the generic 4xx bucket.
        """
        if 100 <= code < 200:
            return cls.INFORMATIONAL
        if 200 <= code < 300:
            return cls.SUCCESS
        if 300 <= code < 400:
            return cls.REDIRECT
        if code == 401:
            return cls.NOT_AUTHORIZED
        if code == 404:
            return cls.NOT_FOUND
        if 400 <= code < 500:
            return cls.CLIENT_ERROR
        if 500 <= code < 600:
            return cls.SERVER_ERROR
        return cls.UNKNOWN


def classify(code: int) -> HTTPStatusCode:
    return HTTPStatusCode.from_code(code)
