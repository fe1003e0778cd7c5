"""Tests for the blocking RequestExecutor against a stub requests adapter."""

import io
import json
import tempfile
import unittest
from dataclasses import dataclass
from pathlib import Path
from unittest.mock import MagicMock

import requests
from requests.adapters import BaseAdapter
from requests.structures import CaseInsensitiveDict

from bm.network.connectivity import AsyncSocketConnectivityProbe, ConnectivityProbe
from bm.network.converters import ConverterRegistry
from bm.network.errors import APIError, APIErrorType, IndexedConversionError
from bm.network.logger import NetworkLogger
from bm.network.models import (
    DownloadResumable,
    EncodedBody,
    HTTPMethod,
    Plain,
    RequestDescriptor,
)
from bm.network.oauth import TokenStore
from bm.network.requests import RequestExecutor
from bm.network.result import Failure, Success
from bm.network.status import HTTPStatusCode


@dataclass
class User:
    id: int
    name: str


class StubAdapter(BaseAdapter):
    """Answers requests from a list of ``(status, body, headers)`` tuples or exceptions."""

    def __init__(self, *responses):
        super().__init__()
        self.responses = list(responses)
        self.requests = []

    def send(self, request, stream=False, timeout=None, verify=True, cert=None, proxies=None):
        self.requests.append(request)
        answer = self.responses.pop(0)
        if isinstance(answer, Exception):
            raise answer
        status, body, headers = answer
        if not isinstance(body, bytes):
            body = json.dumps(body).encode()
        response = requests.Response()
        response.status_code = status
        response.headers = CaseInsensitiveDict(headers)
        response.raw = io.BytesIO(body)
        response.url = request.url
        response.request = request
        return response

    def close(self):
        pass


class Offline(ConnectivityProbe):
    def is_online(self):
        return False


def _descriptor(path="/users/1", **kwargs) -> RequestDescriptor:
    kwargs.setdefault("task", Plain())
    method = kwargs.pop("method", HTTPMethod.GET)
    return RequestDescriptor(method=method, base_url="https://api.test", path=path, **kwargs)


class ExecutorTestCase(unittest.TestCase):
    def _executor(self, *responses, **kwargs):
        converters = ConverterRegistry()
        converters.register(User, lambda data: User(id=data["id"], name=data["name"]))
        kwargs.setdefault("converters", converters)
        executor = RequestExecutor(**kwargs)
        self.addCleanup(executor.close)
        adapter = StubAdapter(*responses)
        executor._transport.session_for(None).mount("https://", adapter)
        return executor, adapter


class TestPerform(ExecutorTestCase):
    def test_decodes_registered_type(self):
        executor, adapter = self._executor((200, {"id": 1, "name": "Ann"}, {}))
        self.assertEqual(executor.perform(_descriptor(), User), User(id=1, name="Ann"))
        sent = adapter.requests[0]
        self.assertEqual(sent.method, "GET")
        self.assertEqual(sent.url, "https://api.test/users/1")
        self.assertEqual(sent.headers["Accept"], "*/*")
        self.assertTrue(sent.headers["User-Agent"].startswith("bm-network/"))
        self.assertTrue(sent.headers["User-Agent"].endswith(" RequestExecutor"))

    def test_sends_json_body(self):
        executor, adapter = self._executor((201, {"id": 2, "name": "Bo"}, {}))
        descriptor = _descriptor("/users", method=HTTPMethod.POST, task=EncodedBody({"name": "Bo"}))
        self.assertEqual(executor.perform(descriptor, User), User(2, "Bo"))
        self.assertEqual(json.loads(adapter.requests[0].body), {"name": "Bo"})
        self.assertEqual(adapter.requests[0].headers["Content-Type"], "application/json")

    def test_list_response(self):
        body = [{"id": 1, "name": "Ann"}, {"id": 2}]
        executor, _ = self._executor((200, body, {}))
        with self.assertRaises(IndexedConversionError) as cm:
            executor.perform(_descriptor("/users"), list[User])
        self.assertEqual(cm.exception.index, 1)

    def test_conversion_failure(self):
        executor, _ = self._executor((200, b"<html>", {}))
        with self.assertRaises(APIError) as cm:
            executor.perform(_descriptor(), User)
        self.assertEqual(cm.exception.type, APIErrorType.DATA_CONVERSION_FAILED)

    def test_unexpected_exception_is_invalid_response(self):
        converters = ConverterRegistry()
        converters.register(User, MagicMock(side_effect=RuntimeError("bug")))
        executor, _ = self._executor((200, {"id": 1}, {}), converters=converters)
        with self.assertRaises(APIError) as cm:
            executor.perform(_descriptor(), User)
        self.assertEqual(cm.exception.type, APIErrorType.INVALID_RESPONSE)
        self.assertIsInstance(cm.exception.__cause__, RuntimeError)

    def test_http_error_with_server_message(self):
        executor, _ = self._executor((404, {"message": "No such user"}, {}))
        with self.assertRaises(APIError) as cm:
            executor.perform(_descriptor(), User)
        self.assertEqual(cm.exception, APIError.http_error(HTTPStatusCode.NOT_FOUND))
        self.assertEqual(cm.exception.status, 404)
        self.assertIn("No such user", str(cm.exception))

    def test_no_network_never_sends(self):
        executor, adapter = self._executor((200, {}, {}), connectivity=Offline())
        result = executor.perform_result(_descriptor(), User)
        self.assertIsInstance(result, Failure)
        self.assertEqual(result.error.type, APIErrorType.NO_NETWORK)
        self.assertEqual(adapter.requests, [])

    def test_async_connectivity_check_is_rejected(self):
        with self.assertRaises(TypeError):
            RequestExecutor(connectivity=AsyncSocketConnectivityProbe())

    def test_connectivity_check_returning_awaitable_never_sends(self):
        async def offline():
            return False

        class EventLoopCheck:
            def is_online(self):
                return offline()

        executor, adapter = self._executor((200, {}, {}), connectivity=EventLoopCheck())
        with self.assertRaises(APIError) as cm:
            executor.perform(_descriptor())
        self.assertEqual(cm.exception.type, APIErrorType.INVALID_RESPONSE)
        self.assertIsInstance(cm.exception.__cause__, TypeError)
        self.assertEqual(adapter.requests, [])

    def test_invalid_url_never_sends(self):
        executor, adapter = self._executor()
        descriptor = RequestDescriptor(method=HTTPMethod.GET, base_url="api.test", path="/users")
        with self.assertRaises(APIError) as cm:
            executor.perform(descriptor)
        self.assertEqual(cm.exception.type, APIErrorType.INVALID_URL)
        self.assertEqual(adapter.requests, [])

    def test_transport_failure_is_network_error(self):
        executor, _ = self._executor(requests.ConnectionError("connection refused"))
        with self.assertRaises(APIError) as cm:
            executor.perform(_descriptor())
        self.assertEqual(cm.exception.type, APIErrorType.NETWORK_ERROR)
        self.assertIsInstance(cm.exception.__cause__, requests.ConnectionError)

    def test_no_status_based_retries(self):
        executor, adapter = self._executor((503, b"busy", {}), (200, {}, {}))
        with self.assertRaises(APIError) as cm:
            executor.perform(_descriptor())
        self.assertEqual(cm.exception.status_code, HTTPStatusCode.SERVER_ERROR)
        self.assertEqual(len(adapter.requests), 1)

    def test_result_variants(self):
        executor, _ = self._executor((200, {"id": 1, "name": "Ann"}, {}), (500, b"", {}))
        self.assertEqual(executor.perform_result(_descriptor(), User), Success(User(1, "Ann")))
        failure = executor.perform_result(_descriptor(), User)
        self.assertEqual(failure.error, APIError.http_error(HTTPStatusCode.SERVER_ERROR))

    def test_cookies(self):
        headers = {"Set-Cookie": "session=abc; Path=/, theme=dark"}
        executor, _ = self._executor((200, {"id": 1, "name": "Ann"}, headers))
        response = executor.perform_with_cookies(_descriptor(), User)
        self.assertEqual(response.data, User(1, "Ann"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual([c.key for c in response.cookies], ["session", "theme"])
        self.assertEqual(response.cookie_header, "session=abc; theme=dark")

    def test_perform_success_ignores_body(self):
        executor, _ = self._executor((204, b"", {"X-Request-Id": "7"}), (500, b"", {}))
        response = executor.perform_success(_descriptor(method=HTTPMethod.DELETE))
        self.assertIsNone(response.data)
        self.assertEqual(response.status_code, 204)
        self.assertEqual(response.headers["x-request-id"], "7")
        self.assertIsInstance(executor.perform_success_result(_descriptor()), Failure)

    def test_log_events(self):
        sink = MagicMock()
        executor, _ = self._executor((200, {"id": 1, "name": "Ann"}, {}), network_logger=NetworkLogger(sink=sink))
        executor.perform(_descriptor(auth_headers={"Authorization": "Bearer secret"}), User)
        events = [c[0][0] for c in sink.call_args_list]
        self.assertEqual([e["event"] for e in events], ["request", "response"])
        self.assertEqual(events[0]["headers"]["Authorization"], "***")
        self.assertEqual(events[0]["description"], "Plain request")
        self.assertEqual(events[1]["status_code"], 200)


class TestTokenRefresh(ExecutorTestCase):
    def setUp(self):
        self.store = TokenStore({"access_token": "old"})
        self.refresh = MagicMock()

        def refresh():
            self.refresh()
            self.store.update({"access_token": "new"})
            return True

        self.refresh.handler = refresh

    def _authorized(self, **kwargs):
        return _descriptor(auth_headers=self.store.auth_headers, is_authorized=True, **kwargs)

    def test_unauthorized_call_never_refreshes(self):
        executor, adapter = self._executor((401, b"", {}), refresh_handler=self.refresh.handler)
        descriptor = _descriptor(auth_headers=self.store.auth_headers, is_authorized=False)
        with self.assertRaises(APIError) as cm:
            executor.perform(descriptor)
        self.assertEqual(cm.exception, APIError.http_error(HTTPStatusCode.NOT_AUTHORIZED))
        self.refresh.assert_not_called()
        self.assertEqual(len(adapter.requests), 1)

    def test_failed_refresh_sends_once(self):
        executor, adapter = self._executor((401, b"", {}), refresh_handler=lambda: False)
        with self.assertRaises(APIError) as cm:
            executor.perform(self._authorized())
        self.assertEqual(cm.exception.status_code, HTTPStatusCode.NOT_AUTHORIZED)
        self.assertEqual(len(adapter.requests), 1)

    def test_async_refresh_handler_is_rejected(self):
        async def refresh():
            return False

        with self.assertRaises(TypeError):
            RequestExecutor(refresh_handler=refresh)

    def test_refresh_handler_returning_awaitable_sends_once(self):
        async def refresh():
            return True

        executor, adapter = self._executor((401, b"", {}), (200, {}, {}), refresh_handler=lambda: refresh())
        with self.assertRaises(APIError) as cm:
            executor.perform(self._authorized())
        self.assertEqual(cm.exception.status_code, HTTPStatusCode.NOT_AUTHORIZED)
        self.assertEqual(len(adapter.requests), 1)

    def test_no_refresh_handler(self):
        executor, adapter = self._executor((401, b"", {}))
        result = executor.perform_result(self._authorized())
        self.assertEqual(result.error.status_code, HTTPStatusCode.NOT_AUTHORIZED)
        self.assertEqual(len(adapter.requests), 1)

    def test_refresh_and_retry_with_new_token(self):
        executor, adapter = self._executor(
            (401, b"", {}), (200, {"id": 1, "name": "Ann"}, {}), refresh_handler=self.refresh.handler
        )
        self.assertEqual(executor.perform(self._authorized(), User), User(1, "Ann"))
        self.refresh.assert_called_once()
        self.assertEqual([r.headers["Authorization"] for r in adapter.requests], ["Bearer old", "Bearer new"])

    def test_retry_headers_unchanged_when_auth_headers_unchanged(self):
        executor, adapter = self._executor((401, b"", {}), (200, {}, {}), refresh_handler=lambda: True)
        descriptor = _descriptor(auth_headers={"Authorization": "Bearer static"}, is_authorized=True)
        executor.perform(descriptor)
        first, second = adapter.requests
        self.assertEqual(dict(first.headers), dict(second.headers))

    def test_retry_happens_at_most_once(self):
        executor, adapter = self._executor((401, b"", {}), (401, b"", {}), refresh_handler=self.refresh.handler)
        with self.assertRaises(APIError) as cm:
            executor.perform(self._authorized())
        self.assertEqual(cm.exception.status_code, HTTPStatusCode.NOT_AUTHORIZED)
        self.refresh.assert_called_once()
        self.assertEqual(len(adapter.requests), 2)

    def test_failed_retry_is_reported_as_not_authorized(self):
        executor, adapter = self._executor((401, b"", {}), (500, b"", {}), refresh_handler=self.refresh.handler)
        with self.assertRaises(APIError) as cm:
            executor.perform(self._authorized())
        self.assertEqual(cm.exception.status_code, HTTPStatusCode.NOT_AUTHORIZED)
        self.assertEqual(cm.exception.status, 500)

    def test_shared_coordinator(self):
        first, _ = self._executor((401, b"", {}), (200, {}, {}), refresh_handler=self.refresh.handler)
        second, _ = self._executor((401, b"", {}), (200, {}, {}), refresh_coordinator=first.refresh_coordinator)
        first.perform(self._authorized())
        second.perform(self._authorized())
        self.assertEqual(self.refresh.call_count, 2)


class TestDownload(ExecutorTestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.tmp = Path(tmp.name)

    def test_download_to_directory(self):
        executor, _ = self._executor((200, b"file content", {"Content-Type": "text/plain"}))
        downloaded = executor.download(_descriptor("/files/report.txt"), self.tmp)
        self.assertEqual(downloaded.path, self.tmp.resolve() / "report.txt")
        self.assertEqual(downloaded.path.read_bytes(), b"file content")
        self.assertEqual(downloaded.remote_url, "https://api.test/files/report.txt")
        self.assertFalse(downloaded.resumed)
        self.assertEqual(
            downloaded.to_json(),
            {"downloadedUrl": downloaded.path.as_uri(), "remoteUrl": "https://api.test/files/report.txt"},
        )

    def test_resumable_download_appends_on_partial_content(self):
        target = self.tmp / "video.mp4"
        target.write_bytes(b"0123")
        executor, adapter = self._executor((206, b"4567", {}))
        downloaded = executor.download(_descriptor("/video.mp4", task=DownloadResumable(resume_offset=4)), target)
        self.assertEqual(adapter.requests[0].headers["Range"], "bytes=4-")
        self.assertTrue(downloaded.resumed)
        self.assertEqual(target.read_bytes(), b"01234567")

    def test_resume_cuts_longer_partial_file_back_to_offset(self):
        target = self.tmp / "video.mp4"
        target.write_bytes(b"0123456789")
        executor, _ = self._executor((206, b"456789", {"Content-Range": "bytes 4-9/10"}))
        downloaded = executor.download(_descriptor("/video.mp4", task=DownloadResumable(resume_offset=4)), target)
        self.assertTrue(downloaded.resumed)
        self.assertEqual(target.read_bytes(), b"0123456789")

    def test_resume_with_misaligned_content_range_fails(self):
        target = self.tmp / "video.mp4"
        target.write_bytes(b"0123")
        executor, _ = self._executor((206, b"23456789", {"Content-Range": "bytes 2-9/10"}))
        result = executor.download_result(_descriptor("/video.mp4", task=DownloadResumable(resume_offset=4)), target)
        self.assertEqual(result.error.type, APIErrorType.DATA_CONVERSION_FAILED)
        self.assertEqual(target.read_bytes(), b"0123")

    def test_resumable_download_rewrites_on_full_content(self):
        target = self.tmp / "video.mp4"
        target.write_bytes(b"stale")
        executor, _ = self._executor((200, b"01234567", {}))
        downloaded = executor.download(_descriptor("/video.mp4", task=DownloadResumable(resume_offset=5)), target)
        self.assertFalse(downloaded.resumed)
        self.assertEqual(target.read_bytes(), b"01234567")

    def test_failed_download_writes_nothing(self):
        target = self.tmp / "missing.bin"
        executor, _ = self._executor((404, b"not found", {}))
        result = executor.download_result(_descriptor("/missing.bin"), target)
        self.assertEqual(result.error.status_code, HTTPStatusCode.NOT_FOUND)
        self.assertFalse(target.exists())

    def test_download_after_refresh(self):
        target = self.tmp / "doc.pdf"
        executor, adapter = self._executor((401, b"expired", {}), (200, b"%PDF", {}), refresh_handler=lambda: True)
        result = executor.download_result(_descriptor("/doc.pdf", is_authorized=True), target)
        self.assertTrue(result.is_success)
        self.assertEqual(target.read_bytes(), b"%PDF")
        self.assertEqual(len(adapter.requests), 2)


class TestFromEnv(unittest.TestCase):
    def test_from_env(self):
        with tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False) as f:
            json.dump({"environments": {"dev": {"host": "dev.api.test", "api_path": "v1", "timeout": 5}}}, f)
        self.addCleanup(Path(f.name).unlink)

        executor = RequestExecutor.from_env("dev", env_config_path=f.name, client_name=None)
        self.assertEqual(executor.environment.base_url, "https://dev.api.test/v1")
        self.assertEqual(executor._transport.timeout, 5)
        self.assertIsNone(executor._transport.client_name)

    def test_unknown_env(self):
        with self.assertRaises(ValueError):
            RequestExecutor.from_env("nonexistent", env_config_path="/nonexistent/network.json")

    def test_context_manager_closes_transport(self):
        transport = MagicMock()
        with RequestExecutor(transport=transport) as executor:
            self.assertIsInstance(executor, RequestExecutor)
        transport.close.assert_called_once()


if __name__ == "__main__":
    unittest.main()
