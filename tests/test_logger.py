import unittest
from unittest.mock import MagicMock, patch

from bm.network.logger import MASK, MAX_BODY_LOG_LENGTH, NetworkLogger, mask_headers
from bm.network.models import EncodedRequest


def _request(**kwargs) -> EncodedRequest:
    kwargs.setdefault("method", "POST")
    kwargs.setdefault("url", "https://api.test/users")
    kwargs.setdefault("headers", {"Authorization": "Bearer secret", "Accept": "*/*"})
    return EncodedRequest(**kwargs)


class TestMaskHeaders(unittest.TestCase):
    def test_sensitive_headers_are_masked(self):
        headers = {"authorization": "Bearer x", "Cookie": "a=1", "Set-Cookie": "b=2", "X-Id": "7"}
        expected = {"authorization": MASK, "Cookie": MASK, "Set-Cookie": MASK, "X-Id": "7"}
        self.assertEqual(mask_headers(headers), expected)


class TestNetworkLogger(unittest.TestCase):
    def test_request_event_goes_to_sink(self):
        sink = MagicMock()
        NetworkLogger(sink=sink).log_request(_request(content=b'{"a":1}'), description="Body: {'a': 1}")

        event = sink.call_args[0][0]
        self.assertEqual(event["event"], "request")
        self.assertEqual(event["method"], "POST")
        self.assertEqual(event["url"], "https://api.test/users")
        self.assertEqual(event["headers"]["Authorization"], MASK)
        self.assertEqual(event["body"], '{\n  "a": 1\n}')
        self.assertEqual(event["description"], "Body: {'a': 1}")

    def test_request_is_logged_at_debug(self):
        with patch("bm.network.logger.logger") as mock_logger:
            NetworkLogger().log_request(_request())
        message = mock_logger.debug.call_args[0][0]
        self.assertIn("Will send POST request for https://api.test/users", message)
        self.assertNotIn("secret", message)

    def test_response_event(self):
        sink = MagicMock()
        NetworkLogger(sink=sink).log_response(method="GET", url="https://api.test", status_code=404, body=b"missing")
        event = sink.call_args[0][0]
        self.assertEqual(event["status_code"], 404)
        self.assertEqual(event["body"], "missing")
        self.assertIsNone(event["error"])

    def test_error_event(self):
        sink = MagicMock()
        NetworkLogger(sink=sink).log_response(method="GET", url="https://api.test", error=OSError("refused"))
        self.assertEqual(sink.call_args[0][0]["error"], "OSError('refused')")

    def test_bodies_can_be_left_out(self):
        sink = MagicMock()
        NetworkLogger(sink=sink, log_bodies=False).log_request(_request(content=b"secret body"))
        self.assertIsNone(sink.call_args[0][0]["body"])

    def test_binary_and_long_bodies(self):
        sink = MagicMock()
        network_logger = NetworkLogger(sink=sink)
        network_logger.log_response(method="GET", url="https://api.test", status_code=200, body=b"\xff\x00\xfe")
        self.assertEqual(sink.call_args[0][0]["body"], "<3 bytes>")
        network_logger.log_response(method="GET", url="https://api.test", status_code=200, body=b"x" * 5000)
        body = sink.call_args[0][0]["body"]
        self.assertTrue(body.endswith("... (truncated)"))
        self.assertEqual(len(body), MAX_BODY_LOG_LENGTH + len("... (truncated)"))

    def test_disabled_logger_does_nothing(self):
        sink = MagicMock()
        with patch("bm.network.logger.logger") as mock_logger:
            NetworkLogger(enabled=False, sink=sink).log_request(_request())
        sink.assert_not_called()
        mock_logger.debug.assert_not_called()

    def test_failing_sink_is_swallowed(self):
        sink = MagicMock(side_effect=RuntimeError("sink down"))
        with patch("bm.network.logger.logger") as mock_logger:
            NetworkLogger(sink=sink).log_response(method="GET", url="https://api.test", status_code=200)
        mock_logger.warning.assert_called_once()


if __name__ == "__main__":
    unittest.main()
