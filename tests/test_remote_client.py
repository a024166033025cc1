import json
import unittest
from unittest import mock

import requests

from studiosync.models import RemoteConfig
from studiosync.remote_client import (
    PayloadTooLargeError,
    RemoteAuthError,
    RemoteStoreClient,
    RemoteStoreError,
    RemoteUnavailableError,
    session_token,
)


def _response(status_code: int = 200, payload: object = None, text: str = "") -> mock.Mock:
    response = mock.Mock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 400
    response.text = text
    response.json.return_value = payload
    return response


class RemoteStoreClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = RemoteStoreClient(
            RemoteConfig(base_url="https://store.example.com", password="pw", timeout_seconds=10)
        )

    def test_session_token_is_sha256_of_password_and_secret(self) -> None:
        token = session_token("pw", "secret")
        self.assertEqual(len(token), 64)
        self.assertEqual(token, session_token("pw", "secret"))
        self.assertNotEqual(token, session_token("pw", "other"))

    def test_login_is_cached_across_requests(self) -> None:
        with mock.patch(
            "studiosync.remote_client.requests.post", return_value=_response(payload={"token": "abc"})
        ) as post, mock.patch(
            "studiosync.remote_client.requests.request", return_value=_response(payload={"weekNotes": []})
        ) as request:
            self.assertEqual(self.client.fetch(), {"weekNotes": []})
            self.assertEqual(self.client.fetch(), {"weekNotes": []})
        post.assert_called_once()
        self.assertEqual(post.call_args.args[0], "https://store.example.com/api/login")
        self.assertEqual(post.call_args.kwargs["json"], {"password": "pw"})
        self.assertEqual(request.call_args.args, ("GET", "https://store.example.com/api/data"))
        self.assertEqual(request.call_args.kwargs["headers"]["Authorization"], "Bearer abc")

    def test_auth_headers_log_in_once(self) -> None:
        with mock.patch(
            "studiosync.remote_client.requests.post", return_value=_response(payload={"token": "abc"})
        ) as post:
            self.assertEqual(self.client.auth_headers(), {"Authorization": "Bearer abc"})
            self.assertEqual(self.client.auth_headers(), {"Authorization": "Bearer abc"})
        post.assert_called_once()

    def test_login_without_token_is_an_auth_error(self) -> None:
        with mock.patch("studiosync.remote_client.requests.post", return_value=_response(payload={})):
            with self.assertRaises(RemoteAuthError):
                self.client.login()
        self.assertFalse(self.client.has_token)

    def test_unauthorized_response_drops_cached_token(self) -> None:
        with mock.patch("studiosync.remote_client.requests.post", return_value=_response(payload={"token": "abc"})):
            self.client.login()
        self.assertTrue(self.client.has_token)
        with mock.patch("studiosync.remote_client.requests.request", return_value=_response(401)):
            with self.assertRaises(RemoteAuthError):
                self.client.fetch()
        self.assertFalse(self.client.has_token)

    def test_empty_store_returns_none(self) -> None:
        self.client._token = "abc"
        with mock.patch("studiosync.remote_client.requests.request", return_value=_response(payload=None)):
            self.assertIsNone(self.client.fetch())

    def test_non_object_document_is_rejected(self) -> None:
        self.client._token = "abc"
        with mock.patch("studiosync.remote_client.requests.request", return_value=_response(payload=[1, 2])):
            with self.assertRaises(RemoteStoreError):
                self.client.fetch()

    def test_push_sends_json_body(self) -> None:
        self.client._token = "abc"
        with mock.patch("studiosync.remote_client.requests.request", return_value=_response(payload={"ok": True})) as request:
            self.client.push({"settings": {"theme": "dark"}})
        self.assertEqual(request.call_args.args[0], "POST")
        self.assertEqual(json.loads(request.call_args.kwargs["data"]), {"settings": {"theme": "dark"}})
        self.assertEqual(request.call_args.kwargs["headers"]["Content-Type"], "application/json")

    def test_error_statuses_map_to_error_types(self) -> None:
        self.client._token = "abc"
        cases = ((413, PayloadTooLargeError), (503, RemoteUnavailableError), (404, RemoteStoreError))
        for status_code, error_type in cases:
            with self.subTest(status_code=status_code):
                with mock.patch("studiosync.remote_client.requests.request", return_value=_response(status_code)):
                    with self.assertRaises(error_type) as ctx:
                        self.client.push({})
                if status_code == 404:
                    self.assertEqual(ctx.exception.status_code, 404)

    def test_connection_errors_are_unavailable(self) -> None:
        self.client._token = "abc"
        with mock.patch(
            "studiosync.remote_client.requests.request", side_effect=requests.ConnectionError("refused")
        ):
            with self.assertRaises(RemoteUnavailableError):
                self.client.fetch()

    def test_beacon_uses_query_token_and_short_timeout(self) -> None:
        self.client._token = "abc"
        with mock.patch("studiosync.remote_client.requests.post", return_value=_response(payload={"ok": True})) as post:
            self.assertTrue(self.client.send_beacon({"v": 1}))
        self.assertEqual(post.call_args.kwargs["params"], {"token": "abc"})
        self.assertEqual(post.call_args.kwargs["timeout"], 3)

    def test_beacon_never_raises(self) -> None:
        self.client._token = "abc"
        for side_effect in (requests.Timeout("slow"), [_response(500)]):
            with self.subTest(side_effect=side_effect):
                with mock.patch("studiosync.remote_client.requests.post", side_effect=side_effect):
                    with self.assertLogs("studiosync.remote_client", level="WARNING"):
                        self.assertFalse(self.client.send_beacon({"v": 1}))


if __name__ == "__main__":
    unittest.main()
