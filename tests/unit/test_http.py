"""Tests for the HTTP client and the httpRequest step."""
from unittest.mock import MagicMock, patch

import pytest
import requests

from stepflow.config import Settings
from stepflow.step_sdk.errors import (
    DependencyError,
    NetworkError,
    PermissionDeniedError,
    StepErrorKind,
    StepTimeoutError,
    StepValidationError,
)
from stepflow.step_sdk.http import HttpClient, check_url, error_for_status, parse_retry_after
from stepflow.steppacks.core.steps import HttpRequestStep


URL = "https://api.example.com/things"


def _response(status_code=200, body=None, headers=None, reason="OK"):
    response = MagicMock()
    response.status_code = status_code
    response.reason = reason
    response.headers = headers or {}
    response.url = URL
    if body is None:
        response.json.side_effect = ValueError("no json")
        response.text = "plain"
    else:
        response.json.return_value = body
        response.text = str(body)
    return response


def _client(response=None, error=None, **kwargs):
    session = MagicMock()
    if error is not None:
        session.request.side_effect = error
    else:
        session.request.return_value = response
    return HttpClient(session=session, **kwargs), session


class TestHttpClient:
    """Test HttpClient error mapping."""

    def test_successful_request(self):
        client, session = _client(_response(200, {"ok": True}), timeout=5, headers={"X-Token": "tok"})

        response = client.send("get", URL, params={"limit": 1})

        assert response.status_code == 200
        assert response.body == {"ok": True}
        assert response.to_payload() == {"statusCode": 200, "headers": {}, "body": {"ok": True}}
        session.headers.update.assert_called_once_with({"X-Token": "tok"})
        args, kwargs = session.request.call_args
        assert args == ("GET", URL)
        assert kwargs["timeout"] == 5
        assert kwargs["params"] == {"limit": 1}

    def test_non_json_body(self):
        client, _ = _client(_response(200))

        assert client.send("GET", URL).body == {"text": "plain"}

    def test_rate_limit_carries_retry_after(self):
        client, _ = _client(_response(429, headers={"Retry-After": "3"}, reason="Too Many Requests"))

        with pytest.raises(DependencyError) as exc_info:
            client.send("GET", URL).raise_for_status()

        error = exc_info.value
        assert error.kind == StepErrorKind.DEPENDENCY
        assert error.retryable
        assert error.retry_after == 3.0
        assert error.details["status_code"] == 429
        assert error.details["method"] == "GET"

    def test_unauthorized_is_permission(self):
        client, _ = _client(_response(401, reason="Unauthorized"))

        with pytest.raises(PermissionDeniedError) as exc_info:
            client.send("GET", URL).raise_for_status()

        assert exc_info.value.retryable is False

    def test_not_found_is_validation(self):
        client, _ = _client(_response(404, reason="Not Found"))

        with pytest.raises(StepValidationError):
            client.send("GET", URL).raise_for_status()

    def test_timeout(self):
        client, _ = _client(error=requests.exceptions.Timeout("slow"), timeout=2)

        with pytest.raises(StepTimeoutError) as exc_info:
            client.send("GET", URL)

        assert exc_info.value.retryable
        assert exc_info.value.details["timeout_s"] == 2

    def test_connection_error(self):
        client, _ = _client(error=requests.exceptions.ConnectionError("refused"))

        with pytest.raises(NetworkError) as exc_info:
            client.send("GET", URL)

        assert exc_info.value.kind == StepErrorKind.NETWORK

    def test_context_manager_closes_session(self):
        client, session = _client(_response(200))

        with client:
            pass

        session.close.assert_called_once()

    def test_error_for_status_server_errors(self):
        assert error_for_status(500, "boom").kind == StepErrorKind.DEPENDENCY
        assert error_for_status(503).retryable
        assert error_for_status(418).kind == StepErrorKind.VALIDATION

    def test_parse_retry_after(self):
        assert parse_retry_after("7") == 7.0
        assert parse_retry_after("-2") == 0.0
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0
        assert parse_retry_after("soon") is None
        assert parse_retry_after(None) is None


class TestCheckUrl:
    """Test URL refusal before sending."""

    @pytest.mark.parametrize("url", [
        "http://localhost/admin",
        "http://api.localhost:8080",
        "http://127.0.0.1:8080/",
        "http://10.1.2.3/",
        "http://172.16.5.4/",
        "http://192.168.0.1/",
        "http://169.254.169.254/latest/meta-data",
        "http://0.0.0.0/",
        "http://[::1]/",
    ])
    def test_private_hosts_refused(self, url):
        with pytest.raises(PermissionDeniedError) as exc_info:
            check_url(url)

        assert exc_info.value.kind == StepErrorKind.PERMISSION
        assert exc_info.value.retryable is False

    @pytest.mark.parametrize("url", ["ftp://example.com/file", "file:///etc/passwd", "not a url", "http:///path"])
    def test_bad_scheme_or_host_is_validation(self, url):
        with pytest.raises(StepValidationError):
            check_url(url)

    def test_public_hosts_allowed(self):
        check_url("https://api.example.com/v1")
        check_url("http://8.8.8.8/")

    def test_private_hosts_can_be_allowed(self):
        check_url("http://localhost:3000/", allow_private_hosts=True)

    def test_client_refuses_before_sending(self):
        client, session = _client(_response(200))

        with pytest.raises(PermissionDeniedError):
            client.send("GET", "http://127.0.0.1/internal")

        session.request.assert_not_called()


class TestHttpRequestStep:
    """Test the httpRequest step."""

    @patch("stepflow.step_sdk.http.requests.Session")
    def test_one_request_per_item(self, mock_session_cls, execute_step):
        session = mock_session_cls.return_value
        session.request.return_value = _response(200, {"id": 1})

        outputs, _ = execute_step(
            HttpRequestStep,
            {"method": "post", "url": "https://api.example.com/users/{{ $json.id }}", "body": '{"x": 1}'},
            {"main": [[{"id": 7}, {"id": 8}]]},
        )

        urls = [call.args[1] for call in session.request.call_args_list]
        assert urls == ["https://api.example.com/users/7", "https://api.example.com/users/8"]
        assert session.request.call_args.kwargs["json"] == {"x": 1}
        assert outputs["main"][0].payload == {"statusCode": 200, "headers": {}, "body": {"id": 1}}
        session.close.assert_called_once()

    @patch("stepflow.step_sdk.http.requests.Session")
    def test_ignore_http_errors(self, mock_session_cls, execute_step):
        mock_session_cls.return_value.request.return_value = _response(500, reason="Server Error")

        outputs, _ = execute_step(
            HttpRequestStep,
            {"url": URL, "ignoreHttpErrors": True},
            {"main": [[{}]]},
        )

        assert outputs["main"][0].payload["statusCode"] == 500
        assert outputs["main"][0].payload["body"] == {"text": "plain"}

    @patch("stepflow.step_sdk.http.requests.Session")
    def test_error_status_raises(self, mock_session_cls, execute_step):
        mock_session_cls.return_value.request.return_value = _response(
            503, headers={"Retry-After": "1"}, reason="Unavailable"
        )

        with pytest.raises(DependencyError) as exc_info:
            execute_step(HttpRequestStep, {"url": URL}, {"main": [[{}]]})

        assert exc_info.value.retry_after == 1.0

    @patch("stepflow.step_sdk.http.requests.Session")
    def test_invalid_headers_json(self, mock_session_cls, execute_step):
        with pytest.raises(StepValidationError):
            execute_step(
                HttpRequestStep,
                {"url": URL, "headers": "{not json"},
                {"main": [[{}]]},
            )

        mock_session_cls.return_value.request.assert_not_called()

    @patch("stepflow.step_sdk.http.requests.Session")
    def test_private_host_refused_by_default(self, mock_session_cls, execute_step):
        with pytest.raises(PermissionDeniedError):
            execute_step(HttpRequestStep, {"url": "http://192.168.1.10/api"}, {"main": [[{}]]})

        mock_session_cls.return_value.request.assert_not_called()

    @patch("stepflow.step_sdk.http.requests.Session")
    def test_private_host_allowed_by_settings(self, mock_session_cls, execute_step):
        mock_session_cls.return_value.request.return_value = _response(200, {"ok": True})

        outputs, _ = execute_step(
            HttpRequestStep,
            {"url": "http://localhost:8080/health"},
            {"main": [[{}]]},
            settings=Settings(http_allow_private_hosts=True),
        )

        assert outputs["main"][0].payload["body"] == {"ok": True}
