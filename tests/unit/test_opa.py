"""
Tests for the OPA policy evaluator.

Tests:
    - OpaClient initialization
    - compile with mocked HTTP (success, compile errors, rollback)
    - removal of other programs and refusal of shared servers
    - evaluate with mocked HTTP (true, undefined, failures)
    - check_connection
"""

import json
from unittest.mock import MagicMock, patch

import httpx
import pytest

from certapprover.config import OpaConfig
from certapprover.errors import EvaluationFailedError, PolicyCompileError, PolicyInUseError
from certapprover.policy import OpaClient, digest_sources

SOURCES = {"approval.rego": 'package approval\n\nallow if input.namespace.metadata.labels.env == "prod"\n'}


def mock_response(status_code: int = 200, body=None, text: str | None = None) -> MagicMock:
    """Create a mock httpx response."""
    response = MagicMock()
    response.status_code = status_code
    if text is not None:
        response.text = text
        response.json.side_effect = json.JSONDecodeError("Expecting value", text, 0)
    else:
        response.text = json.dumps(body)
        response.json.return_value = body
    return response


class TestOpaClientInit:
    """Tests for OpaClient initialization."""

    def test_default_config(self):
        client = OpaClient()
        assert client.config.base_url == "http://localhost:8181"
        assert client._client is None

    def test_custom_config(self):
        client = OpaClient(OpaConfig(base_url="http://opa:8181", timeout_seconds=2))
        assert client.config.timeout_seconds == 2

    def test_context_manager_closes_client(self):
        with OpaClient() as client:
            client._get_client()
            assert client._client is not None
        assert client._client is None


class TestCompile:
    """Tests for OpaClient.compile."""

    @pytest.fixture(autouse=True)
    def mock_get(self):
        """OPA holds no policies unless a test says otherwise."""
        with patch.object(httpx.Client, "get") as mock:
            mock.return_value = mock_response(200, {"result": []})
            yield mock

    @patch.object(httpx.Client, "put")
    def test_compile_uploads_modules(self, mock_put):
        mock_put.return_value = mock_response(200, {})

        with OpaClient() as opa:
            policy = opa.compile(SOURCES)

        digest = digest_sources(SOURCES)
        assert policy.digest == digest
        assert policy.program_id == f"certapprover/{digest[:12]}"
        assert policy.sources == SOURCES
        url = mock_put.call_args.args[0]
        assert url == f"/v1/policies/certapprover/{digest[:12]}/0-approval.rego"
        assert mock_put.call_args.kwargs["content"] == SOURCES["approval.rego"].encode()

    @patch.object(httpx.Client, "delete")
    @patch.object(httpx.Client, "put")
    def test_compile_error(self, mock_put, mock_delete):
        mock_put.side_effect = [
            mock_response(200, {}),
            mock_response(400, {
                "code": "invalid_parameter",
                "message": "error(s) occurred while compiling module(s)",
                "errors": [{
                    "code": "rego_parse_error",
                    "message": "unexpected eof token",
                    "location": {"file": "b.rego", "row": 3, "col": 1},
                }],
            }),
        ]

        with OpaClient() as opa:
            with pytest.raises(PolicyCompileError) as exc_info:
                opa.compile({"a.rego": "package approval", "b.rego": "package approval\nallow if {"})

        assert exc_info.value.errors == ["b.rego:3: unexpected eof token"]
        # The module uploaded before the failure is removed again
        assert mock_delete.call_count == 1
        assert mock_delete.call_args.args[0].endswith("/0-a.rego")

    @patch.object(httpx.Client, "put")
    def test_compile_error_without_details(self, mock_put):
        mock_put.return_value = mock_response(500, text="internal error")

        with OpaClient() as opa:
            with pytest.raises(PolicyCompileError, match="HTTP 500"):
                opa.compile(SOURCES)

    @patch.object(httpx.Client, "put")
    def test_compile_unreachable(self, mock_put):
        mock_put.side_effect = httpx.ConnectError("Connection refused")

        with OpaClient() as opa:
            with pytest.raises(PolicyCompileError, match="cannot reach OPA"):
                opa.compile(SOURCES)

    def test_compile_nothing(self):
        with pytest.raises(PolicyCompileError, match="no policy modules"):
            OpaClient().compile({})

    @patch.object(httpx.Client, "delete")
    @patch.object(httpx.Client, "put")
    def test_remove(self, mock_put, mock_delete):
        mock_put.return_value = mock_response(200, {})

        with OpaClient() as opa:
            policy = opa.compile(SOURCES)
            opa.remove(policy)

        assert mock_delete.call_args.args[0] == mock_put.call_args.args[0]


class TestProgramIsolation:
    """Only one certapprover program may be loaded in OPA at a time."""

    STALE = "certapprover/0123456789ab/0-approval.rego"

    @pytest.fixture
    def mock_get(self):
        with patch.object(httpx.Client, "get") as mock:
            mock.return_value = mock_response(200, {"result": [
                {"id": self.STALE, "raw": "package approval\n\nallow := true\n"},
                {"id": "authz/main.rego", "raw": "package authz"},
            ]})
            yield mock

    @patch.object(httpx.Client, "delete")
    @patch.object(httpx.Client, "put")
    def test_compile_removes_previous_program(self, mock_put, mock_delete, mock_get):
        mock_put.return_value = mock_response(200, {})

        with OpaClient() as opa:
            policy = opa.compile(SOURCES)

        assert mock_get.call_args.args[0] == "/v1/policies"
        mock_delete.assert_called_once_with(f"/v1/policies/{self.STALE}")
        assert mock_put.call_args.args[0].startswith(f"/v1/policies/{policy.program_id}/")

    @patch.object(httpx.Client, "delete")
    @patch.object(httpx.Client, "put")
    def test_failed_compile_keeps_previous_program(self, mock_put, mock_delete, mock_get):
        mock_put.return_value = mock_response(400, {"errors": [{"message": "rego_parse_error"}]})

        with OpaClient() as opa:
            with pytest.raises(PolicyCompileError):
                opa.compile(SOURCES)

        mock_delete.assert_not_called()

    @patch.object(httpx.Client, "delete")
    @patch.object(httpx.Client, "put")
    def test_recompile_of_same_program_deletes_nothing(self, mock_put, mock_delete):
        mock_put.return_value = mock_response(200, {})
        digest = digest_sources(SOURCES)
        current = f"certapprover/{digest[:12]}/0-approval.rego"

        with patch.object(httpx.Client, "get", return_value=mock_response(200, {"result": [{"id": current}]})):
            with OpaClient() as opa:
                opa.compile(SOURCES)

        mock_delete.assert_not_called()

    @patch.object(httpx.Client, "put")
    def test_dry_run_refuses_shared_server(self, mock_put, mock_get):
        with OpaClient(OpaConfig(base_url="http://opa:8181")) as opa:
            with pytest.raises(PolicyInUseError) as exc_info:
                opa.compile(SOURCES, replace_existing=False)

        assert exc_info.value.modules == [self.STALE]
        assert exc_info.value.server == "http://opa:8181"
        mock_put.assert_not_called()

    @patch.object(httpx.Client, "put")
    def test_dry_run_on_empty_server(self, mock_put):
        mock_put.return_value = mock_response(200, {})

        with patch.object(httpx.Client, "get", return_value=mock_response(200, {"result": []})):
            with OpaClient() as opa:
                policy = opa.compile(SOURCES, replace_existing=False)

        assert policy.digest == digest_sources(SOURCES)

    def test_listing_unreachable(self):
        with patch.object(httpx.Client, "get", side_effect=httpx.ConnectError("Connection refused")):
            with OpaClient() as opa:
                with pytest.raises(PolicyCompileError, match="cannot reach OPA"):
                    opa.compile(SOURCES)

    def test_listing_server_error(self):
        with patch.object(httpx.Client, "get", return_value=mock_response(500, {"code": "internal_error"})):
            with OpaClient() as opa:
                with pytest.raises(PolicyCompileError, match="HTTP 500"):
                    opa.loaded_modules()


class TestEvaluate:
    """Tests for OpaClient.evaluate."""

    @pytest.fixture
    def compiled(self):
        with patch.object(httpx.Client, "put", return_value=mock_response(200, {})), \
                patch.object(httpx.Client, "get", return_value=mock_response(200, {"result": []})):
            with OpaClient() as opa:
                return opa.compile(SOURCES)

    @patch.object(httpx.Client, "post")
    def test_true(self, mock_post, compiled):
        mock_post.return_value = mock_response(200, {"result": True})
        document = {"object": {"kind": "CertificateRequest"}, "namespace": {"metadata": {"name": "prod"}}}

        with OpaClient() as opa:
            result = opa.evaluate(compiled, document)

        assert result is True
        assert mock_post.call_args.args[0] == "/v1/data/approval/allow"
        assert mock_post.call_args.kwargs["json"] == {"input": document}

    @patch.object(httpx.Client, "post")
    def test_undefined(self, mock_post, compiled):
        mock_post.return_value = mock_response(200, {})

        with OpaClient() as opa:
            assert opa.evaluate(compiled, {}) is None

    @patch.object(httpx.Client, "post")
    def test_false(self, mock_post, compiled):
        mock_post.return_value = mock_response(200, {"result": False})

        with OpaClient() as opa:
            assert opa.evaluate(compiled, {}) is False

    @patch.object(httpx.Client, "post")
    def test_timeout(self, mock_post, compiled):
        mock_post.side_effect = httpx.TimeoutException("Request timed out")

        with OpaClient(OpaConfig(timeout_seconds=3)) as opa:
            with pytest.raises(EvaluationFailedError, match="timed out after 3.0s"):
                opa.evaluate(compiled, {})

    @patch.object(httpx.Client, "post")
    def test_connection_error(self, mock_post, compiled):
        mock_post.side_effect = httpx.ConnectError("Connection refused")

        with OpaClient() as opa:
            with pytest.raises(EvaluationFailedError, match="cannot reach OPA"):
                opa.evaluate(compiled, {})

    @patch.object(httpx.Client, "post")
    def test_server_error(self, mock_post, compiled):
        mock_post.return_value = mock_response(500, {"code": "internal_error"})

        with OpaClient() as opa:
            with pytest.raises(EvaluationFailedError, match="HTTP 500"):
                opa.evaluate(compiled, {})

    @patch.object(httpx.Client, "post")
    def test_invalid_json(self, mock_post, compiled):
        mock_post.return_value = mock_response(200, text="not json")

        with OpaClient() as opa:
            with pytest.raises(EvaluationFailedError, match="Invalid JSON"):
                opa.evaluate(compiled, {})


class TestCheckConnection:
    """Tests for check_connection."""

    @patch.object(httpx.Client, "get")
    def test_healthy(self, mock_get):
        mock_get.return_value = mock_response(200, {})
        ok, message = OpaClient().check_connection()
        assert ok is True
        assert "Connected" in message

    @patch.object(httpx.Client, "get")
    def test_unhealthy(self, mock_get):
        mock_get.return_value = mock_response(500, {})
        ok, message = OpaClient().check_connection()
        assert ok is False
        assert "500" in message

    @patch.object(httpx.Client, "get")
    def test_unreachable(self, mock_get):
        mock_get.side_effect = httpx.ConnectError("Connection refused")
        ok, message = OpaClient().check_connection()
        assert ok is False
        assert "Cannot connect" in message
