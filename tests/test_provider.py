"""
Tests for the provider client and the workflow hook.

Tests cover:
- Request shape (URL, bearer token, text and template payloads)
- Every failure mode surfacing as ProviderError
- Workflow hook is skipped when unconfigured and never raises
"""

import json

import httpx
import pytest

from cart_notifier import workflow
from cart_notifier.errors import ProviderError
from cart_notifier.provider import ProviderClient, ProviderCredentials


CREDENTIALS = ProviderCredentials(access_token="token-abc", sender_id="1234567890")


def make_client(handler) -> ProviderClient:
    return ProviderClient(
        base_url="https://provider.test/v1/",
        template_language="en_GB",
        transport=httpx.MockTransport(handler),
    )


class TestProviderClient:

    def test_send_text(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"messages": [{"id": "wamid.XYZ"}]})

        client = make_client(handler)
        assert client.send_text(CREDENTIALS, "15551234567", "hi") == "wamid.XYZ"

        assert seen["url"] == "https://provider.test/v1/1234567890/messages"
        assert seen["auth"] == "Bearer token-abc"
        assert seen["body"] == {
            "messaging_product": "whatsapp",
            "to": "15551234567",
            "type": "text",
            "text": {"body": "hi"},
        }

    def test_send_template_without_parameters(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"messages": [{"id": "wamid.T"}]})

        make_client(handler).send_template(CREDENTIALS, "15551234567", "welcome")

        template = seen["body"]["template"]
        assert template["name"] == "welcome"
        assert template["language"] == {"code": "en_GB"}
        assert template["components"] == []

    def test_error_response(self):
        def handler(request):
            return httpx.Response(401, json={"error": {"message": "Invalid OAuth access token"}})

        with pytest.raises(ProviderError) as exc_info:
            make_client(handler).send_text(CREDENTIALS, "15551234567", "hi")

        assert exc_info.value.reason == "Invalid OAuth access token"
        assert exc_info.value.status_code == 401

    def test_error_response_without_body(self):
        def handler(request):
            return httpx.Response(503, text="upstream down")

        with pytest.raises(ProviderError) as exc_info:
            make_client(handler).send_text(CREDENTIALS, "15551234567", "hi")

        assert exc_info.value.reason == "HTTP 503"

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(ProviderError) as exc_info:
            make_client(handler).send_text(CREDENTIALS, "15551234567", "hi")

        assert exc_info.value.reason.startswith("timeout")

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderError):
            make_client(handler).send_text(CREDENTIALS, "15551234567", "hi")

    def test_malformed_success_body(self):
        def handler(request):
            return httpx.Response(200, json={"messages": []})

        with pytest.raises(ProviderError) as exc_info:
            make_client(handler).send_text(CREDENTIALS, "15551234567", "hi")

        assert exc_info.value.reason == "malformed provider response"


class TestCredentials:

    def test_missing_credentials(self):
        class Unconfigured:
            provider_access_token = None
            provider_sender_id = "123"

        with pytest.raises(ProviderError):
            ProviderCredentials.for_tenant(Unconfigured())


class TestWorkflowHook:

    def test_skipped_when_unconfigured(self, monkeypatch):
        monkeypatch.setattr(workflow.settings, "WORKFLOW_WEBHOOK_BASE", None)

        assert workflow.trigger_workflow("abandoned-cart", {"tenant_id": 1}) is None

    def test_posts_payload(self, monkeypatch):
        calls = []

        def fake_post(url, json, headers, timeout):
            calls.append((url, json, headers, timeout))
            return httpx.Response(200, request=httpx.Request("POST", url))

        monkeypatch.setattr(workflow.settings, "WORKFLOW_WEBHOOK_BASE", "https://hooks.test/webhook/")
        monkeypatch.setattr(workflow.settings, "WORKFLOW_API_KEY", "key-1")
        monkeypatch.setattr(workflow.httpx, "post", fake_post)

        thread = workflow.trigger_workflow("abandoned-cart", {"tenant_id": 1})
        thread.join(timeout=5)

        url, payload, headers, _ = calls[0]
        assert url == "https://hooks.test/webhook/abandoned-cart"
        assert payload["tenant_id"] == 1
        assert payload["source"] == "cart-notifier"
        assert headers == {"Authorization": "Bearer key-1"}

    def test_failure_is_swallowed(self, monkeypatch):
        def failing_post(url, **kwargs):
            raise httpx.ConnectError("refused")

        monkeypatch.setattr(workflow.httpx, "post", failing_post)

        # Runs inline; must not raise
        workflow._post_workflow("https://hooks.test/x", None, {}, 1.0)
