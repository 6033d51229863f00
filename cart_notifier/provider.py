"""
Messaging provider client.

Wraps the provider's HTTP send API. One client instance is shared by the whole
process; tenant credentials are passed on every call, never read from the
environment, so tenants stay isolated and tests can inject a fake transport.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from cart_notifier.errors import ProviderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderCredentials:
    """Per-tenant sender identity and bearer token."""
    access_token: str
    sender_id: str

    @classmethod
    def for_tenant(cls, tenant) -> "ProviderCredentials":
        if not tenant.provider_access_token or not tenant.provider_sender_id:
            raise ProviderError("channel credentials not configured")
        return cls(
            access_token=tenant.provider_access_token,
            sender_id=tenant.provider_sender_id,
        )


class ProviderClient:
    """
    Blocking client for the provider's messages endpoint.

    Every failure mode (transport error, timeout, non-2xx, malformed body)
    surfaces as ProviderError so callers can record a send_failed Message
    instead of an ambiguous "maybe sent" state.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        template_language: str = "en_US",
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.template_language = template_language
        self._http = httpx.Client(timeout=timeout, transport=transport)

    def close(self) -> None:
        self._http.close()

    def send_text(self, credentials: ProviderCredentials, to: str, body: str) -> str:
        """
        Send a plain text message.

        Returns:
            Provider-assigned message id
        """
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": body},
        }
        return self._post_message(credentials, payload)

    def send_template(
        self,
        credentials: ProviderCredentials,
        to: str,
        template_name: str,
        parameters: Optional[list[str]] = None,
    ) -> str:
        """
        Send a pre-approved provider template with positional text parameters.

        Returns:
            Provider-assigned message id
        """
        parameters = parameters or []
        components = []
        if parameters:
            components.append({
                "type": "body",
                "parameters": [{"type": "text", "text": p} for p in parameters],
            })
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "template",
            "template": {
                "name": template_name,
                "language": {"code": self.template_language},
                "components": components,
            },
        }
        return self._post_message(credentials, payload)

    def _post_message(self, credentials: ProviderCredentials, payload: dict[str, Any]) -> str:
        url = f"{self.base_url}/{credentials.sender_id}/messages"
        logger.debug(f"POST {url} type={payload['type']}")

        try:
            response = self._http.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {credentials.access_token}"},
            )
        except httpx.TimeoutException as e:
            logger.warning(f"Provider call timed out: {e}")
            raise ProviderError(f"timeout: {e}") from e
        except httpx.HTTPError as e:
            logger.warning(f"Provider transport error: {e}")
            raise ProviderError(f"transport error: {e}") from e

        if response.status_code >= 400:
            reason = _error_reason(response)
            logger.warning(f"Provider rejected message: status={response.status_code}, reason={reason}")
            raise ProviderError(reason, status_code=response.status_code)

        try:
            message_id = response.json()["messages"][0]["id"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderError("malformed provider response", status_code=response.status_code) from e

        logger.info(f"Provider accepted message: {message_id}")
        return message_id


def _error_reason(response: httpx.Response) -> str:
    try:
        return response.json()["error"]["message"]
    except (ValueError, KeyError, TypeError):
        return f"HTTP {response.status_code}"
