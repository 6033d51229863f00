"""
External workflow hook.

Non-critical: the automation hook is notified on a detached daemon thread with
its own timeout, and any failure is logged and dropped. Nothing here may touch
Message state.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from cart_notifier.config import settings

logger = logging.getLogger(__name__)

SOURCE_NAME = "cart-notifier"


def _post_workflow(url: str, api_key: Optional[str], payload: dict[str, Any], timeout: float) -> None:
    headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
    try:
        response = httpx.post(url, json=payload, headers=headers, timeout=timeout)
        response.raise_for_status()
        logger.info(f"Workflow triggered: {url}")
    except httpx.HTTPError as e:
        logger.warning(f"Workflow trigger failed for {url}: {e}")


def trigger_workflow(workflow: str, data: dict[str, Any]) -> Optional[threading.Thread]:
    """
    Fire-and-forget notification of the automation hook.

    Returns the started thread, or None when no hook is configured.
    """
    if not settings.WORKFLOW_WEBHOOK_BASE:
        logger.debug("Workflow hook not configured, skipping trigger")
        return None

    url = f"{settings.WORKFLOW_WEBHOOK_BASE.rstrip('/')}/{workflow}"
    payload = {
        **data,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "source": SOURCE_NAME,
    }
    thread = threading.Thread(
        target=_post_workflow,
        args=(url, settings.WORKFLOW_API_KEY, payload, settings.WORKFLOW_TIMEOUT_SECONDS),
        name=f"workflow-{workflow}",
        daemon=True,
    )
    thread.start()
    return thread
