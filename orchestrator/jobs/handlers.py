"""
Built-in job handlers.

Handlers implement the JobHandler protocol and are registered in the job
registry at startup. Each one reports its outcome through the JobContext.
"""

import hashlib
import hmac
import json
from typing import Any, Callable
from urllib.parse import urlparse

import httpx

from orchestrator.config.logging import get_logger
from orchestrator.config.settings import Settings
from orchestrator.core.exceptions import ExternalServiceError
from orchestrator.jobs.context import JobContext
from orchestrator.jobs.models import ClaimedJob
from orchestrator.jobs.retry import RETRYABLE_STATUS_CODES

logger = get_logger(__name__)

WEBHOOK_PROVIDER = "webhook"
WEBHOOK_SECRET_ENV = "WEBHOOK_SIGNING_SECRET"
SIGNATURE_HEADER = "X-Webhook-Signature"


class EchoHandler:
    """
    Completes with its own payload. Used for smoke tests.

    Payload: any JSON object.
    """

    async def handle(self, job: ClaimedJob, ctx: JobContext) -> None:
        await ctx.complete({"ok": True, "echo": job.payload}, summary="Echoed payload")


def sign_body(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class WebhookDeliveryHandler:
    """
    Job handler that POSTs a JSON body to a webhook URL.

    Payload expected:
    {
        "url": "https://example.com/hook",
        "body": {...},
        "headers": {"X-Extra": "value"}  # optional
    }

    The request is signed with HMAC-SHA256 using WEBHOOK_SIGNING_SECRET.
    """

    def __init__(
        self,
        settings: Settings,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ):
        self.settings = settings
        self.client_factory = client_factory or self._default_client

    def _default_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.external_call_timeout_ms / 1000,
            follow_redirects=False,
        )

    async def handle(self, job: ClaimedJob, ctx: JobContext) -> None:
        if not await ctx.require_credentials("Webhook", [WEBHOOK_SECRET_ENV]):
            return

        url = str(job.payload.get("url") or "").strip()
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            await ctx.fail("Invalid payload: missing or invalid url")
            return

        headers = job.payload.get("headers") or {}
        if not isinstance(headers, dict):
            await ctx.fail("Invalid payload: headers must be an object")
            return

        body = json.dumps(job.payload.get("body", {}), separators=(",", ":")).encode()
        secret = ctx.env[WEBHOOK_SECRET_ENV].strip()
        request_headers = {
            **{str(k): str(v) for k, v in headers.items()},
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_body(secret, body),
            "X-Job-Id": str(job.id),
        }

        async def deliver() -> httpx.Response:
            async with self.client_factory() as client:
                try:
                    response = await client.post(url, content=body, headers=request_headers)
                except httpx.TimeoutException as e:
                    raise ExternalServiceError(
                        WEBHOOK_PROVIDER, f"Webhook request timed out: {e}", retryable=True
                    ) from e
                except httpx.TransportError as e:
                    raise ExternalServiceError(
                        WEBHOOK_PROVIDER, f"Webhook network error: {e}", retryable=True
                    ) from e

            if response.is_error:
                raise ExternalServiceError(
                    WEBHOOK_PROVIDER,
                    f"Webhook delivery failed: HTTP {response.status_code}",
                    retryable=response.status_code in RETRYABLE_STATUS_CODES,
                    status=response.status_code,
                    raw_snippet=response.text,
                )
            return response

        response = await ctx.guarded_call(
            deliver,
            label="Webhook delivery",
            breaker_key=f"{WEBHOOK_PROVIDER}:{parsed.netloc}",
        )

        result: dict[str, Any] = {
            "ok": True,
            "status": response.status_code,
            "url": url,
        }
        await ctx.complete(
            result, summary=f"Delivered to {parsed.netloc}: HTTP {response.status_code}"
        )
