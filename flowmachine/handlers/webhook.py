"""
webhook.py - Generic HTTP publish and update handlers.

WebhookPublishHandler POSTs content as JSON to a configured URL.
HttpUpdateHandler sends content to an existing resource, addressed by a URL
template that may reference job engine data (``{source_url}``).

Settings (publish):
    url:      Endpoint receiving the POST.
    headers:  Extra request headers.
    secret:   Optional value sent as ``X-Flowmachine-Secret``.

Settings (update):
    url_template: e.g. ``{source_url}`` or
                  ``https://cms.example.com/api/posts?source={source_url_encoded}``
    method:       PUT (default) or PATCH.
    headers:      Extra request headers.

Re-run note: both handlers send an ``Idempotency-Key`` header derived from
the job and item so receivers can drop repeated deliveries.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from flowmachine.handlers.base import HandlerContext, PublishContent, PublishHandler, UpdateHandler
from flowmachine.runtime.errors import HandlerError

logger = logging.getLogger(__name__)


def idempotency_key(context: HandlerContext, content: PublishContent) -> str:
    basis = "|".join(
        [
            context.job_id,
            context.flow_step_id.pipeline_step_id,
            context.flow_step_id.flow_id,
            str(content.metadata.get("item_key") or ""),
            content.content,
        ]
    )
    return hashlib.sha256(basis.encode("utf-8")).hexdigest()


class _HttpHandlerMixin:
    _client: Optional[httpx.Client] = None

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=30.0)
        return self._client

    def _send(self, method: str, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> httpx.Response:
        try:
            response = self._get_client().request(method, url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise HandlerError(f"{method} {url} failed: {e}", context={"url": url}) from e
        if response.status_code >= 400:
            raise HandlerError(
                f"{method} {url} returned {response.status_code}",
                context={"url": url, "status_code": response.status_code, "body": response.text[:500]},
            )
        return response


def _response_data(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        body = {"text": response.text[:500]}
    return body if isinstance(body, dict) else {"body": body}


class WebhookPublishHandler(_HttpHandlerMixin, PublishHandler):
    """POST content to a webhook."""

    slug = "webhook"
    label = "Webhook"
    tool_name = "webhook_publish"
    tool_description = "Publish content by sending it to the configured webhook endpoint."
    settings_defaults = {"url": "", "headers": {}, "secret": None}

    def __init__(self, client: Optional[httpx.Client] = None):
        self._client = client

    def publish(self, context: HandlerContext, content: PublishContent) -> Dict[str, Any]:
        settings = self.settings(context.handler_config)
        url = settings.get("url")
        if not url:
            raise HandlerError("Webhook handler requires 'url'", context={"handler": self.slug})

        headers = {"Idempotency-Key": idempotency_key(context, content)}
        headers.update(settings.get("headers") or {})
        if settings.get("secret"):
            headers["X-Flowmachine-Secret"] = settings["secret"]

        payload = {
            "content": content.content,
            "title": content.title,
            "source_url": content.source_url,
            "image_url": content.image_url,
            "metadata": content.metadata,
            "job_id": context.job_id,
        }
        response = self._send("POST", url, payload, headers)
        logger.info("Webhook publish for job %s -> %s (%d)", context.job_id, url, response.status_code)
        return {"status_code": response.status_code, "response": _response_data(response)}


class HttpUpdateHandler(_HttpHandlerMixin, UpdateHandler):
    """Update an existing remote resource over HTTP."""

    slug = "http_update"
    label = "HTTP Update"
    tool_name = "http_update"
    tool_description = "Replace the content of the source item at its origin with the provided text."
    settings_defaults = {"url_template": "", "method": "PUT", "headers": {}}

    def __init__(self, client: Optional[httpx.Client] = None):
        self._client = client

    def update(self, context: HandlerContext, content: PublishContent) -> Dict[str, Any]:
        settings = self.settings(context.handler_config)
        template = settings.get("url_template")
        if not template:
            raise HandlerError("HTTP update handler requires 'url_template'", context={"handler": self.slug})

        source_url = content.source_url or context.engine_data.get("source_url")
        if "{source_url}" in template and not source_url:
            raise HandlerError("No source_url available to address the update", context={"handler": self.slug})
        url = template.format(
            source_url=source_url or "",
            source_url_encoded=quote(source_url or "", safe=""),
            job_id=context.job_id,
        )

        method = str(settings.get("method") or "PUT").upper()
        if method not in ("PUT", "PATCH"):
            raise HandlerError(f"Unsupported update method {method}", context={"handler": self.slug})

        headers = {"Idempotency-Key": idempotency_key(context, content)}
        headers.update(settings.get("headers") or {})
        payload = {"content": content.content, "title": content.title, "metadata": content.metadata}
        response = self._send(method, url, payload, headers)
        logger.info("HTTP update for job %s -> %s %s (%d)", context.job_id, method, url, response.status_code)
        return {"status_code": response.status_code, "updated_url": url, "response": _response_data(response)}
