"""
Tests for the Twitter, webhook and HTTP update handlers.
"""

import json

import httpx
import pytest

from flowmachine.handlers import default_handler_registry
from flowmachine.handlers.base import HandlerContext, PublishContent
from flowmachine.handlers.twitter import ELLIPSIS, TWEET_LIMIT, TwitterPublishHandler, format_tweet
from flowmachine.handlers.webhook import HttpUpdateHandler, WebhookPublishHandler
from flowmachine.runtime.errors import HandlerError
from flowmachine.runtime.types import FlowStepId, StepType


class Endpoint:
    """MockTransport handler returning a fixed response and recording requests."""

    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self.body = body if body is not None else {"ok": True}
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.body)

    def client(self):
        return httpx.Client(transport=httpx.MockTransport(self))


def _context(config, engine_data=None):
    return HandlerContext(
        job_id="job-1",
        flow_step_id=FlowStepId("ps-out", "fl-1"),
        handler_config=config,
        engine_data=engine_data or {},
    )


class TestFormatTweet:
    """Tests for tweet text fitting."""

    def test_short_text_with_link(self):
        """The source link is appended after a space."""
        assert format_tweet("Hello", "https://x.example/1") == "Hello https://x.example/1"

    def test_link_counts_as_fixed_length(self):
        """Long text leaves room for a t.co link and ends with an ellipsis."""
        url = "https://example.com/" + "a" * 100
        tweet = format_tweet("x" * 400, url)
        text, link = tweet.rsplit(" ", 1)
        assert link == url
        assert len(text) == TWEET_LIMIT - 24
        assert text.endswith(ELLIPSIS)

    def test_without_link(self):
        """link_handling none ignores the source URL."""
        tweet = format_tweet("y" * 300, "https://x.example/1", link_handling="none")
        assert len(tweet) == TWEET_LIMIT
        assert "https" not in tweet

    def test_non_http_link_ignored(self):
        """Only http(s) sources are appended."""
        assert format_tweet("Hi", "ftp://x") == "Hi"


class TestTwitterPublish:
    """Tests for TwitterPublishHandler.publish."""

    def test_posts_tweet(self):
        """A 201 reply yields the tweet id and URL."""
        endpoint = Endpoint(201, {"data": {"id": "1234"}})
        handler = TwitterPublishHandler(client=endpoint.client())
        result = handler.publish(
            _context({"access_token": "tok", "api_base": "https://api.test/2"}),
            PublishContent(content="Big news", source_url="https://news.example.com/1"),
        )

        assert result["tweet_id"] == "1234"
        assert result["tweet_url"] == "https://twitter.com/i/web/status/1234"
        request = endpoint.requests[0]
        assert str(request.url) == "https://api.test/2/tweets"
        assert request.headers["Authorization"] == "Bearer tok"
        assert json.loads(request.content) == {"text": "Big news https://news.example.com/1"}

    def test_non_201_is_error(self):
        """Anything but 201 Created fails the publish."""
        handler = TwitterPublishHandler(client=Endpoint(403, {"detail": "duplicate"}).client())
        with pytest.raises(HandlerError):
            handler.publish(_context({"access_token": "tok"}), PublishContent(content="x"))

    def test_missing_token(self, monkeypatch):
        """Publishing without credentials is a handler error."""
        monkeypatch.delenv("TWITTER_ACCESS_TOKEN", raising=False)
        endpoint = Endpoint(201)
        with pytest.raises(HandlerError):
            TwitterPublishHandler(client=endpoint.client()).publish(_context({}), PublishContent(content="x"))
        assert endpoint.requests == []


class TestWebhookPublish:
    """Tests for WebhookPublishHandler."""

    def test_posts_json_with_idempotency_key(self):
        """Repeated deliveries of the same item carry the same key."""
        endpoint = Endpoint(200, {"id": "p1"})
        handler = WebhookPublishHandler(client=endpoint.client())
        config = {"url": "https://hooks.test/in", "secret": "s3", "headers": {"X-Extra": "1"}}
        content = PublishContent(content="Text", title="T", metadata={"item_key": "rss:1"})

        result = handler.publish(_context(config), content)
        handler.publish(_context(config), content)

        assert result == {"status_code": 200, "response": {"id": "p1"}}
        first, second = endpoint.requests
        assert first.method == "POST"
        assert first.headers["Idempotency-Key"] == second.headers["Idempotency-Key"]
        assert first.headers["X-Flowmachine-Secret"] == "s3"
        assert first.headers["X-Extra"] == "1"
        assert json.loads(first.content)["content"] == "Text"

    def test_different_items_get_different_keys(self):
        """The key depends on the item."""
        endpoint = Endpoint()
        handler = WebhookPublishHandler(client=endpoint.client())
        handler.publish(_context({"url": "https://h"}), PublishContent(content="A", metadata={"item_key": "rss:1"}))
        handler.publish(_context({"url": "https://h"}), PublishContent(content="A", metadata={"item_key": "rss:2"}))
        assert endpoint.requests[0].headers["Idempotency-Key"] != endpoint.requests[1].headers["Idempotency-Key"]

    def test_error_status(self):
        """4xx/5xx responses are handler errors."""
        handler = WebhookPublishHandler(client=Endpoint(502).client())
        with pytest.raises(HandlerError):
            handler.publish(_context({"url": "https://h"}), PublishContent(content="A"))

    def test_url_required(self):
        """The webhook URL is required."""
        with pytest.raises(HandlerError):
            WebhookPublishHandler(client=Endpoint().client()).publish(_context({}), PublishContent(content="A"))


class TestHttpUpdate:
    """Tests for HttpUpdateHandler."""

    def test_template_uses_encoded_source_url(self):
        """The URL template is filled from the item's source URL."""
        endpoint = Endpoint(200, {"updated": True})
        handler = HttpUpdateHandler(client=endpoint.client())
        config = {"url_template": "https://cms.test/api/posts?source={source_url_encoded}", "method": "patch"}

        result = handler.update(_context(config), PublishContent(content="New text", source_url="https://a.test/x?y=1"))

        request = endpoint.requests[0]
        assert request.method == "PATCH"
        assert result["updated_url"] == "https://cms.test/api/posts?source=https%3A%2F%2Fa.test%2Fx%3Fy%3D1"
        assert json.loads(request.content)["content"] == "New text"

    def test_source_url_from_engine_data(self):
        """Engine data supplies the source URL when the content has none."""
        endpoint = Endpoint()
        handler = HttpUpdateHandler(client=endpoint.client())
        handler.update(
            _context({"url_template": "{source_url}"}, engine_data={"source_url": "https://a.test/post"}),
            PublishContent(content="x"),
        )
        assert endpoint.requests[0].method == "PUT"
        assert str(endpoint.requests[0].url) == "https://a.test/post"

    def test_missing_source_url(self):
        """A template needing source_url fails without one."""
        with pytest.raises(HandlerError):
            HttpUpdateHandler(client=Endpoint().client()).update(
                _context({"url_template": "{source_url}"}), PublishContent(content="x")
            )

    def test_unsupported_method(self):
        """Only PUT and PATCH are allowed."""
        with pytest.raises(HandlerError):
            HttpUpdateHandler(client=Endpoint().client()).update(
                _context({"url_template": "https://a", "method": "DELETE"}), PublishContent(content="x")
            )


class TestDefaultRegistry:
    """Tests for the built-in handler registry."""

    def test_slugs_per_step_type(self):
        """Every built-in handler is registered under its step type."""
        registry = default_handler_registry()
        assert registry.slugs(StepType.FETCH) == ["rss"]
        assert registry.slugs(StepType.PUBLISH) == ["twitter", "webhook"]
        assert registry.slugs(StepType.UPDATE) == ["http_update"]
        assert registry.find("http_update").label == "HTTP Update"
