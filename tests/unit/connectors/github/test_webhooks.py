"""Tests for inbound webhook verification, filtering and dispatch."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest

from subagents.connectors.github.sync import SyncEvent
from subagents.connectors.github.webhooks import (
    DEDUP_CACHE_LIMIT,
    GitHubWebhookHandler,
    WebhookStatus,
    is_valid_timestamp,
    sanitize_payload,
)
from subagents.store import InMemoryAgentStore

SECRET = "It's a Secret to Everybody"

PUSH_PAYLOAD = {
    "ref": "refs/heads/main",
    "repository": {
        "name": "agents",
        "full_name": "acme/agents",
        "owner": {"login": "acme"},
        "default_branch": "main",
    },
}


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def handler(clock):
    return GitHubWebhookHandler(secret=SECRET, dedup_window_seconds=60, clock=clock)


@pytest.fixture
def sync_service():
    service = Mock()
    service.handle_webhook_event = AsyncMock(return_value=SyncEvent.PUSH)
    return service


def delivery(payload=PUSH_PAYLOAD, event="push", secret=SECRET, delivery_id="d-1"):
    body = json.dumps(payload).encode()
    headers = {"X-GitHub-Event": event, "X-GitHub-Delivery": delivery_id}
    if secret:
        headers["X-Hub-Signature-256"] = GitHubWebhookHandler.generate_signature(body, secret)
    return body, headers


# =============================================================================
# Signatures
# =============================================================================


class TestSignatures:
    def test_known_signature(self):
        # Example from GitHub's webhook validation docs
        assert GitHubWebhookHandler.generate_signature(b"Hello, World!", SECRET) == (
            "sha256=757107ea0eb2509fc211221cce984b8a37570b6d7586c22c46f4379c8b043e17"
        )

    def test_valid_signature(self, handler):
        body, headers = delivery()
        result = handler.validate_signature(body, headers["X-Hub-Signature-256"])
        assert result.valid is True
        assert result.error is None

    def test_single_byte_change_invalidates(self, handler):
        body, headers = delivery()
        tampered = bytearray(body)
        tampered[5] ^= 0x01

        result = handler.validate_signature(bytes(tampered), headers["X-Hub-Signature-256"])

        assert result.valid is False
        assert result.error == "Invalid signature"

    def test_missing_signature(self, handler):
        result = handler.validate_signature(b"{}", None)
        assert result.valid is False
        assert result.error == "Missing signature"

    def test_no_secret_accepts_everything(self):
        assert GitHubWebhookHandler().validate_signature(b"{}", None).valid is True


# =============================================================================
# Parsing and classification
# =============================================================================


class TestParsing:
    def test_parse_payload(self, handler):
        body, headers = delivery(payload={**PUSH_PAYLOAD, "sender": {"login": "octo"}})

        event = handler.parse_payload(body, headers)

        assert event.event_type == "push"
        assert event.delivery_id == "d-1"
        assert event.repository["full_name"] == "acme/agents"
        assert event.sender == {"login": "octo"}

    def test_missing_event_header(self, handler):
        assert handler.parse_payload(b"{}", {}) is None

    @pytest.mark.parametrize("body", [b"{not json", b"[1, 2]", b""])
    def test_bad_body(self, handler, body):
        assert handler.parse_payload(body, {"X-GitHub-Event": "push"}) is None

    def test_extract_repository_info(self, handler):
        info = handler.extract_repository_info(PUSH_PAYLOAD)
        assert (info.owner, info.repo, info.full_name) == ("acme", "agents", "acme/agents")
        assert handler.extract_repository_info({"repository": {}}) is None

    @pytest.mark.parametrize(
        "event_type,payload,expected",
        [
            ("push", PUSH_PAYLOAD, True),
            ("push", {**PUSH_PAYLOAD, "ref": "refs/heads/feature"}, False),
            ("push", {"ref": "refs/heads/master", "repository": {}}, True),
            ("push", {"ref": "refs/tags/v1.0", "repository": {}}, False),
            ("release", {"action": "published"}, True),
            ("release", {"action": "created"}, False),
            ("repository", {"action": "edited"}, True),
            ("repository", {"action": "transferred"}, False),
            ("star", {"action": "deleted"}, True),
            ("fork", {}, True),
            ("issues", {"action": "opened"}, True),
            ("issues", {"action": "labeled"}, False),
            ("pull_request", {"action": "synchronize"}, False),
        ],
    )
    def test_is_significant_change(self, handler, event_type, payload, expected):
        assert handler.is_significant_change(event_type, payload) is expected


class TestHelpers:
    def test_sanitize_payload(self):
        payload = {
            "repository": {"full_name": "acme/agents"},
            "installation": {"access_token": "ghs_x", "id": 1},
            "hooks": [{"config": {"secret": "s", "url": "u"}}],
            "user_password": "p",
        }

        assert sanitize_payload(payload) == {
            "repository": {"full_name": "acme/agents"},
            "installation": {"id": 1},
            "hooks": [{"config": {"url": "u"}}],
        }

    def test_is_valid_timestamp(self):
        now = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert is_valid_timestamp("2030-01-01T12:04:00Z", now=now)
        assert is_valid_timestamp(now - timedelta(minutes=5), now=now)
        assert not is_valid_timestamp("2030-01-01T11:50:00Z", now=now)
        assert not is_valid_timestamp("yesterday", now=now)
        assert not is_valid_timestamp(None, now=now)


# =============================================================================
# Dedup window
# =============================================================================


class TestDedup:
    def test_repeat_inside_window_dropped(self, handler, clock):
        assert handler.should_process_webhook("acme/agents", "push") is True
        clock.now += 59
        assert handler.should_process_webhook("acme/agents", "push") is False

    def test_repeat_after_window_processed(self, handler, clock):
        assert handler.should_process_webhook("acme/agents", "push") is True
        clock.now += 60
        assert handler.should_process_webhook("acme/agents", "push") is True

    def test_keys_are_repository_and_event(self, handler):
        assert handler.should_process_webhook("acme/agents", "push") is True
        assert handler.should_process_webhook("acme/agents", "star") is True
        assert handler.should_process_webhook("acme/other", "push") is True

    def test_cache_pruned(self, handler, clock):
        for i in range(DEDUP_CACHE_LIMIT):
            handler.should_process_webhook(f"acme/repo-{i}", "push")
        clock.now += 1000

        handler.should_process_webhook("acme/new", "push")

        assert list(handler._last_processed) == ["acme/new:push"]


# =============================================================================
# process_delivery
# =============================================================================


class TestProcessDelivery:
    @pytest.mark.asyncio
    async def test_processed_and_recorded(self, handler, sync_service):
        store = InMemoryAgentStore()
        body, headers = delivery()

        outcome = await handler.process_delivery(body, headers, sync_service, store)

        assert outcome.status == WebhookStatus.PROCESSED
        assert outcome.sync_event == "push"
        assert outcome.repository == "acme/agents"
        sync_service.handle_webhook_event.assert_awaited_once_with("push", PUSH_PAYLOAD)
        [record] = await store.list_webhook_deliveries()
        assert record.delivery_id == "d-1"
        assert record.processed is True
        assert record.processed_at is not None

    @pytest.mark.asyncio
    async def test_invalid_signature_rejected_before_parsing(self, handler, sync_service):
        body, headers = delivery(secret="wrong")

        outcome = await handler.process_delivery(body, headers, sync_service)

        assert outcome.status == WebhookStatus.INVALID_SIGNATURE
        sync_service.handle_webhook_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ping(self, handler, sync_service):
        body, headers = delivery(payload={"zen": "Keep it simple."}, event="ping")

        outcome = await handler.process_delivery(body, headers, sync_service)

        assert outcome.status == WebhookStatus.PROCESSED
        assert outcome.message == "Webhook received successfully"
        sync_service.handle_webhook_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unsupported_event_ignored(self, handler, sync_service):
        body, headers = delivery(event="deployment")
        outcome = await handler.process_delivery(body, headers, sync_service)
        assert outcome.status == WebhookStatus.IGNORED

    @pytest.mark.asyncio
    async def test_missing_repository(self, handler, sync_service):
        body, headers = delivery(payload={"ref": "refs/heads/main"})
        outcome = await handler.process_delivery(body, headers, sync_service)
        assert outcome.status == WebhookStatus.INVALID_PAYLOAD

    @pytest.mark.asyncio
    async def test_insignificant_event_not_dispatched(self, handler, sync_service):
        body, headers = delivery(payload={**PUSH_PAYLOAD, "ref": "refs/heads/feature"})

        outcome = await handler.process_delivery(body, headers, sync_service)

        assert outcome.status == WebhookStatus.IGNORED
        sync_service.handle_webhook_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_duplicate_inside_window(self, handler, sync_service, clock):
        body, headers = delivery()

        first = await handler.process_delivery(body, headers, sync_service)
        clock.now += 10
        second = await handler.process_delivery(body, headers, sync_service)

        assert first.status == WebhookStatus.PROCESSED
        assert second.status == WebhookStatus.DUPLICATE
        assert sync_service.handle_webhook_event.await_count == 1

    @pytest.mark.asyncio
    async def test_no_binding_is_ignored(self, handler, sync_service):
        sync_service.handle_webhook_event.return_value = None
        body, headers = delivery()

        outcome = await handler.process_delivery(body, headers, sync_service)

        assert outcome.status == WebhookStatus.IGNORED
        assert outcome.message == "Repository sync not enabled"

    @pytest.mark.asyncio
    async def test_dispatch_error_recorded(self, handler, sync_service):
        store = InMemoryAgentStore()
        sync_service.handle_webhook_event.side_effect = RuntimeError("store offline")
        body, headers = delivery()

        outcome = await handler.process_delivery(body, headers, sync_service, store)

        assert outcome.status == WebhookStatus.ERROR
        assert outcome.message == "Webhook processing failed: store offline"
        [record] = await store.list_webhook_deliveries()
        assert record.processed is False
        assert record.error == "store offline"
