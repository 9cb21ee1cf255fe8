"""Inbound GitHub webhook handling.

Verifies the HMAC-SHA256 signature over the raw body, parses the event
envelope, drops insignificant and duplicate deliveries, records the delivery
and hands the event to the sync engine.

Duplicate suppression is per (repository, event type): a second delivery
inside the dedup window (60 s by default) is dropped without processing.
"""

import hashlib
import hmac
import json
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from ...metrics import webhook_deliveries_total
from ...models import WebhookDelivery, parse_timestamp, utcnow

if TYPE_CHECKING:
    from ...store import AgentStore
    from .sync import GitHubSyncService

logger = logging.getLogger("subagents.github.webhooks")

__all__ = [
    "SIGNATURE_HEADER",
    "VALID_EVENT_TYPES",
    "GitHubWebhookHandler",
    "RepositoryInfo",
    "WebhookEvent",
    "WebhookOutcome",
    "WebhookStatus",
    "WebhookValidationResult",
    "is_valid_timestamp",
    "sanitize_payload",
]

SIGNATURE_HEADER = "x-hub-signature-256"
EVENT_HEADER = "x-github-event"
DELIVERY_HEADER = "x-github-delivery"

VALID_EVENT_TYPES = frozenset(
    {
        "push",
        "release",
        "repository",
        "star",
        "fork",
        "issues",
        "pull_request",
        "watch",
        "ping",
    }
)

# Dedup cache is pruned once it grows past this many keys
DEDUP_CACHE_LIMIT = 1000

SENSITIVE_PAYLOAD_FIELDS = ("access_token", "password", "secret", "private_key")


class WebhookStatus(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    INVALID_SIGNATURE = "invalid_signature"
    INVALID_PAYLOAD = "invalid_payload"
    ERROR = "error"


@dataclass
class WebhookValidationResult:
    valid: bool
    error: str | None = None


@dataclass
class RepositoryInfo:
    owner: str
    repo: str
    full_name: str


@dataclass
class WebhookEvent:
    """Parsed webhook envelope."""

    event_type: str
    payload: dict[str, Any]
    delivery_id: str | None = None
    action: str | None = None
    repository: dict[str, Any] | None = None
    sender: dict[str, Any] | None = None
    installation: dict[str, Any] | None = None


@dataclass
class WebhookOutcome:
    """What process_delivery() did with one delivery."""

    status: WebhookStatus
    message: str
    event_type: str | None = None
    repository: str | None = None
    delivery_id: str | None = None
    sync_event: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "message": self.message,
            "event_type": self.event_type,
            "repository": self.repository,
            "delivery_id": self.delivery_id,
            "sync_event": self.sync_event,
        }


def sanitize_payload(payload: Any) -> Any:
    """Copy of payload without keys that look like credentials, at any depth."""
    if isinstance(payload, list):
        return [sanitize_payload(item) for item in payload]
    if isinstance(payload, dict):
        return {
            key: sanitize_payload(value)
            for key, value in payload.items()
            if not any(f in str(key).lower() for f in SENSITIVE_PAYLOAD_FIELDS)
        }
    return payload


def is_valid_timestamp(
    timestamp: str | datetime | None,
    tolerance_minutes: int = 5,
    now: datetime | None = None,
) -> bool:
    """True when timestamp lies within tolerance_minutes of now, either side."""
    parsed = parse_timestamp(timestamp)
    if parsed is None:
        return False
    now = now or utcnow()
    return abs(now - parsed) <= timedelta(minutes=tolerance_minutes)


class GitHubWebhookHandler:
    """Verifies, filters and dispatches GitHub webhook deliveries.

    Args:
        secret: Shared webhook secret. When None, signatures are not checked.
        dedup_window_seconds: Window for dropping repeat (repository, event) pairs
        clock: Monotonic time source in seconds, injectable for tests
    """

    def __init__(
        self,
        secret: str | None = None,
        dedup_window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.secret = secret or None
        self.dedup_window_seconds = dedup_window_seconds
        self._clock = clock
        self._last_processed: dict[str, float] = {}

    # --- Signatures ---

    @staticmethod
    def generate_signature(body: bytes, secret: str) -> str:
        digest = hmac.new(secret.encode("utf-8"), msg=body, digestmod=hashlib.sha256)
        return f"sha256={digest.hexdigest()}"

    def validate_signature(
        self, body: bytes, signature: str | None
    ) -> WebhookValidationResult:
        """Constant-time check of a ``sha256=<hex>`` signature over the raw body."""
        if not self.secret:
            return WebhookValidationResult(valid=True)
        if not signature:
            return WebhookValidationResult(valid=False, error="Missing signature")
        expected = self.generate_signature(body, self.secret)
        if hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
            return WebhookValidationResult(valid=True)
        return WebhookValidationResult(valid=False, error="Invalid signature")

    # --- Parsing ---

    def parse_payload(
        self, body: bytes | str, headers: Mapping[str, str]
    ) -> WebhookEvent | None:
        """Parse a delivery; None when the event header or JSON body is unusable."""
        lowered = {k.lower(): v for k, v in headers.items()}
        event_type = lowered.get(EVENT_HEADER)
        if not event_type:
            logger.warning("webhook_missing_event_header")
            return None
        try:
            payload = json.loads(body)
        except (TypeError, ValueError) as e:
            logger.warning(
                "webhook_payload_invalid",
                extra={"event_type": event_type, "error": str(e)},
            )
            return None
        if not isinstance(payload, dict):
            return None
        return WebhookEvent(
            event_type=event_type,
            payload=payload,
            delivery_id=lowered.get(DELIVERY_HEADER),
            action=payload.get("action"),
            repository=payload.get("repository"),
            sender=payload.get("sender"),
            installation=payload.get("installation"),
        )

    @staticmethod
    def is_valid_event_type(event_type: str) -> bool:
        return event_type in VALID_EVENT_TYPES

    @staticmethod
    def extract_repository_info(payload: dict[str, Any]) -> RepositoryInfo | None:
        repository = payload.get("repository")
        if not isinstance(repository, dict) or not repository.get("full_name"):
            return None
        full_name = repository["full_name"]
        owner = (repository.get("owner") or {}).get("login") or full_name.split("/")[0]
        return RepositoryInfo(
            owner=owner,
            repo=repository.get("name") or full_name.split("/")[-1],
            full_name=full_name,
        )

    @staticmethod
    def is_significant_change(event_type: str, payload: dict[str, Any]) -> bool:
        """Whether an event can change anything a sync would pick up."""
        action = payload.get("action")
        if event_type == "push":
            default_branch = (payload.get("repository") or {}).get("default_branch")
            branches = {default_branch} if default_branch else {"main", "master"}
            return payload.get("ref") in {f"refs/heads/{b}" for b in branches}
        if event_type == "release":
            return action == "published"
        if event_type == "repository":
            return action in ("updated", "edited", "publicized", "privatized")
        if event_type in ("star", "fork", "watch"):
            return True
        if event_type in ("issues", "pull_request"):
            return action in ("opened", "closed")
        return False

    # --- Dedup ---

    def should_process_webhook(self, full_name: str, event_type: str) -> bool:
        """False when the same (repository, event) was processed within the window."""
        key = f"{full_name}:{event_type}"
        now = self._clock()
        last = self._last_processed.get(key)
        if last is not None and now - last < self.dedup_window_seconds:
            return False
        self._last_processed[key] = now
        if len(self._last_processed) > DEDUP_CACHE_LIMIT:
            cutoff = now - self.dedup_window_seconds * 2
            self._last_processed = {
                k: v for k, v in self._last_processed.items() if v >= cutoff
            }
        return True

    # --- Full pipeline ---

    async def process_delivery(
        self,
        body: bytes,
        headers: Mapping[str, str],
        sync_service: "GitHubSyncService",
        store: "AgentStore | None" = None,
    ) -> WebhookOutcome:
        """Verify, parse, filter, record and dispatch one delivery.

        Never raises for bad input; the outcome status tells the caller what
        HTTP response to send.
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        event_type = lowered.get(EVENT_HEADER) or "unknown"
        delivery_id = lowered.get(DELIVERY_HEADER)

        validation = self.validate_signature(body, lowered.get(SIGNATURE_HEADER))
        if not validation.valid:
            return self._outcome(
                WebhookStatus.INVALID_SIGNATURE,
                validation.error or "Invalid signature",
                event_type,
                delivery_id=delivery_id,
            )

        event = self.parse_payload(body, lowered)
        if event is None:
            return self._outcome(
                WebhookStatus.INVALID_PAYLOAD,
                "Failed to parse webhook payload",
                event_type,
                delivery_id=delivery_id,
            )
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "webhook_payload",
                extra={
                    "event_type": event.event_type,
                    "delivery_id": delivery_id,
                    "payload": sanitize_payload(event.payload),
                },
            )

        if not self.is_valid_event_type(event.event_type):
            return self._outcome(
                WebhookStatus.IGNORED,
                "Unsupported event type",
                event.event_type,
                delivery_id=delivery_id,
            )
        if event.event_type == "ping":
            return self._outcome(
                WebhookStatus.PROCESSED,
                "Webhook received successfully",
                event.event_type,
                delivery_id=delivery_id,
            )

        info = self.extract_repository_info(event.payload)
        if info is None:
            return self._outcome(
                WebhookStatus.INVALID_PAYLOAD,
                "Repository information not found in payload",
                event.event_type,
                delivery_id=delivery_id,
            )

        if not self.is_significant_change(event.event_type, event.payload):
            return self._outcome(
                WebhookStatus.IGNORED,
                "Event received but not significant",
                event.event_type,
                info.full_name,
                delivery_id,
            )
        if not self.should_process_webhook(info.full_name, event.event_type):
            return self._outcome(
                WebhookStatus.DUPLICATE,
                "Event rate limited",
                event.event_type,
                info.full_name,
                delivery_id,
            )

        record = None
        if store is not None:
            record = await store.record_webhook_delivery(
                WebhookDelivery(
                    event_type=event.event_type,
                    delivery_id=delivery_id,
                    action=event.action,
                    repository_full_name=info.full_name,
                )
            )

        try:
            sync_event = await sync_service.handle_webhook_event(
                event.event_type, event.payload
            )
        except Exception as e:
            logger.error(
                "webhook_dispatch_failed",
                extra={
                    "event_type": event.event_type,
                    "repository": info.full_name,
                    "delivery_id": delivery_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            if record is not None:
                await store.mark_webhook_processed(record.id, error=str(e))
            return self._outcome(
                WebhookStatus.ERROR,
                f"Webhook processing failed: {e}",
                event.event_type,
                info.full_name,
                delivery_id,
            )

        if record is not None:
            await store.mark_webhook_processed(record.id)

        if sync_event is None:
            return self._outcome(
                WebhookStatus.IGNORED,
                "Repository sync not enabled",
                event.event_type,
                info.full_name,
                delivery_id,
            )
        outcome = self._outcome(
            WebhookStatus.PROCESSED,
            "Webhook processed successfully",
            event.event_type,
            info.full_name,
            delivery_id,
        )
        outcome.sync_event = sync_event.value
        return outcome

    @staticmethod
    def _outcome(
        status: WebhookStatus,
        message: str,
        event_type: str | None,
        repository: str | None = None,
        delivery_id: str | None = None,
    ) -> WebhookOutcome:
        webhook_deliveries_total.labels(
            event_type=event_type or "unknown", outcome=status.value
        ).inc()
        log = logger.warning if status in (
            WebhookStatus.INVALID_SIGNATURE,
            WebhookStatus.INVALID_PAYLOAD,
            WebhookStatus.ERROR,
        ) else logger.info
        log(
            "webhook_delivery_handled",
            extra={
                "event_type": event_type,
                "repository": repository,
                "delivery_id": delivery_id,
                "outcome": status.value,
                "reason": message,
            },
        )
        return WebhookOutcome(
            status=status,
            message=message,
            event_type=event_type,
            repository=repository,
            delivery_id=delivery_id,
        )
