"""
Webhook Dispatcher - worker side of the webhook outbox.

Each ``run_batch`` call:
1. selects due, unleased pending deliveries (oldest next_attempt_at first)
2. claims each one with a single conditional UPDATE of ``locked_until``
   (zero rows affected = another worker owns it, skip)
3. builds the outbound payload through the subscriber's transform
4. POSTs it and records the outcome: sent, rescheduled with backoff,
   or dead-lettered as failed after ``max_attempts``

Delivery is at-least-once. A worker that dies mid-row leaves the lease to
expire, after which any worker can reclaim the row.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Sequence

from sqlalchemy import select, update, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, settings as app_settings
from app.core.exceptions import AppException, UpstreamFailureError
from app.core.logging import get_logger, set_tenant_id
from app.db.database import utcnow
from app.db.models.webhook_delivery import WebhookDelivery, DeliveryStatus
from app.db.models.webhook_subscription import WebhookSubscription
from app.domain.services.http_client import HttpClient, HttpxClient
from app.domain.services.pharmacy_client import PharmacyClient
from app.domain.services.webhook_transforms import SkipDelivery, resolve_transform

logger = get_logger(__name__)

DEFAULT_BACKOFF_SCHEDULE: tuple[int, ...] = (5, 15, 60, 300, 900, 3600, 21600, 86400)

_MAX_ERROR_LENGTH = 1000


def compute_backoff_seconds(attempt_count: int, schedule: Sequence[int] = DEFAULT_BACKOFF_SCHEDULE) -> int:
    """
    Delay before the next attempt, given how many attempts have been made.

    attempt_count=1 → schedule[0], ... ; beyond the table the last entry is reused.
    """
    if not schedule:
        return 0
    index = min(max(attempt_count, 1), len(schedule)) - 1
    return schedule[index]


@dataclass(frozen=True)
class DispatcherConfig:
    max_attempts: int = 10
    lease_seconds: int = 30
    backoff_schedule: tuple[int, ...] = DEFAULT_BACKOFF_SCHEDULE
    request_timeout_seconds: float = 10.0
    pharmacy_only_admin_notes: bool = True
    pharmacy_api_base_url: str = "http://localhost:4000"
    pharmacy_api_key: str = field(default="", repr=False)

    @classmethod
    def from_settings(cls, s: Settings | None = None) -> "DispatcherConfig":
        s = s or app_settings
        return cls(
            max_attempts=s.WEBHOOK_MAX_ATTEMPTS,
            lease_seconds=s.WEBHOOK_LOCK_SECONDS,
            backoff_schedule=s.webhook_backoff_schedule,
            request_timeout_seconds=s.WEBHOOK_REQUEST_TIMEOUT_SECONDS,
            pharmacy_only_admin_notes=s.PHARMACY_ONLY_ADMIN_NOTES,
            pharmacy_api_base_url=s.PHARMACY_API_BASE_URL,
            pharmacy_api_key=s.PHARMACY_API_KEY,
        )


class WebhookDispatcher:
    """Polling dispatcher; safe to run as several concurrent workers"""

    def __init__(
        self,
        db: AsyncSession,
        config: DispatcherConfig | None = None,
        http_client: HttpClient | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.config = config or DispatcherConfig.from_settings()
        self.http_client = http_client or HttpxClient(self.config.request_timeout_seconds)
        self.clock = clock
        self.pharmacy = PharmacyClient(
            self.config.pharmacy_api_base_url,
            self.config.pharmacy_api_key,
            http_client=self.http_client,
        )

    async def run_batch(self, limit: int = 50) -> dict[str, int]:
        """Process up to ``limit`` due deliveries. Returns {"processed": n}."""
        due_ids = await self.get_due_delivery_ids(limit)
        processed = 0

        for delivery_id in due_ids:
            if not await self.claim(delivery_id):
                logger.debug(
                    "Delivery already claimed by another worker",
                    extra_data={"delivery_id": delivery_id},
                )
                continue

            await self._process_claimed(delivery_id)
            processed += 1

        if due_ids:
            logger.info(
                "Webhook batch finished",
                extra_data={"due": len(due_ids), "processed": processed},
            )
        return {"processed": processed}

    async def get_due_delivery_ids(self, limit: int) -> list[str]:
        now = self.clock()
        result = await self.db.execute(
            select(WebhookDelivery.delivery_id)
            .where(
                WebhookDelivery.status == DeliveryStatus.PENDING.value,
                WebhookDelivery.next_attempt_at <= now,
                or_(WebhookDelivery.locked_until.is_(None), WebhookDelivery.locked_until < now),
            )
            .order_by(WebhookDelivery.next_attempt_at.asc())
            .limit(max(int(limit), 0))
        )
        return list(result.scalars().all())

    async def claim(self, delivery_id: str) -> bool:
        """Take the lease with one conditional UPDATE. False = someone else holds it."""
        now = self.clock()
        result = await self.db.execute(
            update(WebhookDelivery)
            .where(
                WebhookDelivery.delivery_id == delivery_id,
                WebhookDelivery.status == DeliveryStatus.PENDING.value,
                or_(WebhookDelivery.locked_until.is_(None), WebhookDelivery.locked_until < now),
            )
            .values(locked_until=now + timedelta(seconds=self.config.lease_seconds))
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def _load_claimed(self, delivery_id: str):
        result = await self.db.execute(
            select(WebhookDelivery, WebhookSubscription)
            .join(
                WebhookSubscription,
                WebhookSubscription.subscription_id == WebhookDelivery.subscription_id,
            )
            .where(WebhookDelivery.delivery_id == delivery_id)
            .execution_options(populate_existing=True)
        )
        return result.one_or_none()

    async def _process_claimed(self, delivery_id: str) -> None:
        row = await self._load_claimed(delivery_id)
        if row is None:
            # המנוי נמחק, אין לאן לשלוח, נרשם ככשלון רגיל כדי שיגיע ל-dead-letter
            await self._record_failure(delivery_id, None, "subscription not found")
            return

        delivery, subscription = row
        set_tenant_id(delivery.tenant_id)
        attempt_count = delivery.attempt_count or 0

        try:
            error = await self._attempt(delivery, subscription)
        except SQLAlchemyError:
            raise
        except AppException as e:
            error = f"{e.reason}: {e.message}"
        except Exception as e:
            logger.error(
                "Unexpected error while delivering webhook",
                extra_data={"delivery_id": delivery_id, "error": str(e)},
                exc_info=True,
            )
            error = f"{e.__class__.__name__}: {e}" if str(e) else e.__class__.__name__

        if error is None:
            await self._record_success(delivery_id)
        else:
            await self._record_failure(delivery_id, attempt_count, error)

    async def _attempt(
        self, delivery: WebhookDelivery, subscription: WebhookSubscription
    ) -> str | None:
        """One delivery attempt. Returns None on success, else a failure reason."""
        attempted_at = self.clock()
        transform = resolve_transform(
            subscription.subscriber_system,
            db=self.db,
            pharmacy=self.pharmacy,
            only_admin_notes=self.config.pharmacy_only_admin_notes,
        )
        outbound = await transform.build(delivery, subscription, attempted_at)

        if isinstance(outbound, SkipDelivery):
            logger.info(
                "Delivery skipped by subscriber transform",
                extra_data={
                    "delivery_id": delivery.delivery_id,
                    "subscriber_system": subscription.subscriber_system,
                    "reason": outbound.reason,
                },
            )
            return None

        response = await self.http_client.post(outbound.url, outbound.headers, outbound.body)
        if not response.ok:
            raise UpstreamFailureError.from_response(
                subscription.subscriber_system or "webhook", response.status, response.body
            )

        logger.info(
            "Webhook delivered",
            extra_data={
                "delivery_id": delivery.delivery_id,
                "event_type": delivery.event_type,
                "status_code": response.status,
            },
        )
        return None

    async def _record_success(self, delivery_id: str) -> None:
        await self.db.execute(
            update(WebhookDelivery)
            .where(
                WebhookDelivery.delivery_id == delivery_id,
                WebhookDelivery.status == DeliveryStatus.PENDING.value,
            )
            .values(
                status=DeliveryStatus.SENT.value,
                attempt_count=WebhookDelivery.attempt_count + 1,
                last_attempt_at=self.clock(),
                last_error=None,
                locked_until=None,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def _record_failure(
        self, delivery_id: str, attempt_count: int | None, error: str
    ) -> None:
        now = self.clock()
        if attempt_count is None:
            current = await self.db.execute(
                select(WebhookDelivery.attempt_count).where(
                    WebhookDelivery.delivery_id == delivery_id
                )
            )
            attempt_count = current.scalar_one_or_none() or 0

        attempts_made = attempt_count + 1
        values = {
            "attempt_count": WebhookDelivery.attempt_count + 1,
            "last_attempt_at": now,
            "last_error": error[:_MAX_ERROR_LENGTH],
            "locked_until": None,
        }

        if attempts_made < self.config.max_attempts:
            delay = compute_backoff_seconds(attempts_made, self.config.backoff_schedule)
            values["next_attempt_at"] = now + timedelta(seconds=delay)
            log_message = "Webhook delivery failed, will retry"
        else:
            values["status"] = DeliveryStatus.FAILED.value
            delay = None
            log_message = "Webhook delivery dead-lettered after max attempts"

        await self.db.execute(
            update(WebhookDelivery)
            .where(
                WebhookDelivery.delivery_id == delivery_id,
                WebhookDelivery.status == DeliveryStatus.PENDING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        logger.warning(
            log_message,
            extra_data={
                "delivery_id": delivery_id,
                "attempt_count": attempts_made,
                "retry_in_seconds": delay,
                "error": error[:200],
            },
        )
