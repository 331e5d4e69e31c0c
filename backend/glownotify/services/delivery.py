"""Scheduled delivery - deferred template sends with a claimed, bounded-retry state machine.

PENDING --claim--> PROCESSING --ok--> SENT
                   PROCESSING --error, attempts < max--> PENDING
                   PROCESSING --error, attempts >= max--> FAILED
PENDING --cancel--> CANCELLED

SENT, FAILED and CANCELLED are terminal. A sweep only ever touches rows it
claimed itself (matching claim_token), so a cancel racing a sweep either wins
while the row is PENDING or is rejected.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..models import ScheduledNotification, SentNotification, User
from ..models.scheduled import (
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_SENT,
    TERMINAL_STATUSES,
)
from ..utils.db_utils import retry_on_lock
from ..utils.timeutils import Clock, utcnow
from .dispatcher import Dispatcher
from .preferences import get_preferences
from .targeting import NotificationTarget, UnknownUserError
from .templates import TemplateRegistry

logger = logging.getLogger(__name__)

# Claims older than this are assumed to belong to a crashed sweep
STALE_CLAIM_AFTER = timedelta(minutes=30)


class ScheduleStateError(Exception):
    """The scheduled notification is not in a state that allows the operation."""


class ScheduledNotFoundError(LookupError):
    """No scheduled notification with that id (for that user)."""


def _as_utc_naive(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


class ScheduledDeliveryService:
    """Creates, cancels and sweeps scheduled notifications."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        dispatcher: Dispatcher,
        registry: TemplateRegistry,
        clock: Clock = utcnow,
        batch_size: int = 100,
        max_attempts: int = 3,
        retention_days: int = 30,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.registry = registry
        self.clock = clock
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.retention_days = retention_days

    async def schedule(
        self,
        user_id: str,
        template_id: str,
        scheduled_for: datetime,
        personalization: Optional[Dict[str, Any]] = None,
    ) -> ScheduledNotification:
        """Persist a PENDING send in the user's timezone."""
        self.registry.get(template_id)

        async with self.session_factory() as session:
            if await session.get(User, user_id) is None:
                raise UnknownUserError(f"Unknown user: {user_id}")

            prefs = await get_preferences(session, user_id)
            row = ScheduledNotification(
                user_id=user_id,
                template_id=template_id,
                scheduled_for=_as_utc_naive(scheduled_for),
                timezone=prefs.timezone if prefs else "UTC",
                personalization=dict(personalization or {}),
                status=STATUS_PENDING,
                attempt_count=0,
                created_at=self.clock(),
            )
            session.add(row)
            await retry_on_lock(session.commit)

        logger.info(f"Scheduled {template_id} for user {user_id} at {row.scheduled_for} UTC (id={row.id})")
        return row

    async def cancel(self, notification_id: int, user_id: Optional[str] = None) -> ScheduledNotification:
        """Move a PENDING notification to CANCELLED.

        Raises ScheduledNotFoundError for unknown ids (or ids owned by another
        user) and ScheduleStateError for anything not PENDING.
        """
        async with self.session_factory() as session:
            row = await session.get(ScheduledNotification, notification_id)
            if row is None or (user_id is not None and row.user_id != user_id):
                raise ScheduledNotFoundError(f"Scheduled notification {notification_id} not found")

            # Guarded on status so a concurrent claim wins cleanly
            result = await session.execute(
                update(ScheduledNotification)
                .where(
                    ScheduledNotification.id == notification_id,
                    ScheduledNotification.status == STATUS_PENDING,
                )
                .values(status=STATUS_CANCELLED)
                .execution_options(synchronize_session=False)
            )
            await retry_on_lock(session.commit)

            await session.refresh(row)
            if result.rowcount == 0:
                raise ScheduleStateError(
                    f"Scheduled notification {notification_id} is {row.status}, only PENDING can be cancelled"
                )

        logger.info(f"Cancelled scheduled notification {notification_id}")
        return row

    async def _claim(self, now: datetime) -> List[ScheduledNotification]:
        token = uuid.uuid4().hex
        async with self.session_factory() as session:
            released = await session.execute(
                update(ScheduledNotification)
                .where(
                    ScheduledNotification.status == STATUS_PROCESSING,
                    ScheduledNotification.claimed_at < now - STALE_CLAIM_AFTER,
                )
                .values(status=STATUS_PENDING, claim_token=None, claimed_at=None)
                .execution_options(synchronize_session=False)
            )
            if released.rowcount:
                logger.warning(f"Released {released.rowcount} stale scheduled notification claims")

            result = await session.execute(
                select(ScheduledNotification.id)
                .where(
                    ScheduledNotification.status == STATUS_PENDING,
                    ScheduledNotification.scheduled_for <= now,
                )
                .order_by(ScheduledNotification.scheduled_for, ScheduledNotification.id)
                .limit(self.batch_size)
            )
            due_ids = list(result.scalars().all())
            if not due_ids:
                await retry_on_lock(session.commit)
                return []

            await session.execute(
                update(ScheduledNotification)
                .where(
                    ScheduledNotification.id.in_(due_ids),
                    ScheduledNotification.status == STATUS_PENDING,
                )
                .values(status=STATUS_PROCESSING, claim_token=token, claimed_at=now)
                .execution_options(synchronize_session=False)
            )
            await retry_on_lock(session.commit)

            result = await session.execute(
                select(ScheduledNotification)
                .where(ScheduledNotification.claim_token == token)
                .order_by(ScheduledNotification.scheduled_for, ScheduledNotification.id)
            )
            return list(result.scalars().all())

    async def _attempt(self, row: ScheduledNotification) -> Tuple[bool, Optional[str]]:
        """Send one claimed notification. Returns (success, error message)."""
        try:
            variables = dict(row.personalization or {})
            async with self.session_factory() as session:
                user = await session.get(User, row.user_id)
            if user is not None and user.first_name and not variables.get("firstName"):
                variables["firstName"] = user.first_name

            results = await self.dispatcher.send_template(
                NotificationTarget(user_id=row.user_id),
                row.template_id,
                variables,
            )
        except Exception as e:
            return False, str(e)

        # No results means the gate said no or there are no devices; not a failure
        if results and not any(r.success for r in results):
            errors = sorted({r.error or "delivery failed" for r in results})
            return False, "; ".join(errors)
        return True, None

    async def _finish(self, row: ScheduledNotification, success: bool, error: Optional[str], now: datetime) -> str:
        if success:
            values = {"status": STATUS_SENT, "last_attempt_at": now, "error_message": None}
        else:
            attempts = (row.attempt_count or 0) + 1
            values = {
                "status": STATUS_FAILED if attempts >= self.max_attempts else STATUS_PENDING,
                "attempt_count": attempts,
                "last_attempt_at": now,
                "error_message": error,
            }
        values.update(claim_token=None, claimed_at=None)

        async with self.session_factory() as session:
            await session.execute(
                update(ScheduledNotification)
                .where(
                    ScheduledNotification.id == row.id,
                    ScheduledNotification.claim_token == row.claim_token,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await retry_on_lock(session.commit)
        return values["status"]

    async def process_due(self) -> Dict[str, int]:
        """Claim and send every due notification. Returns counts by resulting status."""
        now = self.clock()
        rows = await self._claim(now)
        counts = {STATUS_SENT: 0, STATUS_PENDING: 0, STATUS_FAILED: 0}

        for row in rows:
            success, error = await self._attempt(row)
            try:
                status = await self._finish(row, success, error, now)
            except Exception as e:
                # Left PROCESSING; the stale-claim release picks it up again
                logger.error(f"Failed to record outcome of scheduled notification {row.id}: {e}")
                continue
            counts[status] += 1
            if not success:
                logger.warning(f"Scheduled notification {row.id} failed ({status}): {error}")

        if rows:
            logger.info(
                f"Delivery sweep: {len(rows)} claimed, {counts[STATUS_SENT]} sent, "
                f"{counts[STATUS_PENDING]} retrying, {counts[STATUS_FAILED]} failed"
            )
        return counts

    async def cleanup(self) -> Tuple[int, int]:
        """Delete sent-log rows and finished scheduled rows past the retention window."""
        cutoff = self.clock() - timedelta(days=self.retention_days)
        async with self.session_factory() as session:
            sent = await session.execute(
                delete(SentNotification).where(SentNotification.sent_at < cutoff)
            )
            scheduled = await session.execute(
                delete(ScheduledNotification).where(
                    ScheduledNotification.status.in_(TERMINAL_STATUSES),
                    ScheduledNotification.created_at < cutoff,
                )
            )
            await retry_on_lock(session.commit)

        logger.info(f"Cleanup removed {sent.rowcount} sent and {scheduled.rowcount} scheduled notifications")
        return sent.rowcount, scheduled.rowcount
