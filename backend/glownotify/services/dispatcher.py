"""Dispatcher - resolves targets, applies the policy gate and fans out to devices."""
import logging
import uuid
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import NotificationPreference, SentNotification, User
from ..utils.db_utils import retry_on_lock
from ..utils.timeutils import Clock, utcnow
from .personalizer import RenderedMessage, personalize, render
from .policy import PolicyGate
from .preferences import get_or_create_preferences
from .push_sender import PLATFORM_ANDROID, PLATFORM_IOS, PushDeliveryError, PushTransport
from .targeting import NotificationTarget, TargetingResolver
from .templates import CATEGORY_PREFERENCE, Category, Priority, TemplateRegistry

logger = logging.getLogger(__name__)

ANDROID_CHANNEL_ID = "skincare_reminders"
ANDROID_COLOR = "#E91E63"  # brand pink

MANUAL_TEMPLATE_ID = "manual"


@dataclass
class DeliveryResult:
    """Outcome of one (user, device token) send attempt."""
    user_id: str
    token: str
    platform: str
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    notification_id: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)


def build_envelope(platform: str, message: RenderedMessage) -> dict:
    """Build the platform-specific payload for one message."""
    data: Dict[str, Any] = {"deepLink": message.deep_link or ""}
    data.update(message.data)
    if message.template_id:
        data["templateId"] = message.template_id

    if platform == PLATFORM_ANDROID:
        notification = {"title": message.title, "body": message.body}
        if message.image_url:
            notification["image"] = message.image_url
        android_notification: Dict[str, Any] = {
            "channel_id": ANDROID_CHANNEL_ID,
            "color": ANDROID_COLOR,
        }
        if message.action_buttons:
            android_notification["actions"] = [
                {"action": button.action, "title": button.text}
                for button in message.action_buttons
            ]
        return {
            "notification": notification,
            "data": data,
            "android": {"priority": "high", "notification": android_notification},
        }

    if platform == PLATFORM_IOS:
        envelope: Dict[str, Any] = {
            "aps": {
                "alert": {"title": message.title, "body": message.body},
                "badge": 1,
                "sound": "default",
                "mutable-content": 1,
            },
        }
        envelope.update(data)
        if message.image_url:
            envelope["imageUrl"] = message.image_url
        if message.action_buttons:
            envelope["actions"] = [
                {"action": b.action, "title": b.text, "deepLink": b.deep_link}
                for b in message.action_buttons
            ]
        return envelope

    raise ValueError(f"Unsupported platform: {platform}")


def device_tokens(prefs: NotificationPreference) -> List[tuple]:
    """(platform, token) pairs in registration order, Android first."""
    tokens = [(PLATFORM_ANDROID, t) for t in (prefs.fcm_tokens or [])]
    tokens += [(PLATFORM_IOS, t) for t in (prefs.apns_tokens or [])]
    return tokens


class Dispatcher:
    """Sends a message to every device of every eligible targeted user.

    Per-token failures do not abort the user's other tokens and per-user
    failures do not abort the batch. There is no retry here.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        transport: PushTransport,
        registry: TemplateRegistry,
        resolver: Optional[TargetingResolver] = None,
        gate: Optional[PolicyGate] = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.transport = transport
        self.registry = registry
        self.clock = clock
        self.resolver = resolver or TargetingResolver(clock)
        self.gate = gate or PolicyGate(clock)

    def _category_for(self, template_id: Optional[str], message: RenderedMessage) -> Optional[Category]:
        if message.category is not None:
            return message.category
        if template_id and template_id in self.registry:
            return self.registry.get(template_id).category
        return None

    async def send(
        self,
        target: NotificationTarget,
        payload: RenderedMessage,
        template_id: Optional[str] = None,
        priority: Priority = Priority.NORMAL,
        category: Optional[Category] = None,
    ) -> List[DeliveryResult]:
        priority = Priority(priority)
        template_id = template_id or payload.template_id or MANUAL_TEMPLATE_ID
        category = category or self._category_for(template_id, payload)
        results: List[DeliveryResult] = []

        async with self.session_factory() as session:
            users = await self.resolver.resolve(session, target)

        # Each user gets its own session so one failure cannot poison the batch
        for user in users:
            try:
                async with self.session_factory() as session:
                    results.extend(
                        await self._send_to_user(session, user, payload, template_id, priority, category)
                    )
            except Exception as e:
                logger.error(f"Failed to notify user {user.id}: {e}")

        delivered = sum(1 for r in results if r.success)
        logger.info(
            f"Dispatch {template_id}: {len(users)} users, "
            f"{delivered} delivered, {len(results) - delivered} failed"
        )
        return results

    async def send_template(
        self,
        target: NotificationTarget,
        template_id: str,
        variables: Optional[Dict[str, Any]] = None,
        priority: Optional[Priority] = None,
    ) -> List[DeliveryResult]:
        """Render a catalog template and send it with the template's priority."""
        template = self.registry.get(template_id)
        message = render(template, variables, fill_first_name=False)
        return await self.send(
            target,
            message,
            template_id=template.id,
            priority=priority or template.priority,
            category=template.category,
        )

    async def _send_to_user(
        self,
        session: AsyncSession,
        user: User,
        payload: RenderedMessage,
        template_id: str,
        priority: Priority,
        category: Optional[Category],
    ) -> List[DeliveryResult]:
        prefs = user.preferences or await get_or_create_preferences(session, user.id)

        if category is not None and priority != Priority.URGENT:
            toggle = CATEGORY_PREFERENCE[category]
            if not getattr(prefs, toggle, True):
                logger.debug(f"User {user.id} disabled {toggle}, skipping")
                return []

        if not await self.gate.can_send(session, user, prefs, priority):
            return []

        tokens = device_tokens(prefs)
        if not tokens:
            logger.debug(f"User {user.id} has no registered devices")
            return []

        message = personalize(payload, user.first_name)
        dispatch_id = uuid.uuid4().hex
        results = []
        rows = []

        for platform, token in tokens:
            result = DeliveryResult(user_id=user.id, token=token, platform=platform, success=False)
            try:
                envelope = build_envelope(platform, message)
                result.message_id = await self.transport.send(platform, token, envelope)
                result.success = True
            except PushDeliveryError as e:
                result.error = str(e)
                logger.warning(f"Push to {user.id} failed ({platform} {token[:16]}...): {e}")
            except Exception as e:
                result.error = str(e)
                logger.error(f"Unexpected push error for {user.id} ({platform} {token[:16]}...): {e}")

            row = SentNotification(
                user_id=user.id,
                template_id=template_id,
                dispatch_id=dispatch_id,
                title=message.title,
                body=message.body,
                image_url=message.image_url,
                deep_link=message.deep_link,
                platform=platform,
                device_token=token,
                delivered=result.success,
                error_message=result.error,
                sent_at=self.clock(),
            )
            session.add(row)
            rows.append(row)
            results.append(result)

        await retry_on_lock(session.commit)
        for row, result in zip(rows, results):
            result.notification_id = row.id
        return results
