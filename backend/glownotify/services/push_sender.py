"""Push notification transports: FCM for Android tokens, APNs for iOS tokens."""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import firebase_admin
from aioapns import APNs, NotificationRequest, PushType
from firebase_admin import credentials, messaging
from firebase_admin.exceptions import FirebaseError

logger = logging.getLogger(__name__)

PLATFORM_ANDROID = "android"
PLATFORM_IOS = "ios"


class PushDeliveryError(Exception):
    """A single (token, message) send failed: bad or expired token, network, config."""


class PushTransport(Protocol):
    async def send(self, platform: str, token: str, envelope: dict) -> str:
        """Deliver one envelope to one device and return the provider's message id."""
        ...


@dataclass
class APNsConfig:
    """APNs configuration."""
    enabled: bool = False
    key_path: str = ""  # Path to .p8 key file
    key_id: str = ""
    team_id: str = ""
    bundle_id: str = ""
    use_sandbox: bool = True


@dataclass
class FCMConfig:
    """Firebase Cloud Messaging configuration."""
    enabled: bool = False
    credentials_path: str = ""  # Service account JSON
    app_name: str = "glownotify"


class APNsSender:
    """Sends prebuilt APNs payloads via aioapns."""

    def __init__(self):
        self._client: Optional[APNs] = None
        self._config: Optional[APNsConfig] = None

    def configure(self, config: APNsConfig):
        """Configure the APNs client."""
        self._config = config
        self._client = None  # Reset client to force reconnection

        if not config.enabled:
            logger.info("APNs push is disabled")
            return

        if not all([config.key_path, config.key_id, config.team_id, config.bundle_id]):
            logger.warning("APNs push enabled but not fully configured")
            return

        try:
            self._client = APNs(
                key=config.key_path,
                key_id=config.key_id,
                team_id=config.team_id,
                topic=config.bundle_id,
                use_sandbox=config.use_sandbox,
            )
            logger.info(f"APNs client configured (sandbox={config.use_sandbox})")
        except Exception as e:
            logger.error(f"Failed to configure APNs client: {e}")
            self._client = None

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    async def send(self, token: str, envelope: dict) -> str:
        if not self._client:
            raise PushDeliveryError("APNs is not configured")

        request = NotificationRequest(
            device_token=token,
            message=envelope,
            push_type=PushType.ALERT,
        )
        try:
            response = await self._client.send_notification(request)
        except Exception as e:
            raise PushDeliveryError(f"APNs request failed: {e}") from e

        if not response.is_successful:
            raise PushDeliveryError(f"APNs rejected notification: {response.description}")

        logger.info(f"APNs notification sent to {token[:16]}...")
        return str(response.notification_id)


class FCMSender:
    """Sends Android envelopes via the Firebase Admin SDK."""

    def __init__(self):
        self._app: Optional[firebase_admin.App] = None
        self._config: Optional[FCMConfig] = None

    def configure(self, config: FCMConfig):
        """Initialize (or reuse) the named Firebase app."""
        self._config = config
        self._app = None

        if not config.enabled:
            logger.info("FCM push is disabled")
            return

        if not config.credentials_path:
            logger.warning("FCM push enabled but no service account configured")
            return

        try:
            self._app = firebase_admin.get_app(config.app_name)
        except ValueError:
            try:
                cred = credentials.Certificate(config.credentials_path)
                self._app = firebase_admin.initialize_app(cred, name=config.app_name)
                logger.info("Firebase app initialized")
            except Exception as e:
                logger.error(f"Failed to initialize Firebase: {e}")
                self._app = None

    @property
    def is_configured(self) -> bool:
        return self._app is not None

    @staticmethod
    def build_message(token: str, envelope: dict) -> messaging.Message:
        """Translate an Android envelope into an FCM Message."""
        notification = envelope.get("notification", {})
        android = envelope.get("android", {})
        android_notification = android.get("notification", {})

        data = {k: str(v) for k, v in envelope.get("data", {}).items() if v is not None}
        # FCM has no native action buttons; the app reads them from data
        actions = android_notification.get("actions")
        if actions:
            data["actions"] = json.dumps(actions)

        return messaging.Message(
            token=token,
            notification=messaging.Notification(
                title=notification.get("title"),
                body=notification.get("body"),
                image=notification.get("image"),
            ),
            data=data,
            android=messaging.AndroidConfig(
                priority=android.get("priority", "high"),
                notification=messaging.AndroidNotification(
                    channel_id=android_notification.get("channel_id"),
                    color=android_notification.get("color"),
                ),
            ),
        )

    async def send(self, token: str, envelope: dict) -> str:
        if not self._app:
            raise PushDeliveryError("FCM is not configured")

        message = self.build_message(token, envelope)
        try:
            # The Admin SDK is blocking
            message_id = await asyncio.to_thread(messaging.send, message, False, self._app)
        except FirebaseError as e:
            raise PushDeliveryError(f"FCM rejected notification: {e}") from e
        except Exception as e:
            raise PushDeliveryError(f"FCM request failed: {e}") from e

        logger.info(f"FCM notification sent to {token[:16]}...")
        return message_id


class PushSenderService:
    """Routes each send to the transport for the token's platform."""

    def __init__(self, fcm: Optional[FCMSender] = None, apns: Optional[APNsSender] = None):
        self.fcm = fcm or FCMSender()
        self.apns = apns or APNsSender()

    def configure(self, fcm_config: FCMConfig, apns_config: APNsConfig):
        self.fcm.configure(fcm_config)
        self.apns.configure(apns_config)

    async def send(self, platform: str, token: str, envelope: dict) -> str:
        if platform == PLATFORM_ANDROID:
            return await self.fcm.send(token, envelope)
        if platform == PLATFORM_IOS:
            return await self.apns.send(token, envelope)
        raise PushDeliveryError(f"Unsupported platform: {platform}")


def build_push_sender(settings) -> PushSenderService:
    """Create a sender configured from application settings."""
    sender = PushSenderService()
    sender.configure(
        FCMConfig(
            enabled=settings.fcm_enabled,
            credentials_path=settings.fcm_credentials_path,
        ),
        APNsConfig(
            enabled=settings.apns_enabled,
            key_path=settings.apns_key_path,
            key_id=settings.apns_key_id,
            team_id=settings.apns_team_id,
            bundle_id=settings.apns_bundle_id,
            use_sandbox=settings.apns_use_sandbox,
        ),
    )
    return sender
