"""Push notifications to agents' devices via Firebase Cloud Messaging.

Agents register a device token with ``PUT /api/auth/fcm-token``. Each
inbound customer message is pushed to the tokens of the agents assigned
to the page. Push is best-effort: failures are logged and never raised
into the ingestion pipeline.
"""

import asyncio
import logging
from typing import Any

import firebase_admin
from firebase_admin import credentials, messaging

from inbox.config import get_settings

logger = logging.getLogger(__name__)

ANDROID_CHANNEL_ID = "high_importance_channel"
FIREBASE_APP_NAME = "page-inbox"


class PushNotifier:
    """Sends multicast notifications through the Firebase Admin SDK.

    Disabled when no service account file is configured.
    """

    def __init__(self, credentials_path: str | None = None) -> None:
        """Initialize the notifier.

        Args:
            credentials_path: Service account JSON file; defaults to
                FIREBASE_CREDENTIALS_PATH
        """
        settings = get_settings()
        self._credentials_path = (
            credentials_path if credentials_path is not None else settings.firebase_credentials_path
        )
        self._app: firebase_admin.App | None = None

    @property
    def enabled(self) -> bool:
        return bool(self._credentials_path)

    def _get_app(self) -> firebase_admin.App:
        """Initialize the Firebase app on first use."""
        if self._app is None:
            try:
                self._app = firebase_admin.get_app(FIREBASE_APP_NAME)
            except ValueError:
                self._app = firebase_admin.initialize_app(
                    credentials.Certificate(self._credentials_path), name=FIREBASE_APP_NAME
                )
            logger.info("Firebase Admin SDK initialized")
        return self._app

    def _build_message(
        self, tokens: list[str], title: str, body: str, data: dict[str, str]
    ) -> messaging.MulticastMessage:
        return messaging.MulticastMessage(
            tokens=tokens,
            notification=messaging.Notification(title=title, body=body),
            android=messaging.AndroidConfig(
                priority="high",
                notification=messaging.AndroidNotification(
                    channel_id=ANDROID_CHANNEL_ID, priority="high"
                ),
            ),
            data=data,
        )

    async def send(
        self,
        tokens: list[str],
        title: str,
        body: str,
        data: dict[str, str] | None = None,
    ) -> int:
        """Send one notification to several devices.

        Returns:
            Number of devices that accepted the notification.
        """
        valid_tokens = [token for token in tokens if token]
        if not valid_tokens or not self.enabled:
            return 0

        try:
            message = self._build_message(valid_tokens, title, body, data or {})
            # The Admin SDK is synchronous
            response = await asyncio.to_thread(
                messaging.send_each_for_multicast, message, app=self._get_app()
            )
        except Exception as e:
            logger.error(f"FCM send failed: {e}")
            return 0

        logger.info(
            f"FCM: sent {response.success_count} notifications, {response.failure_count} failed"
        )
        for token, result in zip(valid_tokens, response.responses):
            if not result.success:
                logger.warning(f"FCM failure for token {token[:12]}...: {result.exception}")
        return response.success_count


def new_message_notification(
    customer_name: str | None,
    text: str | None,
    conversation_id: int,
    page_id: str,
) -> dict[str, Any]:
    """Title, body and data of the push sent for an inbound message."""
    return {
        "title": f"New msg from {customer_name or 'Customer'}",
        "body": text or "📷 Image attachment",
        "data": {
            "conversationId": str(conversation_id),
            "pageId": str(page_id),
            "type": "NEW_MESSAGE",
        },
    }


# Singleton instance
_notifier_instance: PushNotifier | None = None


def get_push_notifier() -> PushNotifier:
    """Get or create the global push notifier."""
    global _notifier_instance
    if _notifier_instance is None:
        _notifier_instance = PushNotifier()
    return _notifier_instance
