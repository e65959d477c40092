"""
services/notification/channels.py
Channel senders: Resend email, Twilio SMS, FCM push.
Every sender raises ChannelDeliveryError on failure, including a recipient
with no address for that channel. Provider SDKs are sync and run in the threadpool.
"""

import logging
from typing import Optional, Protocol

from starlette.concurrency import run_in_threadpool

from config.settings import settings
from shared.events import Recipient
from shared.exceptions import ChannelDeliveryError
from shared.models.models import NotificationChannel

logger = logging.getLogger(__name__)


class ChannelSender(Protocol):
    channel: NotificationChannel

    async def send(self, recipient: Recipient, title: str, body: str, data: Optional[dict] = None) -> None: ...


class EmailSender:
    """Transactional email via Resend."""
    channel = NotificationChannel.EMAIL

    async def send(self, recipient: Recipient, title: str, body: str, data: Optional[dict] = None) -> None:
        if not recipient.email:
            raise ChannelDeliveryError(self.channel.value, "Recipient has no email address")
        try:
            await run_in_threadpool(self._send_sync, recipient, title, body)
        except Exception as e:
            raise ChannelDeliveryError(self.channel.value, str(e)) from e

    def _send_sync(self, recipient: Recipient, title: str, body: str) -> None:
        import resend

        resend.api_key = settings.RESEND_API_KEY
        to = f"{recipient.name} <{recipient.email}>" if recipient.name else recipient.email
        resend.Emails.send({
            "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>",
            "to": [to],
            "subject": title,
            "html": render_email_html(title, body),
        })


class SmsSender:
    """SMS via Twilio."""
    channel = NotificationChannel.SMS

    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        if self._client is None:
            from twilio.rest import Client
            self._client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
        return self._client

    async def send(self, recipient: Recipient, title: str, body: str, data: Optional[dict] = None) -> None:
        if not recipient.phone:
            raise ChannelDeliveryError(self.channel.value, "Recipient has no phone number")
        try:
            message = await run_in_threadpool(
                self.client.messages.create,
                body=body,
                from_=settings.TWILIO_FROM_NUMBER,
                to=recipient.phone,
            )
        except Exception as e:
            raise ChannelDeliveryError(self.channel.value, str(e)) from e
        logger.debug(f"SMS {getattr(message, 'sid', '?')} sent to user {recipient.user_id}")


class PushSender:
    """Firebase Cloud Messaging."""
    channel = NotificationChannel.PUSH

    async def send(self, recipient: Recipient, title: str, body: str, data: Optional[dict] = None) -> None:
        if not recipient.push_token:
            raise ChannelDeliveryError(self.channel.value, "Recipient has no registered device")
        try:
            await run_in_threadpool(self._send_sync, recipient.push_token, title, body, data or {})
        except Exception as e:
            raise ChannelDeliveryError(self.channel.value, str(e)) from e

    @staticmethod
    def _send_sync(token: str, title: str, body: str, data: dict) -> None:
        import firebase_admin
        from firebase_admin import credentials, messaging

        if not firebase_admin._apps:
            firebase_admin.initialize_app(credentials.Certificate(settings.FIREBASE_CREDENTIALS_PATH))

        messaging.send(messaging.Message(
            notification=messaging.Notification(title=title, body=body),
            data={k: str(v) for k, v in data.items()},
            token=token,
            android=messaging.AndroidConfig(priority="high"),
            apns=messaging.APNSConfig(payload=messaging.APNSPayload(aps=messaging.Aps(sound="default", badge=1))),
        ))


def render_email_html(title: str, body: str) -> str:
    return f"""
    <div style="font-family: sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
        <div style="background: #0B6E4F; padding: 20px; border-radius: 8px 8px 0 0; text-align: center;">
            <h1 style="color: white; margin: 0;">{settings.EMAIL_FROM_NAME}</h1>
        </div>
        <div style="background: white; padding: 24px; border: 1px solid #eee; border-radius: 0 0 8px 8px;">
            <h2 style="color: #333;">{title}</h2>
            <p style="color: #666; line-height: 1.6;">{body}</p>
            <p style="color: #999; font-size: 12px; margin-top: 24px;">
                You received this email because you have a booking with {settings.EMAIL_FROM_NAME}.
            </p>
        </div>
    </div>
    """


def default_senders() -> dict[NotificationChannel, ChannelSender]:
    return {
        NotificationChannel.EMAIL: EmailSender(),
        NotificationChannel.SMS: SmsSender(),
        NotificationChannel.PUSH: PushSender(),
    }
