"""
Outbound mail senders for supplier notifications.

- HttpMailRelaySender: posts the message to a mail relay HTTP API (httpx)
- LoggingNotificationSender: development mode, logs instead of sending
"""

from typing import Any, Dict, List, Optional
import base64
import json
import logging

import httpx

from procurement_core.notifications import Attachment, NotificationResult, NotificationSender

logger = logging.getLogger(__name__)


def _attachment_payload(attachment: Attachment) -> Dict[str, Any]:
    return {
        "filename": attachment.filename,
        "content_type": attachment.content_type,
        "content": base64.b64encode(attachment.content).decode('utf-8'),
        "summary": json.loads(json.dumps(attachment.summary, default=str)),
    }


class HttpMailRelaySender(NotificationSender):
    """Send mail through an HTTP relay (JSON body, bearer API key)."""

    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def build_payload(
        self,
        to: str,
        subject: str,
        body: str,
        attachment: Optional[Attachment] = None
    ) -> Dict[str, Any]:
        payload = {"to": to, "subject": subject, "text": body}
        if attachment is not None:
            payload["attachments"] = [_attachment_payload(attachment)]
        return payload

    async def send(self, to, subject, body, attachment=None) -> NotificationResult:
        headers = {}
        if self.api_key:
            headers['Authorization'] = f'Bearer {self.api_key}'

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    self.endpoint,
                    headers=headers,
                    json=self.build_payload(to, subject, body, attachment),
                )
        except httpx.HTTPError as e:
            logger.error(f"[MAIL] Relay request failed for {to}: {e}")
            return NotificationResult(success=False, message=str(e))

        if response.status_code >= 400:
            logger.error(f"[MAIL] Relay rejected mail to {to}: {response.status_code} {response.text[:200]}")
            return NotificationResult(
                success=False,
                message=f"Mail relay returned {response.status_code}"
            )

        provider_id = None
        if response.headers.get('content-type', '').startswith('application/json'):
            provider_id = response.json().get('id')
        return NotificationResult(success=True, message="sent", provider_id=provider_id)


class LoggingNotificationSender(NotificationSender):
    """Dev mode sender: logs the mail and reports success."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def send(self, to, subject, body, attachment=None) -> NotificationResult:
        self.sent.append({"to": to, "subject": subject})
        logger.info(
            f"[MAIL][DEV] To: {to} | Subject: {subject} | "
            f"Attachment: {attachment.filename if attachment else 'none'}"
        )
        return NotificationResult(success=True, message="logged")
