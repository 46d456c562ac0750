"""Notification service communication layer."""
import httpx
import logging
import time
from typing import Any, Dict

from config import NOTIFICATION_SERVICE_URL
from monitoring import notification_duration_histogram

logger = logging.getLogger(__name__)


class NotificationClient:
    """Client for the transactional notification service.

    The service owns templates and delivery; this client only hands over a
    recipient, a subject and the context the template renders.
    """

    def __init__(self, http_client: httpx.AsyncClient, base_url: str = NOTIFICATION_SERVICE_URL):
        """
        Initialize notification client.

        Args:
            http_client: Async HTTP client
            base_url: Notification service base URL
        """
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")

    async def send(
        self,
        recipient: str,
        subject: str,
        body_context: Dict[str, Any]
    ) -> bool:
        """
        Send a templated email.

        Args:
            recipient: Email address
            subject: Subject line
            body_context: Values rendered into the template

        Returns:
            True if the notification service accepted the message
        """
        # HTTPXClientInstrumentor already creates spans for HTTP calls
        start_time = time.time()
        status = "success"
        status_code = None
        try:
            response = await self.http_client.post(
                f"{self.base_url}/api/notifications/email",
                json={
                    "recipient": recipient,
                    "subject": subject,
                    "context": body_context
                }
            )
            status_code = response.status_code
            if response.status_code >= 400:
                status = "error"
                logger.warning("Notification service returned error status", extra={
                    "status_code": response.status_code,
                    "subject": subject
                })
                return False
            return True
        except httpx.HTTPError as e:
            status = "error"
            status_code = 0  # Connection failure
            logger.error("Failed to send notification", extra={
                "subject": subject,
                "error": str(e)
            })
            return False
        finally:
            duration = time.time() - start_time
            notification_duration_histogram.record(
                duration,
                {
                    "status": status,
                    "status_code": str(status_code) if status_code else "0"
                }
            )
