"""
File d'envoi des notifications e-mail (outbox côté base: enqueue_booking_email_job).
Soumission « fire-and-forget »: un échec est journalisé, jamais propagé.
"""
import logging
from enum import Enum
from typing import Any, Dict, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import Client

logger = logging.getLogger(__name__)


class NotificationKind(Enum):
    # (type de job, gabarit)
    BOOKING_CONFIRMED_HOST = ("booking_confirmed_host", "BOOKING_CONFIRMED_HOST")
    BOOKING_CONFIRMED_GUEST = ("booking_confirmed_guest", "BOOKING_CONFIRMED_GUEST")
    PAYOUT_RELEASED_HOST = ("payout_released_host", "PAYOUT_RELEASED_HOST")

    @property
    def job_type(self) -> str:
        return self.value[0]

    @property
    def template(self) -> str:
        return self.value[1]


class NotificationOutbox:
    def __init__(self, client: Client):
        self._client = client

    def submit(
        self,
        booking_id: str,
        kind: NotificationKind,
        *,
        to_email: Optional[str] = None,
        subject: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
    ) -> bool:
        params: Dict[str, Any] = {
            "_booking_id": booking_id,
            "_type": kind.job_type,
            "_template": kind.template,
        }
        if to_email:
            params["_to_email"] = to_email
        if subject:
            params["_subject"] = subject
        if variables:
            params["_vars"] = variables
        try:
            self._client.rpc("enqueue_booking_email_job", params).execute()
        except (APIError, httpx.HTTPError):
            logger.exception("notifications.submit failed booking_id=%s kind=%s", booking_id, kind.name)
            return False
        logger.info("notifications.submit booking_id=%s kind=%s", booking_id, kind.name)
        return True
