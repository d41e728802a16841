import logging
import time
from typing import Optional

import httpx

from relaydesk.metrics import record_lookup
from relaydesk.utils import new_request_id, normalize_epoch

logger = logging.getLogger(__name__)

DIALOG_LAST_DATE_PATH = "getdialoglastdate"


class ClockUnavailable(Exception):
    """The conversation clock could not be read and the clock fails closed."""


class ConversationClock:
    """
    Reads the relay's timestamp of the latest message in a conversation.

    With fail_open=True (the default) any lookup failure is logged and
    reported as None, i.e. "no known prior message". That lets sends
    through without an ordering guard, so deployments that prefer
    blocking can set fail_open=False and get ClockUnavailable instead.

    Results are never cached; callers query right before the first send
    of each conversation.
    """

    def __init__(self, client: httpx.AsyncClient, base_url: str, fail_open: bool = True):
        self._client = client
        self._url = f"{base_url.rstrip('/')}/{DIALOG_LAST_DATE_PATH}"
        self.fail_open = fail_open

    async def last_timestamp(self, sender: str, receiver: str) -> Optional[int]:
        """
        Args:
            sender: Sender handle
            receiver: Receiver handle

        Returns:
            Epoch seconds of the last recorded message, or None if there is none

        Raises:
            ClockUnavailable: lookup failed and fail_open is False
        """
        if not sender or not receiver:
            logger.warning("Clock lookup skipped: missing sender or receiver",
                           extra={"sender": sender, "receiver": receiver})
            return None

        request_id = new_request_id("clock")
        start_time = time.monotonic()

        try:
            response = await self._client.post(self._url, json={"from": sender, "to": receiver})
        except httpx.HTTPError as e:
            return self._failure(request_id, f"clock request failed: {e!r}")

        duration_ms = round((time.monotonic() - start_time) * 1000, 2)

        if not response.is_success:
            return self._failure(
                request_id,
                f"clock returned HTTP {response.status_code} {response.reason_phrase}",
            )

        try:
            payload = response.json()
        except ValueError as e:
            return self._failure(request_id, f"clock returned malformed JSON: {e}")

        if not isinstance(payload, dict) or not payload.get("ok"):
            reason = payload.get("errMessage") if isinstance(payload, dict) else None
            return self._failure(request_id, f"clock rejected lookup: {reason or 'unknown error'}")

        timestamp = normalize_epoch(payload.get("data"))
        logger.info(
            f"[{request_id}] Conversation clock {sender}->{receiver}: {timestamp}",
            extra={"duration_ms": duration_ms},
        )
        record_lookup("clock", "ok" if timestamp is not None else "not_found")
        return timestamp

    def _failure(self, request_id: str, reason: str) -> Optional[int]:
        record_lookup("clock", "error")
        if self.fail_open:
            logger.error(f"[{request_id}] {reason}; treating as no prior message")
            return None
        logger.error(f"[{request_id}] {reason}")
        raise ClockUnavailable(reason)
