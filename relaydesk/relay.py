"""
Clients for the third-party relay API.

DeliveryClient posts one message as a relay command and classifies the
answer into a SendOutcome. VerificationReconciler scans the relay's
update feed for a receipt id, for relay setups whose send acknowledgment
is not trusted on its own.
"""

import logging
import time
from typing import Callable, Optional

import httpx

from relaydesk.metrics import record_lookup
from relaydesk.schemas import ErrorKind, MessageRecord, SendOutcome
from relaydesk.utils import matches_order_error, new_request_id

logger = logging.getLogger(__name__)

SEND_PATH = "sendTextMessage"
UPDATES_PATH = "getUpdates"


def build_command_text(message: MessageRecord, now: int) -> str:
    """
    Render the relay command for one message.

    Args:
        message: Message to relay
        now: Server-side current epoch seconds

    Returns:
        The multi-line #sendmessage command
    """
    return (
        "#sendmessage\n"
        f"from:{message.sender}\n"
        f"to:{message.receiver}\n"
        f"dateunix:{message.unix_timestamp}\n"
        f"datenow:{now}\n"
        f"msg:{message.content}"
    )


def _receipt_id(payload: dict) -> Optional[int]:
    """Numeric message id from a success payload, when the relay returns one."""
    for container in (payload.get("result"), payload.get("data"), payload):
        if isinstance(container, dict):
            value = container.get("message_id")
            if isinstance(value, int) and not isinstance(value, bool):
                return value
    return None


class DeliveryClient:
    """
    Sends a single message to the relay.

    Never raises: every failure becomes a SendOutcome with an error kind.
    Calling send twice for one message creates two relay-side records;
    preventing resends of sent messages is the dispatcher's job.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        relay_url: str,
        chat_id: int,
        chat_type: int,
        order_error_pattern: str,
        now: Callable[[], float] = time.time,
    ):
        self._client = client
        self._relay_url = relay_url.rstrip("/")
        self._chat_id = chat_id
        self._chat_type = chat_type
        self._order_error_pattern = order_error_pattern
        self._now = now

    async def send(self, message: MessageRecord) -> SendOutcome:
        request_id = new_request_id("send")
        try:
            return await self._send(request_id, message)
        except Exception as e:
            logger.exception(f"[{request_id}] Unexpected failure sending message {message.id}")
            return SendOutcome.failed(ErrorKind.EXCEPTION, f"unexpected error: {e}")

    async def _send(self, request_id: str, message: MessageRecord) -> SendOutcome:
        if not self._relay_url:
            return SendOutcome.failed(ErrorKind.EXCEPTION, "relay API URL is not configured")

        request_data = {
            "chat_id": self._chat_id,
            "chat_type": self._chat_type,
            "text": build_command_text(message, int(self._now())),
        }
        logger.info(
            f"[{request_id}] Sending message {message.id}",
            extra={
                "sender": message.sender,
                "receiver": message.receiver,
                "unix_timestamp": message.unix_timestamp,
                "content_length": len(message.content),
            },
        )
        start_time = time.monotonic()

        try:
            response = await self._client.post(f"{self._relay_url}/{SEND_PATH}", json=request_data)
        except httpx.HTTPError as e:
            logger.error(f"[{request_id}] Relay request failed: {e!r}")
            return SendOutcome.failed(ErrorKind.TRANSPORT_ERROR, f"relay unreachable: {e}")

        duration_ms = round((time.monotonic() - start_time) * 1000, 2)

        if not response.is_success:
            error_text = response.text[:500]
            logger.error(
                f"[{request_id}] Relay returned HTTP {response.status_code}",
                extra={"status": response.status_code, "duration_ms": duration_ms, "error_text": error_text},
            )
            if matches_order_error(error_text, self._order_error_pattern):
                return SendOutcome.failed(ErrorKind.ORDER_VIOLATION, error_text)
            return SendOutcome.failed(
                ErrorKind.TRANSPORT_ERROR,
                f"relay error: {response.status_code} - {response.reason_phrase}",
            )

        try:
            payload = response.json()
        except ValueError as e:
            logger.error(f"[{request_id}] Relay returned malformed JSON: {e}")
            return SendOutcome.failed(ErrorKind.EXCEPTION, "malformed relay response")

        if not isinstance(payload, dict):
            return SendOutcome.failed(ErrorKind.EXCEPTION, "unexpected relay response shape")

        if not payload.get("ok"):
            reason = payload.get("errMessage") or payload.get("description") or "relay rejected message"
            logger.error(f"[{request_id}] Relay rejected message {message.id}: {reason}")
            if matches_order_error(reason, self._order_error_pattern):
                return SendOutcome.failed(ErrorKind.ORDER_VIOLATION, reason)
            return SendOutcome.failed(ErrorKind.PROTOCOL_ERROR, reason)

        receipt_id = _receipt_id(payload)
        logger.info(
            f"[{request_id}] Message {message.id} accepted by relay",
            extra={"delivery_receipt_id": receipt_id, "duration_ms": duration_ms},
        )
        return SendOutcome(success=True, delivery_receipt_id=receipt_id)


class VerificationReconciler:
    """
    Confirms a sent message by finding its receipt id in the relay's
    recent update feed.

    Fails closed: transport errors and malformed feeds return False. A
    false negative only prompts a manual re-check, so this is the
    opposite policy from the conversation clock.
    """

    def __init__(self, client: httpx.AsyncClient, relay_url: str):
        self._client = client
        self._relay_url = relay_url.rstrip("/")

    async def verify(self, delivery_receipt_id: int) -> bool:
        request_id = new_request_id("verify")
        logger.info(f"[{request_id}] Verifying receipt id {delivery_receipt_id}")
        start_time = time.monotonic()

        try:
            response = await self._client.get(f"{self._relay_url}/{UPDATES_PATH}")
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[{request_id}] Update feed unavailable: {e!r}")
            record_lookup("updates", "error")
            return False

        if not isinstance(data, dict) or not data.get("ok") or not isinstance(data.get("result"), list):
            logger.error(f"[{request_id}] Update feed returned non-OK payload")
            record_lookup("updates", "error")
            return False

        found = any(
            isinstance(update, dict)
            and isinstance(update.get("message"), dict)
            and update["message"].get("message_id") == delivery_receipt_id
            for update in data["result"]
        )
        logger.info(
            f"[{request_id}] Verification result for {delivery_receipt_id}: {found}",
            extra={
                "update_count": len(data["result"]),
                "duration_ms": round((time.monotonic() - start_time) * 1000, 2),
            },
        )
        record_lookup("updates", "ok" if found else "not_found")
        return found
