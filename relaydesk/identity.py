import logging
import time

import httpx

from relaydesk.metrics import record_lookup
from relaydesk.schemas import IdentityResult
from relaydesk.utils import new_request_id

logger = logging.getLogger(__name__)

SEARCH_USER_PATH = "search/user"


class IdentityValidator:
    """
    Confirms that a handle exists in the external directory.

    Fails closed: transport errors, non-2xx responses and ok=false all
    come back as exists=False. Nothing is raised, retried or cached.
    """

    def __init__(self, client: httpx.AsyncClient, base_url: str):
        self._client = client
        self._url = f"{base_url.rstrip('/')}/{SEARCH_USER_PATH}"

    async def validate(self, handle: str) -> IdentityResult:
        handle = (handle or "").strip()
        if not handle:
            logger.warning("Identity lookup skipped: empty handle")
            return IdentityResult(exists=False)

        request_id = new_request_id("validate")
        logger.info(f"[{request_id}] Looking up handle: {handle}")
        start_time = time.monotonic()

        try:
            response = await self._client.post(self._url, json={"content": handle})
        except httpx.HTTPError as e:
            logger.error(f"[{request_id}] Directory request failed: {e!r}")
            record_lookup("directory", "error")
            return IdentityResult(exists=False)

        duration_ms = round((time.monotonic() - start_time) * 1000, 2)

        if not response.is_success:
            logger.error(
                f"[{request_id}] Directory returned HTTP {response.status_code}",
                extra={"status": response.status_code, "duration_ms": duration_ms, "body": response.text[:500]},
            )
            record_lookup("directory", "error")
            return IdentityResult(exists=False)

        try:
            payload = response.json()
        except ValueError as e:
            logger.error(f"[{request_id}] Directory returned malformed JSON: {e}")
            record_lookup("directory", "error")
            return IdentityResult(exists=False)

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict) or not payload.get("ok"):
            logger.info(f"[{request_id}] Handle not found: {handle}", extra={"duration_ms": duration_ms})
            record_lookup("directory", "not_found")
            return IdentityResult(exists=False)

        display_name = data.get("first_name") or data.get("original_first_name") or handle
        external_id = data.get("user_id")
        logger.info(
            f"[{request_id}] Handle found: {handle}",
            extra={"external_id": external_id, "duration_ms": duration_ms},
        )
        record_lookup("directory", "ok")
        return IdentityResult(
            exists=True,
            display_name=display_name,
            external_id=external_id if isinstance(external_id, int) else None,
        )
