"""HTTP client for the variant assignment endpoint."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import quote

import httpx

from core.domain import Case, parse_case

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
RETRY_DELAY = 0.1  # seconds, multiplied by the attempt number


class AssignmentUnavailable(Exception):
    """Raised when one assignment request fails."""
    pass


@dataclass
class VariantAssignment:
    test_id: str
    product_id: str
    case: Case
    images: list[str] = field(default_factory=list)
    forced: bool = False


class AssignmentClient:
    """
    Fetches a session's assignment with bounded retries.

    Failures never reach the caller: after the last attempt ``fetch``
    returns None and the page keeps its own images.
    """

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        max_attempts: int = MAX_ATTEMPTS,
        retry_delay: float = RETRY_DELAY,
        timeout: float = 5.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _request(
        self, product_id: str, session_id: str, force: Optional[Case]
    ) -> dict:
        params = {"session": session_id}
        if force is not None:
            params["force"] = force.value
        url = f"{self.base_url}/variant/{quote(product_id, safe='')}"
        try:
            response = await self._get_client().get(
                url,
                params=params,
                headers={"X-AB-Session": session_id[:32]},
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise AssignmentUnavailable(str(e)) from e
        if not isinstance(data, dict):
            raise AssignmentUnavailable(f"Unexpected assignment body: {type(data).__name__}")
        return data

    async def fetch(
        self,
        product_id: str,
        session_id: str,
        force: Optional[str] = None,
    ) -> Optional[VariantAssignment]:
        """
        Assignment for (product, session), or None.

        None means no active test, an unusable response, or every
        attempt failed.
        """
        forced_case = parse_case(force) if force else None
        data = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                data = await self._request(product_id, session_id, forced_case)
                break
            except AssignmentUnavailable as e:
                if attempt >= self.max_attempts:
                    logger.warning(
                        "Assignment lookup for %s failed after %d attempts: %s",
                        product_id,
                        attempt,
                        e,
                    )
                    return None
                await asyncio.sleep(self.retry_delay * attempt)

        if not data or not data.get("active"):
            logger.debug("No active test for %s", product_id)
            return None

        case = parse_case(str(data.get("case") or ""))
        images = [url for url in data.get("images") or [] if isinstance(url, str) and url]
        if case is None or not data.get("test_id") or not images:
            logger.debug("Incomplete assignment for %s ignored", product_id)
            return None

        return VariantAssignment(
            test_id=data["test_id"],
            product_id=data.get("product_id") or product_id,
            case=case,
            images=images,
            forced=bool(data.get("forced")),
        )
