"""
Registration sources for the subscription cache.

Each source returns a complete RegistrationState; the cache never reads
partial state. The REST source talks to the registration API, the file
source reads a JSON snapshot, and the static source holds state in memory.
"""

import asyncio
import json
import random
from abc import ABC, abstractmethod
from functools import wraps
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiohttp
import structlog
from pydantic import ValidationError

from .entities import Filter, RegistrationState, Subscription, Target

logger = structlog.get_logger(__name__)


class RegistrationSourceError(Exception):
    """Base exception for registration source errors."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


def retry_with_backoff(max_retries=3, base_delay=0.5, max_delay=5.0):
    """
    Decorator for retry with exponential backoff.

    Args:
        max_retries: Maximum number of attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
    """

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            attempts = max_retries
            if args and hasattr(args[0], "max_retries"):
                attempts = args[0].max_retries
            last_exception = None

            for attempt in range(attempts):
                try:
                    return await func(*args, **kwargs)
                except (aiohttp.ClientError, asyncio.TimeoutError, RegistrationSourceError) as e:
                    last_exception = e

                    if attempt < attempts - 1:
                        delay = min(base_delay * (2**attempt) + random.uniform(0, base_delay), max_delay)  # nosec B311
                        logger.warning(
                            "Registration load failed, retrying",
                            attempt=attempt + 1,
                            max_attempts=attempts,
                            retry_in_seconds=round(delay, 2),
                            error=str(e),
                        )
                        await asyncio.sleep(delay)
                    else:
                        logger.error("All registration load attempts failed", error=str(e))

            if isinstance(last_exception, RegistrationSourceError):
                raise last_exception
            raise RegistrationSourceError(
                f"Registration load failed: {last_exception}", original_error=last_exception
            )

        return wrapper

    return decorator


def parse_registration_state(data: Dict[str, Any]) -> RegistrationState:
    """Validate raw registration data into a RegistrationState."""
    try:
        return RegistrationState(
            targets=[Target.model_validate(t) for t in data.get("targets", [])],
            filters=[Filter.model_validate(f) for f in data.get("filters", [])],
            subscriptions=[Subscription.model_validate(s) for s in data.get("subscriptions", [])],
        )
    except ValidationError as e:
        raise RegistrationSourceError(f"Invalid registration data: {e}", original_error=e)


class RegistrationSource(ABC):
    """Read-only view of the registration store."""

    @abstractmethod
    async def load(self) -> RegistrationState:
        """Return the full current registration state."""

    async def close(self) -> None:
        """Release any held resources."""


class StaticRegistrationSource(RegistrationSource):
    """Registration state held in process, for embedding and tests."""

    def __init__(self, state: Optional[RegistrationState] = None):
        self._state = state or RegistrationState()

    def replace(self, state: RegistrationState) -> None:
        self._state = state

    def set_subscription_active(self, subscription_id: str, active: bool) -> bool:
        """Flip a subscription's active flag. Returns False if it does not exist."""
        subscriptions = []
        found = False
        for sub in self._state.subscriptions:
            if sub.subscription_id == subscription_id:
                sub = sub.model_copy(update={"active": active})
                found = True
            subscriptions.append(sub)
        if found:
            self._state = self._state.model_copy(update={"subscriptions": subscriptions})
        return found

    async def load(self) -> RegistrationState:
        return self._state


class FileRegistrationSource(RegistrationSource):
    """Reads a JSON snapshot with ``targets``, ``filters`` and ``subscriptions`` lists."""

    def __init__(self, path: Path):
        self.path = Path(path)

    async def load(self) -> RegistrationState:
        loop = asyncio.get_running_loop()
        try:
            raw = await loop.run_in_executor(None, self.path.read_text)
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError) as e:
            raise RegistrationSourceError(
                f"Failed to read registration file {self.path}: {e}", original_error=e
            )
        if not isinstance(data, dict):
            raise RegistrationSourceError("Registration file must contain a JSON object")
        return parse_registration_state(data)


class RestRegistrationSource(RegistrationSource):
    """
    Reads registration state from the registration API.

    Issues GET-all on ``[base]/webhooks/targets``, ``/filters`` and
    ``/subscriptions``. A response may be a bare JSON list or an object
    with an ``items`` list.
    """

    COLLECTIONS = ("targets", "filters", "subscriptions")

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 10.0,
        max_retries: int = 3,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self._session = session
        self._owns_session = session is None

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
            )
            self._owns_session = True
        return self._session

    async def _fetch_collection(self, name: str) -> List[Dict[str, Any]]:
        session = await self._ensure_session()
        url = f"{self.base_url}/webhooks/{name}"
        async with session.get(url, headers=self._get_headers()) as resp:
            if resp.status != 200:
                body = await resp.text()
                raise RegistrationSourceError(
                    f"GET {url} returned HTTP {resp.status}: {body[:200]}"
                )
            data = await resp.json(content_type=None)

        if isinstance(data, dict):
            data = data.get("items")
        if not isinstance(data, list):
            raise RegistrationSourceError(f"GET {url} did not return a list of {name}")
        return data

    @retry_with_backoff()
    async def load(self) -> RegistrationState:
        collections = await asyncio.gather(
            *(self._fetch_collection(name) for name in self.COLLECTIONS)
        )
        state = parse_registration_state(dict(zip(self.COLLECTIONS, collections)))
        logger.debug(
            "Registration state loaded",
            base_url=self.base_url,
            targets=len(state.targets),
            filters=len(state.filters),
            subscriptions=len(state.subscriptions),
        )
        return state

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
