"""
Anchoring of case packages to immutable, content-addressable storage.

Architecture:
  CaseRegistry (case persisted locally, status=pending)
           |
  seal_package (canonical JSON + optional Ed25519 signature)
           |
  AnchorGateway.store(bytes, tags) -> external ref
           |
  [InMemoryAnchorGateway: sha256 content address, dev/tests]
  [HttpAnchorGateway: POST {endpoint}/anchors via aiohttp]

A failed or timed-out anchor never rolls back the persisted case; it
leaves anchor_ref unset and the scheduler retries with backoff.
"""

import asyncio
import hashlib
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, Optional

import aiohttp

from .exceptions import ExternalDependencyFailure, NotFoundError
from .models import CasePackage
from .utils import calculate_backoff

logger = logging.getLogger(__name__)


class AnchorGateway(ABC):
    """Immutable storage writer consumed by the case registry."""

    @abstractmethod
    async def store(self, data: bytes, tags: Dict[str, str]) -> str:
        """
        Write data and return its external reference.

        Raises:
            ExternalDependencyFailure: retryable or terminal
        """

    @abstractmethod
    async def get(self, ref: str) -> bytes:
        """Read back previously stored bytes."""

    async def close(self) -> None:
        pass


class InMemoryAnchorGateway(AnchorGateway):
    """
    Content-addressable in-process store.

    The reference is the SHA-256 hex of the data, so storing the same
    package twice is harmless (at-least-once delivery).
    """

    def __init__(self):
        self._objects: Dict[str, bytes] = {}
        self._tags: Dict[str, Dict[str, str]] = {}

    async def store(self, data: bytes, tags: Dict[str, str]) -> str:
        ref = hashlib.sha256(data).hexdigest()
        self._objects.setdefault(ref, data)
        self._tags.setdefault(ref, dict(tags))
        return ref

    async def get(self, ref: str) -> bytes:
        try:
            return self._objects[ref]
        except KeyError:
            raise NotFoundError(f"Anchor {ref} not found")

    def tags_for(self, ref: str) -> Dict[str, str]:
        return dict(self._tags.get(ref, {}))

    def __len__(self) -> int:
        return len(self._objects)


class HttpAnchorGateway(AnchorGateway):
    """
    Immutable storage gateway over HTTP.

    Protocol:
        POST {endpoint}/anchors   raw body, tags as X-Tag-<Name> headers
                                  -> 200/201 {"ref": "..."}
        GET  {endpoint}/anchors/{ref} -> raw body

    Timeouts, connection errors, 429 and 5xx are retryable; other 4xx
    and malformed replies are terminal.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 60,
        user_agent: str = "dispute-ledger/0.1"
    ):
        self.endpoint = endpoint.rstrip('/')
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self):
        """Close HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    def _headers(self) -> Dict[str, str]:
        headers = {"User-Agent": self.user_agent}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _classify(status: int, body: str) -> ExternalDependencyFailure:
        retryable = status == 429 or status >= 500
        return ExternalDependencyFailure(
            f"Anchor gateway returned HTTP {status}: {body[:200]}",
            retryable=retryable,
            details={"status": status}
        )

    async def store(self, data: bytes, tags: Dict[str, str]) -> str:
        headers = self._headers()
        headers["Content-Type"] = tags.get("Content-Type", "application/octet-stream")
        headers["X-Content-Hash"] = f"sha256:{hashlib.sha256(data).hexdigest()}"
        for name, value in tags.items():
            headers[f"X-Tag-{name}"] = value

        url = f"{self.endpoint}/anchors"
        session = await self._get_session()
        try:
            async with session.post(url, data=data, headers=headers) as response:
                if response.status in (200, 201):
                    try:
                        payload = await response.json(content_type=None)
                        ref = payload["ref"]
                    except (ValueError, KeyError, TypeError) as e:
                        raise ExternalDependencyFailure(
                            f"Malformed anchor gateway reply: {e}",
                            retryable=False
                        )
                    if not isinstance(ref, str) or not ref:
                        raise ExternalDependencyFailure(
                            "Anchor gateway returned an empty reference",
                            retryable=False
                        )
                    return ref

                raise self._classify(response.status, await response.text())

        except asyncio.TimeoutError:
            raise ExternalDependencyFailure("Anchor gateway timed out", retryable=True)
        except aiohttp.ClientError as e:
            raise ExternalDependencyFailure(f"Anchor gateway connection error: {e}", retryable=True)

    async def get(self, ref: str) -> bytes:
        url = f"{self.endpoint}/anchors/{ref}"
        session = await self._get_session()
        try:
            async with session.get(url, headers=self._headers()) as response:
                if response.status == 200:
                    return await response.read()
                if response.status == 404:
                    raise NotFoundError(f"Anchor {ref} not found")
                raise self._classify(response.status, await response.text())

        except asyncio.TimeoutError:
            raise ExternalDependencyFailure("Anchor gateway timed out", retryable=True)
        except aiohttp.ClientError as e:
            raise ExternalDependencyFailure(f"Anchor gateway connection error: {e}", retryable=True)


def build_anchor_tags(
    package: CasePackage,
    app_name: str = "Dispute-Ledger",
    app_version: str = "0.1.0"
) -> Dict[str, str]:
    """Descriptive tags stored alongside a case package."""
    return {
        "Content-Type": "application/json",
        "App-Name": app_name,
        "App-Version": app_version,
        "Data-Type": "dispute-package",
        "Subject-ID": package.subject_id,
        "Case-ID": package.case_id,
        "Merkle-Root": package.merkle_root,
        "Evidence-Count": str(len(package.evidence)),
        "Created-By": package.created_by,
        "Status": package.status.value,
    }


async def anchor_once(
    gateway: AnchorGateway,
    data: bytes,
    tags: Dict[str, str],
    timeout: float
) -> str:
    """
    One bounded anchoring attempt.

    Raises:
        ExternalDependencyFailure: On timeout or gateway failure
    """
    try:
        return await asyncio.wait_for(gateway.store(data, tags), timeout=timeout)
    except asyncio.TimeoutError:
        raise ExternalDependencyFailure(
            f"Anchoring timed out after {timeout}s",
            retryable=True
        )


async def anchor_with_retry(
    gateway: AnchorGateway,
    data: bytes,
    tags: Dict[str, str],
    max_attempts: int = 3,
    base_delay: float = 5.0,
    max_delay: float = 300.0,
    timeout: float = 60.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> str:
    """
    Anchor with bounded attempts and exponential backoff.

    Only retryable failures are retried; a terminal failure is raised
    immediately.

    Raises:
        ExternalDependencyFailure: The last failure once attempts run out
    """
    last_error: Optional[ExternalDependencyFailure] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return await anchor_once(gateway, data, tags, timeout)
        except ExternalDependencyFailure as e:
            last_error = e
            logger.warning(
                f"Anchor attempt {attempt}/{max_attempts} failed: {e.message}"
            )
            if not e.retryable:
                raise
            if attempt < max_attempts:
                await sleep(calculate_backoff(attempt, base_delay, max_delay))

    raise last_error
