"""Push delivery gateways.

A gateway accepts one chunk of messages and returns one ticket per
message, in order. Whole-chunk failures are raised as DeliveryError.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Iterable, Optional

import aiohttp

from src.notifications.config import TicketStatus
from src.notifications.errors import DeliveryError, GatewayTimeoutError
from src.notifications.models import PushMessage, PushTicket

logger = logging.getLogger(__name__)

EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"
EXPO_MAX_CHUNK_SIZE = 100


class BasePushGateway(ABC):
    """Chunked push submission."""

    max_chunk_size: int = EXPO_MAX_CHUNK_SIZE

    @abstractmethod
    async def send_chunk(self, messages: list[PushMessage]) -> list[PushTicket]:
        ...

    async def close(self) -> None:
        return None


def parse_ticket(raw: dict) -> PushTicket:
    """Convert one Expo ticket object into a PushTicket."""
    details = raw.get("details") or {}
    if raw.get("status") == TicketStatus.OK.value:
        return PushTicket(status=TicketStatus.OK, ticket_id=raw.get("id"), details=details)
    message = raw.get("message") or details.get("error") or "Unknown error"
    return PushTicket(status=TicketStatus.ERROR, message=message, details=details)


class ExpoPushGateway(BasePushGateway):
    """Expo push service client over aiohttp.

    Args:
        url: Push endpoint.
        access_token: Optional bearer token for enhanced push security.
        timeout_seconds: Total timeout per chunk request.
        max_chunk_size: Maximum messages per request.
    """

    def __init__(
        self,
        url: str = EXPO_PUSH_URL,
        access_token: Optional[str] = None,
        timeout_seconds: float = 10.0,
        max_chunk_size: int = EXPO_MAX_CHUNK_SIZE,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.url = url
        self.access_token = access_token
        self.timeout_seconds = timeout_seconds
        self.max_chunk_size = max_chunk_size
        self._session = session
        self._owns_session = session is None

    def _headers(self) -> dict:
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def send_chunk(self, messages: list[PushMessage]) -> list[PushTicket]:
        if len(messages) > self.max_chunk_size:
            raise DeliveryError(
                f"Chunk of {len(messages)} exceeds gateway limit {self.max_chunk_size}"
            )

        session = await self._get_session()
        body = [m.to_payload() for m in messages]

        try:
            async with session.post(
                self.url,
                json=body,
                headers=self._headers(),
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            ) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    logger.error("Expo push API error (%d): %s", resp.status, text[:500])
                    raise DeliveryError(f"HTTP {resp.status}: {text[:200]}")
                data = await resp.json()
        except asyncio.TimeoutError as e:
            raise GatewayTimeoutError(
                f"Push gateway timed out after {self.timeout_seconds}s"
            ) from e
        except aiohttp.ClientError as e:
            raise DeliveryError(f"Push gateway request failed: {e}") from e

        raw_tickets = data.get("data") if isinstance(data, dict) else None
        if not isinstance(raw_tickets, list):
            raise DeliveryError("Unexpected response format from push gateway")
        return [parse_ticket(t) for t in raw_tickets]

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()


class MockPushGateway(BasePushGateway):
    """In-process gateway with scripted failures, for tests and dry runs.

    Args:
        failing_tokens: Tokens that receive an error ticket.
        failing_chunks: Zero-based chunk indexes that raise DeliveryError.
        delay_seconds: Sleep before answering each chunk.
        error_message: Message used on scripted error tickets.
    """

    def __init__(
        self,
        failing_tokens: Iterable[str] = (),
        failing_chunks: Iterable[int] = (),
        delay_seconds: float = 0.0,
        max_chunk_size: int = EXPO_MAX_CHUNK_SIZE,
        error_message: str = "DeviceNotRegistered",
    ):
        self.failing_tokens = set(failing_tokens)
        self.failing_chunks = set(failing_chunks)
        self.delay_seconds = delay_seconds
        self.max_chunk_size = max_chunk_size
        self.error_message = error_message
        self.sent_chunks: list[list[PushMessage]] = []

    @property
    def sent_messages(self) -> list[PushMessage]:
        return [m for chunk in self.sent_chunks for m in chunk]

    async def send_chunk(self, messages: list[PushMessage]) -> list[PushTicket]:
        index = len(self.sent_chunks)
        self.sent_chunks.append(list(messages))

        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)

        if index in self.failing_chunks:
            raise DeliveryError(f"Scripted failure for chunk {index}")

        tickets = []
        for i, message in enumerate(messages):
            if message.to in self.failing_tokens:
                tickets.append(PushTicket(
                    status=TicketStatus.ERROR,
                    message=self.error_message,
                    details={"error": self.error_message},
                ))
            else:
                tickets.append(PushTicket(status=TicketStatus.OK, ticket_id=f"mock-{index}-{i}"))
        return tickets
