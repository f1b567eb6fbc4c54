"""Clients for reading and writing signal records on a relay."""
from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from typing import Any
from typing import Generator
from typing import Protocol
from typing import runtime_checkable

import requests

from signalbox.exceptions import RelayError
from signalbox.messages import SignalRecord
from signalbox.relay.storage import SignalLog

logger = logging.getLogger(__name__)


@runtime_checkable
class RelayClient(Protocol):
    """Client protocol for interfacing with a relay."""

    async def write(
        self,
        session_name: str,
        sender_id: str,
        message: dict[str, Any],
    ) -> None:
        """Append a record to the session.

        Raises:
            RelayError: If the relay request fails.
        """
        ...

    async def read(
        self,
        session_name: str,
        recipient_id: str,
    ) -> list[SignalRecord]:
        """Read and remove the records not written by the recipient.

        Returns:
            Records, most-recent-first. Payloads are not validated.

        Raises:
            RelayError: If the relay request fails.
        """
        ...

    async def is_offering(self, session_name: str, recipient_id: str) -> bool:
        """Check if another sender has a pending offer in the session.

        Raises:
            RelayError: If the relay request fails.
        """
        ...

    async def delete(self, session_name: str, sender_id: str) -> None:
        """Delete all records of the sender in the session.

        Raises:
            RelayError: If the relay request fails.
        """
        ...

    async def close(self) -> None:
        """Close the client."""
        ...


class HTTPRelayClient:
    """Relay client for a relay served over HTTP.

    Requests are made with [`requests`][requests] in the default executor
    of the running event loop so polling never blocks the loop.

    Args:
        address: Address of the relay server. Should start with `http://` or
            `https://`.
        timeout: Seconds to wait on each request.
        session: Session instance to use for making requests. A new session
            is created if not provided.

    Raises:
        ValueError: If address does not start with `http://` or `https://`.
    """

    def __init__(
        self,
        address: str,
        *,
        timeout: float = 10,
        session: requests.Session | None = None,
    ) -> None:
        if not (
            address.startswith('http://') or address.startswith('https://')
        ):
            raise ValueError(
                'Relay server address must start with http:// or https://. '
                f'Got {address}.',
            )

        self._address = address
        self._timeout = timeout
        self._session = requests.Session() if session is None else session

    @property
    def address(self) -> str:
        """Address of the relay server."""
        return self._address

    async def _request(self, method: str, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        call = functools.partial(
            self._session.request,
            method,
            self._address,
            timeout=self._timeout,
            **kwargs,
        )
        try:
            response = await loop.run_in_executor(None, call)
        except requests.exceptions.RequestException as e:
            raise RelayError(
                f'{method} request to relay at {self._address} failed: {e}',
            ) from e

        if not response.ok:
            raise RelayError(
                f'Relay returned HTTP error code {response.status_code}. '
                f'{response.text}',
            )

        try:
            return response.json()
        except ValueError as e:
            raise RelayError('Relay returned a non-JSON response.') from e

    async def write(
        self,
        session_name: str,
        sender_id: str,
        message: dict[str, Any],
    ) -> None:
        """Append a record to the session."""
        await self._request(
            'POST',
            json={
                'sessionName': session_name,
                'senderId': sender_id,
                'message': message,
            },
        )

    async def read(
        self,
        session_name: str,
        recipient_id: str,
    ) -> list[SignalRecord]:
        """Read and remove the records not written by the recipient."""
        data = await self._request(
            'GET',
            params={'sessionName': session_name, 'recipientId': recipient_id},
        )
        if not isinstance(data, list):
            raise RelayError(
                f'Expected a list of records but got {type(data).__name__}.',
            )

        records = []
        for entry in data:
            if not isinstance(entry, dict) or 'message' not in entry:
                logger.warning(
                    f'Skipping malformed record from relay: {entry!r}',
                )
                continue
            records.append(
                SignalRecord(
                    session_name=session_name,
                    sender_id=str(entry.get('from', '')),
                    message=entry['message'],
                    timestamp=str(entry.get('timestamp', '')),
                ),
            )
        return records

    async def is_offering(self, session_name: str, recipient_id: str) -> bool:
        """Check if another sender has a pending offer in the session."""
        data = await self._request(
            'GET',
            params={
                'action': 'isOffering',
                'sessionName': session_name,
                'recipientId': recipient_id,
            },
        )
        if not isinstance(data, dict):
            raise RelayError(
                f'Expected a JSON object but got {type(data).__name__}.',
            )
        return bool(data.get('isOffering', False))

    async def delete(self, session_name: str, sender_id: str) -> None:
        """Delete all records of the sender in the session."""
        await self._request(
            'GET',
            params={
                'action': 'delete',
                'sessionName': session_name,
                'fromId': sender_id,
            },
        )

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        self._session.close()


@contextlib.contextmanager
def _log_errors(operation: str) -> Generator[None, None, None]:
    try:
        yield
    except Exception as e:
        raise RelayError(f'Signal log {operation} failed: {e}') from e


class LocalRelayClient:
    """Relay client operating directly on a signal log.

    Useful for peers in the same process and for tests where an HTTP relay
    is unnecessary. Errors raised by the log are re-raised as
    [`RelayError`][signalbox.exceptions.RelayError].

    Args:
        log: Signal log shared by all clients of the relay.
    """

    def __init__(self, log: SignalLog) -> None:
        self._log = log

    @property
    def log(self) -> SignalLog:
        """Signal log of the relay."""
        return self._log

    async def write(
        self,
        session_name: str,
        sender_id: str,
        message: dict[str, Any],
    ) -> None:
        """Append a record to the session."""
        with _log_errors('append'):
            await self._log.append(session_name, sender_id, message)

    async def read(
        self,
        session_name: str,
        recipient_id: str,
    ) -> list[SignalRecord]:
        """Read and remove the records not written by the recipient."""
        with _log_errors('take'):
            return await self._log.take(session_name, recipient_id)

    async def is_offering(self, session_name: str, recipient_id: str) -> bool:
        """Check if another sender has a pending offer in the session."""
        with _log_errors('is_offering'):
            return await self._log.is_offering(session_name, recipient_id)

    async def delete(self, session_name: str, sender_id: str) -> None:
        """Delete all records of the sender in the session."""
        with _log_errors('delete'):
            await self._log.delete(session_name, sender_id)

    async def close(self) -> None:
        """Does nothing; the log is owned by the caller."""
        pass
