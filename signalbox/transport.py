"""Session-scoped signaling transport over a polling relay."""
from __future__ import annotations

import asyncio
import logging
import uuid
from types import TracebackType
from typing import Any
from typing import Callable

from signalbox.events import EventEmitter
from signalbox.exceptions import MalformedMessageError
from signalbox.exceptions import NotConnectedError
from signalbox.exceptions import RelayError
from signalbox.messages import decode_message
from signalbox.messages import encode_message
from signalbox.messages import Message
from signalbox.messages import MessageType
from signalbox.relay.client import RelayClient
from signalbox.utils.tasks import cancel_task

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 1.0


def log_name(session_name: str | None, sender_id: str | None) -> str:
    """Return string formatted as `#!python 'session(sender-prefix)'`."""
    session = 'none' if session_name is None else session_name
    sender = 'none' if sender_id is None else sender_id[:8]
    return f'{session}({sender})'


class SignalingTransport:
    """Signaling transport over a relay.

    Messages are tagged with a random sender identifier and a session name
    and written to the relay. Messages from other senders in the same
    session are retrieved by polling the relay on a fixed interval while
    connected. Retrieval is the only way messages arrive.

    Subscribe to notifications with
    [`on()`][signalbox.transport.SignalingTransport.on]:

    * `connected`: the transport connected to a session.
    * `disconnected`: the transport disconnected.
    * `message`: a [`Message`][signalbox.messages.Message] was received.

    Example:
        ```python
        from signalbox.relay import HTTPRelayClient
        from signalbox.transport import SignalingTransport

        transport = SignalingTransport(HTTPRelayClient('http://relay:8765'))
        transport.on('message', print)
        await transport.connect('room1')
        await transport.send(Offer(sdp='...'))
        ...
        await transport.close()
        ```

    Args:
        relay: Client for the relay storing the messages.
        poll_interval: Seconds between polls of the relay.
    """

    def __init__(
        self,
        relay: RelayClient,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError('Poll interval must be greater than zero.')

        self._relay = relay
        self._poll_interval = poll_interval

        self._connected = False
        self._session_name: str | None = None
        self._sender_id: str | None = None

        self._poll_task: asyncio.Task[None] | None = None
        self._events = EventEmitter()

    @property
    def _log_prefix(self) -> str:
        name = log_name(self._session_name, self._sender_id)
        return f'{self.__class__.__name__}[{name}]'

    @property
    def connected(self) -> bool:
        """Transport is connected to a session."""
        return self._connected

    @property
    def polling(self) -> bool:
        """The poll loop is running."""
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def poll_interval(self) -> float:
        """Seconds between polls of the relay."""
        return self._poll_interval

    @property
    def relay(self) -> RelayClient:
        """Relay client."""
        return self._relay

    @property
    def sender_id(self) -> str | None:
        """Random identifier of this transport in the current session.

        A new identifier is generated every time the transport connects.
        """
        return self._sender_id

    @property
    def session_name(self) -> str | None:
        """Name of the current session."""
        return self._session_name

    async def __aenter__(self) -> SignalingTransport:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    def on(
        self,
        event: str,
        handler: Callable[..., Any],
    ) -> Callable[[], None]:
        """Subscribe to a transport event.

        Args:
            event: One of `connected`, `disconnected`, or `message`.
            handler: Callable or coroutine function invoked on the event.

        Returns:
            Callable that removes the subscription.
        """
        return self._events.on(event, handler)

    async def connect(self, session_name: str) -> None:
        """Connect to a session and start polling.

        This is a no-op if already connected to the same session. If
        connected to a different session, this logs a warning and does
        nothing; call
        [`disconnect()`][signalbox.transport.SignalingTransport.disconnect]
        first.

        Args:
            session_name: Name of the session shared with the peer.
        """
        if self._connected:
            if session_name != self._session_name:
                logger.warning(
                    f'{self._log_prefix}: ignoring connect to session '
                    f'{session_name} while connected to another session',
                )
            return

        self._session_name = session_name
        self._sender_id = uuid.uuid4().hex
        self._connected = True
        logger.info(f'{self._log_prefix}: connected to session')
        self.start_polling()
        await self._events.emit('connected')

    async def disconnect(self) -> None:
        """Stop polling and disconnect from the session.

        This is a no-op if not connected.
        """
        if not self._connected:
            return
        self._connected = False
        await self._stop_poll_task()
        logger.info(f'{self._log_prefix}: disconnected from session')
        await self._events.emit('disconnected')

    async def close(self) -> None:
        """Disconnect and close the relay client."""
        await self.disconnect()
        await self._relay.close()

    def start_polling(self) -> None:
        """Start the poll loop if connected and not already polling."""
        if not self._connected or self.polling:
            return
        self._poll_task = asyncio.create_task(self._poll_loop())
        self._poll_task.set_name(
            f'signaling-poll-{log_name(self._session_name, self._sender_id)}',
        )
        logger.debug(f'{self._log_prefix}: polling started')

    def stop_negotiation(self) -> None:
        """Stop polling without disconnecting from the session.

        The session identity is kept so the transport can still send and
        can resume polling with
        [`start_polling()`][signalbox.transport.SignalingTransport.start_polling].
        """
        task = self._poll_task
        self._poll_task = None
        if task is not None and not task.done():
            # A poll in progress may be awaiting a handler that called this.
            if task is not asyncio.current_task():
                task.cancel()
            logger.debug(f'{self._log_prefix}: polling stopped')

    async def _stop_poll_task(self) -> None:
        task = self._poll_task
        self._poll_task = None
        await cancel_task(task)

    async def _poll_loop(self) -> None:
        while self._connected:
            await asyncio.sleep(self._poll_interval)
            if asyncio.current_task() is not self._poll_task:
                break
            await self.poll_once()

    async def send(self, message: Message) -> None:
        """Send a message to the other peers in the session.

        The write is best-effort: relay failures are logged and not raised.

        Args:
            message: Message to send.

        Raises:
            NotConnectedError: If the transport is not connected.
        """
        if not self._connected:
            raise NotConnectedError(
                'Signaling transport is not connected to a session.',
            )
        assert self._session_name is not None
        assert self._sender_id is not None

        try:
            await self._relay.write(
                self._session_name,
                self._sender_id,
                encode_message(message),
            )
        except RelayError as e:
            logger.warning(
                f'{self._log_prefix}: error sending {message.type}: {e}',
            )
        else:
            logger.debug(f'{self._log_prefix}: sent {message.type}')

    async def poll_once(self) -> None:
        """Retrieve and dispatch pending messages from the relay.

        The relay returns records most-recent-first. Only the newest offer of
        a pass is kept and once an answer has been seen, older offers in the
        same pass are dropped. The remaining messages are dispatched
        oldest-first so that the order of candidates from one sender is
        preserved. Records that cannot be decoded are logged and skipped.
        Relay failures abandon the pass.
        """
        if not self._connected:
            return
        session_name = self._session_name
        sender_id = self._sender_id
        assert session_name is not None
        assert sender_id is not None

        try:
            records = await self._relay.read(session_name, sender_id)
        except RelayError as e:
            logger.warning(f'{self._log_prefix}: error polling messages: {e}')
            return

        answer_seen = False
        offer_seen = False
        messages: list[Message] = []
        for record in records:
            if (
                answer_seen or offer_seen
            ) and record.message_type == MessageType.offer.value:
                logger.debug(
                    f'{self._log_prefix}: dropping offer from '
                    f'{record.sender_id} superseded by a newer message',
                )
                continue
            try:
                message = decode_message(record.message)
            except MalformedMessageError as e:
                logger.warning(
                    f'{self._log_prefix}: skipping malformed record from '
                    f'{record.sender_id}: {e}',
                )
                continue
            if message.type == MessageType.answer.value:
                answer_seen = True
            elif message.type == MessageType.offer.value:
                offer_seen = True
            messages.append(message)

        for message in reversed(messages):
            if (
                not self._connected
                or self._session_name != session_name
                or self._sender_id != sender_id
            ):
                # Disconnected by a previous handler in this pass
                break
            logger.debug(f'{self._log_prefix}: received {message.type}')
            await self._events.emit('message', message)

    async def is_offering(self) -> bool:
        """Check if another peer has a pending offer in the session.

        Returns:
            `True` if an offer from another sender is pending. `False` if
            not connected or the relay query fails.
        """
        if not self._connected:
            return False
        assert self._session_name is not None
        assert self._sender_id is not None

        try:
            return await self._relay.is_offering(
                self._session_name,
                self._sender_id,
            )
        except RelayError as e:
            logger.warning(
                f'{self._log_prefix}: error checking if offering: {e}',
            )
            return False

    async def delete_own_messages(self) -> None:
        """Delete this transport's pending records in the session.

        Best-effort: relay failures are logged and not raised.
        """
        if not self._connected:
            return
        assert self._session_name is not None
        assert self._sender_id is not None

        try:
            await self._relay.delete(self._session_name, self._sender_id)
        except RelayError as e:
            logger.warning(
                f'{self._log_prefix}: error deleting own messages: {e}',
            )
        else:
            logger.debug(f'{self._log_prefix}: own messages deleted')
