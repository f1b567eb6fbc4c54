"""Negotiation engine establishing a peer connection over signaling.

The engine drives one negotiation attempt at a time through the states
below. The role of a peer is chosen by asking the relay if another peer is
already offering in the session (check-then-act). Two peers that start at
the same moment may both observe no offer and both become offerers; those
attempts time out and the peers may retry.

```
disconnected --connect_signaling()--> connected
connected --start_negotiation(), no offer pending--> offering
connected --start_negotiation(), offer pending--> answering
offering/answering --peer connected / timeout / stop--> connected
any --disconnect()--> disconnected
```
"""
from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
from typing import Any
from typing import Callable

from aiortc import RTCIceCandidate
from aiortc import RTCSessionDescription

from signalbox.events import EventEmitter
from signalbox.exceptions import AnsweringTimeoutError
from signalbox.exceptions import NegotiationAbortedError
from signalbox.exceptions import NegotiationError
from signalbox.exceptions import NotConnectedError
from signalbox.exceptions import OfferingTimeoutError
from signalbox.exceptions import PeerConnectionError
from signalbox.mailbox import SharedMailbox
from signalbox.messages import Answer
from signalbox.messages import Candidate
from signalbox.messages import Message
from signalbox.messages import Offer
from signalbox.peer import candidate_from_message
from signalbox.peer import candidate_to_message
from signalbox.peer import create_peer_connection
from signalbox.peer import PeerConnectionCapability
from signalbox.peer import PeerFactory
from signalbox.transport import log_name
from signalbox.transport import SignalingTransport
from signalbox.utils.tasks import spawn_background_task

logger = logging.getLogger(__name__)

DEFAULT_NEGOTIATION_TIMEOUT = 60.0
DEFAULT_CHANNEL_LABEL = 'signalbox'


class NegotiationState(enum.Enum):
    """States of the negotiation engine."""

    DISCONNECTED = 'disconnected'
    """Not connected to a signaling session."""
    CONNECTED = 'connected'
    """Connected to a signaling session with no attempt in progress."""
    OFFERING = 'offering'
    """Sent an offer and waiting for an answer."""
    ANSWERING = 'answering'
    """Waiting for an offer to answer."""


@dataclasses.dataclass(eq=False)
class NegotiationAttempt:
    """State of one negotiation attempt.

    Attributes:
        session_name: Session being negotiated.
        peer: Peer connection created for this attempt.
        done: Future resolved when the peer connects or rejected when the
            attempt fails.
        role: `OFFERING` or `ANSWERING` once the role is chosen.
        timer: Handle of the timeout callback.
        candidates: Remote candidates received before the remote
            description was set, in arrival order.
        remote_description_set: The remote description has been applied.
        closed: The attempt was completed or abandoned.
    """

    session_name: str
    peer: PeerConnectionCapability
    done: asyncio.Future[None]
    role: NegotiationState | None = None
    timer: asyncio.TimerHandle | None = None
    candidates: list[RTCIceCandidate] = dataclasses.field(
        default_factory=list,
    )
    remote_description_set: bool = False
    closed: bool = False

    def close(self) -> None:
        """Cancel the timer, clear queued candidates, and mark closed."""
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None
        self.candidates.clear()
        self.closed = True


class NegotiationEngine:
    """Establish a peer connection with another peer in a session.

    Messages arrive through the transport's poll loop and are handled one
    at a time. Every handler re-checks after each `await` that its attempt
    is still the current, open attempt and otherwise stops, so abandoning
    an attempt never waits on in-flight relay or peer calls.

    Subscribe to notifications with
    [`on()`][signalbox.engine.NegotiationEngine.on]:

    * `statechange`: called with the new
      [`NegotiationState`][signalbox.engine.NegotiationState].
    * `connected`: the peer connection was established.
    * `disconnected`: the engine disconnected or an established peer
      connection was lost.
    * `datachannelstatechange`: called with the data channel ready state.
    * `sharedevent`: called with the event type and data of a shared event.

    Example:
        ```python
        from signalbox.engine import NegotiationEngine
        from signalbox.relay import HTTPRelayClient
        from signalbox.transport import SignalingTransport

        transport = SignalingTransport(HTTPRelayClient('http://relay:8765'))
        engine = NegotiationEngine(transport, timeout=30)
        await engine.start_negotiation('room1')
        engine.mailbox.set_value('score', '10')
        await engine.close()
        ```

    Args:
        transport: Signaling transport used to exchange messages.
        timeout: Seconds an attempt may take before it is abandoned.
        peer_factory: Callable returning a new peer connection for each
            attempt. Defaults to an aiortc peer connection without ICE
            servers.
        channel_label: Label of the data channel opened by the offerer.

    Raises:
        ValueError: If `timeout` is not positive.
    """

    def __init__(
        self,
        transport: SignalingTransport,
        *,
        timeout: float = DEFAULT_NEGOTIATION_TIMEOUT,
        peer_factory: PeerFactory | None = None,
        channel_label: str = DEFAULT_CHANNEL_LABEL,
    ) -> None:
        if timeout <= 0:
            raise ValueError('Negotiation timeout must be greater than zero.')

        self._transport = transport
        self._timeout = timeout
        self._peer_factory: PeerFactory = (
            create_peer_connection if peer_factory is None else peer_factory
        )
        self._channel_label = channel_label

        self._state = NegotiationState.DISCONNECTED
        self._session_name: str | None = None
        self._attempt: NegotiationAttempt | None = None
        # Peer connection of the last successful attempt
        self._peer: PeerConnectionCapability | None = None

        self._events = EventEmitter()
        self._mailbox = SharedMailbox(self._events)
        self._transport.on('message', self._handle_message)

    @property
    def _log_prefix(self) -> str:
        name = log_name(self._session_name, self._transport.sender_id)
        return f'{self.__class__.__name__}[{name}]'

    @property
    def state(self) -> NegotiationState:
        """Current negotiation state."""
        return self._state

    @property
    def session_name(self) -> str | None:
        """Name of the signaling session or `None` if disconnected."""
        return self._session_name

    @property
    def is_connected(self) -> bool:
        """The peer connection is established."""
        return (
            self._peer is not None
            and self._peer.connectionState == 'connected'
        )

    @property
    def mailbox(self) -> SharedMailbox:
        """Values and events shared with the remote peer."""
        return self._mailbox

    @property
    def data_channel_state(self) -> str:
        """Ready state of the data channel or `'n/a'` without a channel."""
        return self._mailbox.channel_state

    @property
    def timeout(self) -> float:
        """Seconds an attempt may take before it is abandoned."""
        return self._timeout

    @property
    def transport(self) -> SignalingTransport:
        """Signaling transport."""
        return self._transport

    def on(
        self,
        event: str,
        handler: Callable[..., Any],
    ) -> Callable[[], None]:
        """Subscribe to an engine event.

        Returns:
            Callable that removes the subscription.
        """
        return self._events.on(event, handler)

    def _is_current(self, attempt: NegotiationAttempt) -> bool:
        return self._attempt is attempt and not attempt.closed

    async def _set_state(self, state: NegotiationState) -> None:
        if state is self._state:
            return
        logger.debug(
            f'{self._log_prefix}: state {self._state.value} -> {state.value}',
        )
        self._state = state
        await self._events.emit('statechange', state)

    async def connect_signaling(self, session_name: str) -> None:
        """Connect to a signaling session.

        Does nothing if already connected to `session_name`. If connected to
        a different session, the engine disconnects first.

        Args:
            session_name: Name of the session shared with the peer.
        """
        if self._state is not NegotiationState.DISCONNECTED:
            if session_name == self._session_name:
                return
            await self.disconnect()

        await self._transport.connect(session_name)
        # Messages are only retrieved while an attempt is in progress
        self._transport.stop_negotiation()
        self._session_name = session_name
        logger.info(f'{self._log_prefix}: signaling connected')
        await self._set_state(NegotiationState.CONNECTED)

    async def start_negotiation(self, session_name: str) -> bool:
        """Negotiate a peer connection in a session.

        Connects to the session if needed. The engine answers if another
        peer has a pending offer in the session and offers otherwise.

        Args:
            session_name: Name of the session shared with the peer.

        Returns:
            `True` once the peer connection is established. `False`
            immediately if an attempt for `session_name` is already in
            progress.

        Raises:
            OfferingTimeoutError: If no answer connected the peers in time.
            AnsweringTimeoutError: If no offer connected the peers in time.
            NegotiationAbortedError: If the attempt was stopped, replaced by
                an attempt for another session, or the engine disconnected.
            PeerConnectionError: If the peer connection failed.
        """
        current = self._attempt
        if current is not None:
            if current.session_name == session_name:
                logger.info(
                    f'{self._log_prefix}: negotiation of {session_name} '
                    'already in progress',
                )
                return False
            await self._abandon(
                current,
                NegotiationAbortedError(
                    f'Negotiation of {current.session_name} was replaced by '
                    f'negotiation of {session_name}.',
                ),
            )

        await self._close_established()
        await self.connect_signaling(session_name)
        if self._attempt is not None:
            logger.info(
                f'{self._log_prefix}: another negotiation started while '
                'connecting',
            )
            return False

        loop = asyncio.get_running_loop()
        attempt = NegotiationAttempt(
            session_name=session_name,
            peer=self._peer_factory(),
            done=loop.create_future(),
        )
        self._attempt = attempt
        self._watch_peer(attempt)

        try:
            await self._begin(attempt)
            await attempt.done
        except BaseException:
            # Cancelled or failed before the attempt settled
            if not attempt.done.done():
                attempt.done.cancel()
            if attempt.done.cancelled():
                await self._abandon(
                    attempt,
                    NegotiationAbortedError('Negotiation was cancelled.'),
                )
            raise
        return True

    async def _begin(self, attempt: NegotiationAttempt) -> None:
        offering = await self._transport.is_offering()
        if not self._is_current(attempt):
            return
        attempt.role = (
            NegotiationState.ANSWERING
            if offering
            else NegotiationState.OFFERING
        )
        attempt.timer = asyncio.get_running_loop().call_later(
            self._timeout,
            self._on_timeout,
            attempt,
        )
        self._transport.start_polling()
        logger.info(
            f'{self._log_prefix}: started {attempt.role.value} '
            f'(timeout: {self._timeout}s)',
        )
        await self._set_state(attempt.role)
        if (
            self._is_current(attempt)
            and attempt.role is NegotiationState.OFFERING
        ):
            await self._send_offer(attempt)

    async def stop_negotiation(self) -> None:
        """Abandon the current attempt and return to `connected`.

        The caller of
        [`start_negotiation()`][signalbox.engine.NegotiationEngine.start_negotiation]
        is rejected with
        [`NegotiationAbortedError`][signalbox.exceptions.NegotiationAbortedError].
        Safe to call in any state.
        """
        attempt = self._attempt
        if attempt is None:
            self._transport.stop_negotiation()
            return
        await self._abandon(
            attempt,
            NegotiationAbortedError('Negotiation was stopped.'),
        )
        logger.info(f'{self._log_prefix}: negotiation stopped')

    async def disconnect(self) -> None:
        """Close the peer connection and disconnect from the session.

        Any attempt in progress is rejected with
        [`NegotiationAbortedError`][signalbox.exceptions.NegotiationAbortedError].
        Safe to call more than once.
        """
        await self._disconnect(
            NegotiationAbortedError('Signaling was disconnected.'),
        )

    async def close(self) -> None:
        """Disconnect, close the transport, and drop all event handlers."""
        await self.disconnect()
        await self._transport.close()
        self._events.remove_all()

    async def _disconnect(self, error: NegotiationError) -> None:
        attempt = self._attempt
        self._attempt = None
        peer = self._peer
        self._peer = None

        if attempt is not None and not attempt.closed:
            attempt.close()
            self._transport.stop_negotiation()
            await self._transport.delete_own_messages()
            await self._close_peer(attempt.peer)
        self._mailbox.detach()
        if peer is not None:
            await self._close_peer(peer)
        await self._transport.disconnect()

        was_disconnected = self._state is NegotiationState.DISCONNECTED
        self._session_name = None
        await self._set_state(NegotiationState.DISCONNECTED)
        if not was_disconnected:
            logger.info(f'{self._log_prefix}: disconnected')
            await self._events.emit('disconnected')

        if attempt is not None and not attempt.done.done():
            attempt.done.set_exception(error)

    async def _abandon(
        self,
        attempt: NegotiationAttempt,
        error: NegotiationError,
    ) -> None:
        if attempt.closed:
            return
        # Stays the current attempt until cleanup finishes so a repeated
        # start for the same session is still rejected as a duplicate.
        attempt.close()
        self._transport.stop_negotiation()
        await self._transport.delete_own_messages()
        self._mailbox.detach()
        await self._close_peer(attempt.peer)

        if self._attempt is attempt:
            self._attempt = None
            if self._state in (
                NegotiationState.OFFERING,
                NegotiationState.ANSWERING,
            ):
                await self._set_state(NegotiationState.CONNECTED)
        if not attempt.done.done():
            attempt.done.set_exception(error)

    async def _close_established(self) -> None:
        peer = self._peer
        if peer is None:
            return
        self._peer = None
        self._mailbox.detach()
        await self._close_peer(peer)

    async def _close_peer(self, peer: PeerConnectionCapability) -> None:
        try:
            await peer.close()
        except Exception as e:
            logger.warning(
                f'{self._log_prefix}: error closing peer connection: {e}',
            )

    def _on_timeout(self, attempt: NegotiationAttempt) -> None:
        if not self._is_current(attempt):
            return
        attempt.timer = None
        if attempt.role is NegotiationState.OFFERING:
            error: NegotiationError = OfferingTimeoutError(
                f'No answer was received within {self._timeout}s.',
            )
        else:
            error = AnsweringTimeoutError(
                f'No offer was received within {self._timeout}s.',
            )
        assert attempt.role is not None
        logger.warning(f'{self._log_prefix}: {attempt.role.value} timed out')
        spawn_background_task(self._abandon, attempt, error)

    def _watch_peer(self, attempt: NegotiationAttempt) -> None:
        peer = attempt.peer

        def _on_connection_state_change() -> None:
            spawn_background_task(
                self._handle_connection_state,
                attempt,
                peer.connectionState,
            )

        def _on_ice_candidate(candidate: RTCIceCandidate | None) -> None:
            if candidate is not None:
                spawn_background_task(
                    self._send_candidate,
                    attempt,
                    candidate,
                )

        def _on_data_channel(channel: Any) -> None:
            if self._is_current(attempt) or self._peer is peer:
                spawn_background_task(self._mailbox.attach, channel)

        peer.on('connectionstatechange', _on_connection_state_change)
        peer.on('icecandidate', _on_ice_candidate)
        peer.on('datachannel', _on_data_channel)

    async def _handle_connection_state(
        self,
        attempt: NegotiationAttempt,
        state: str,
    ) -> None:
        logger.debug(f'{self._log_prefix}: connection state {state}')
        if state == 'connected':
            if not self._is_current(attempt):
                return
            attempt.close()
            self._attempt = None
            self._peer = attempt.peer
            self._transport.stop_negotiation()
            logger.info(f'{self._log_prefix}: peer connection established')
            await self._set_state(NegotiationState.CONNECTED)
            await self._events.emit('connected')
            if not attempt.done.done():
                attempt.done.set_result(None)
        elif state in ('failed', 'closed'):
            if self._is_current(attempt):
                logger.warning(
                    f'{self._log_prefix}: peer connection {state} while '
                    'negotiating',
                )
                await self._disconnect(
                    PeerConnectionError(f'Peer connection {state}.'),
                )
            elif self._peer is attempt.peer:
                logger.warning(f'{self._log_prefix}: peer connection {state}')
                await self.disconnect()

    async def _send_offer(self, attempt: NegotiationAttempt) -> None:
        peer = attempt.peer
        try:
            channel = peer.createDataChannel(self._channel_label)
            await self._mailbox.attach(channel)
            offer = await peer.createOffer()
            await peer.setLocalDescription(offer)
            if not self._is_current(attempt):
                return
            description = peer.localDescription
            assert description is not None
            await self._transport.send(Offer(sdp=description.sdp))
        except Exception as e:
            logger.warning(f'{self._log_prefix}: error sending offer: {e}')

    async def _send_candidate(
        self,
        attempt: NegotiationAttempt,
        candidate: RTCIceCandidate,
    ) -> None:
        if not self._is_current(attempt):
            return
        try:
            await self._transport.send(candidate_to_message(candidate))
        except NotConnectedError as e:
            logger.warning(
                f'{self._log_prefix}: error sending candidate: {e}',
            )

    async def _handle_message(self, message: Message) -> None:
        attempt = self._attempt
        if attempt is None or attempt.closed:
            logger.debug(
                f'{self._log_prefix}: dropping {message.type} received '
                'without an active negotiation',
            )
            return

        try:
            if isinstance(message, Offer):
                await self._handle_offer(attempt, message)
            elif isinstance(message, Answer):
                await self._handle_answer(attempt, message)
            elif isinstance(message, Candidate):
                await self._handle_candidate(attempt, message)
        except Exception as e:
            logger.warning(
                f'{self._log_prefix}: error handling {message.type}: {e}',
            )

    async def _handle_offer(
        self,
        attempt: NegotiationAttempt,
        offer: Offer,
    ) -> None:
        if (
            attempt.role is not NegotiationState.ANSWERING
            or attempt.remote_description_set
        ):
            logger.debug(f'{self._log_prefix}: ignoring unexpected offer')
            return

        peer = attempt.peer
        await peer.setRemoteDescription(
            RTCSessionDescription(sdp=offer.sdp, type='offer'),
        )
        if not self._is_current(attempt):
            return
        attempt.remote_description_set = True
        await self._flush_candidates(attempt)
        if not self._is_current(attempt):
            return

        answer = await peer.createAnswer()
        await peer.setLocalDescription(answer)
        if not self._is_current(attempt):
            return
        description = peer.localDescription
        assert description is not None
        await self._transport.send(Answer(sdp=description.sdp))
        logger.info(f'{self._log_prefix}: answered offer')

    async def _handle_answer(
        self,
        attempt: NegotiationAttempt,
        answer: Answer,
    ) -> None:
        peer = attempt.peer
        if (
            attempt.role is not NegotiationState.OFFERING
            or peer.signalingState != 'have-local-offer'
        ):
            logger.debug(f'{self._log_prefix}: ignoring unexpected answer')
            return

        await peer.setRemoteDescription(
            RTCSessionDescription(sdp=answer.sdp, type='answer'),
        )
        if not self._is_current(attempt):
            return
        attempt.remote_description_set = True
        logger.info(f'{self._log_prefix}: received answer')
        await self._flush_candidates(attempt)

    async def _handle_candidate(
        self,
        attempt: NegotiationAttempt,
        message: Candidate,
    ) -> None:
        candidate = candidate_from_message(message)
        if attempt.remote_description_set:
            await attempt.peer.addIceCandidate(candidate)
        else:
            attempt.candidates.append(candidate)
            logger.debug(f'{self._log_prefix}: queued remote candidate')

    async def _flush_candidates(self, attempt: NegotiationAttempt) -> None:
        while attempt.candidates and self._is_current(attempt):
            candidate = attempt.candidates.pop(0)
            try:
                await attempt.peer.addIceCandidate(candidate)
            except Exception as e:
                logger.warning(
                    f'{self._log_prefix}: error adding queued candidate: {e}',
                )
