"""Signaling message types exchanged through the relay."""
from __future__ import annotations

import dataclasses
import enum
from typing import Any
from typing import Union

from signalbox.exceptions import MalformedMessageError


class MessageType(enum.Enum):
    """Types of signaling messages supported."""

    offer = 'offer'
    """Session description proposing a connection."""
    answer = 'answer'
    """Session description accepting a proposed connection."""
    candidate = 'candidate'
    """One network path candidate."""


@dataclasses.dataclass(frozen=True)
class Offer:
    """Offer session description.

    Attributes:
        sdp: Session description protocol string of the offerer.
    """

    sdp: str
    type: str = dataclasses.field(
        default=MessageType.offer.value,
        init=False,
    )


@dataclasses.dataclass(frozen=True)
class Answer:
    """Answer session description.

    An answer is authoritative: writing one to the relay removes all
    other pending records of the session.

    Attributes:
        sdp: Session description protocol string of the answerer.
    """

    sdp: str
    type: str = dataclasses.field(
        default=MessageType.answer.value,
        init=False,
    )


@dataclasses.dataclass(frozen=True)
class Candidate:
    """ICE candidate gathered by the sending peer.

    Attributes:
        candidate: Browser-style candidate init dictionary with the keys
            `candidate`, `sdpMid`, and `sdpMLineIndex`.
    """

    candidate: dict[str, Any]
    type: str = dataclasses.field(
        default=MessageType.candidate.value,
        init=False,
    )


Message = Union[Offer, Answer, Candidate]

_MESSAGE_TYPES: dict[str, type[Offer] | type[Answer] | type[Candidate]] = {
    MessageType.offer.value: Offer,
    MessageType.answer.value: Answer,
    MessageType.candidate.value: Candidate,
}


@dataclasses.dataclass(frozen=True)
class SignalRecord:
    """Unit stored in and retrieved from the relay.

    Attributes:
        session_name: Name of the signaling session.
        sender_id: Identifier of the transport that wrote the record.
        message: Raw JSON payload of the record. Normally an object but
            records read from a relay are not validated.
        timestamp: ISO 8601 time the relay received the record.
    """

    session_name: str
    sender_id: str
    message: Any
    timestamp: str

    @property
    def message_type(self) -> str | None:
        """Value of the `type` field of the payload if present."""
        if not isinstance(self.message, dict):
            return None
        value = self.message.get('type')
        return value if isinstance(value, str) else None


def decode_message(data: Any) -> Message:
    """Decode a JSON object into the correct message type.

    Args:
        data: Object parsed from JSON.

    Returns:
        Parsed message.

    Raises:
        MalformedMessageError: If the object is not a known message type or
            is missing fields.
    """
    if not isinstance(data, dict):
        raise MalformedMessageError(
            f'Expected a JSON object but got {type(data).__name__}.',
        )

    data = data.copy()
    try:
        message_type_name = data.pop('type')
    except KeyError as e:
        raise MalformedMessageError(
            'Message does not contain a type key.',
        ) from e

    try:
        message_type = _MESSAGE_TYPES[message_type_name]
    except (KeyError, TypeError) as e:
        raise MalformedMessageError(
            f'The message is of an unknown message type: {message_type_name}.',
        ) from e

    try:
        message = message_type(**data)
    except TypeError as e:
        raise MalformedMessageError(
            f'Failed to convert message to {message_type.__name__}: {e}',
        ) from e

    if isinstance(message, (Offer, Answer)) and not isinstance(
        message.sdp,
        str,
    ):
        raise MalformedMessageError(
            f'{message_type.__name__} sdp must be a string.',
        )
    if isinstance(message, Candidate) and not isinstance(
        message.candidate,
        dict,
    ):
        raise MalformedMessageError('Candidate must be a JSON object.')

    return message


def encode_message(message: Message) -> dict[str, Any]:
    """Encode message as a JSON serializable dictionary.

    Raises:
        MalformedMessageError: If the message is not a known message type.
    """
    if not isinstance(message, (Offer, Answer, Candidate)):
        raise MalformedMessageError(
            f'Message is not an Offer, Answer, or Candidate. '
            f'Got {type(message).__name__}.',
        )
    return dataclasses.asdict(message)
