"""Peer connection capability used by the negotiation engine.

The engine drives any object with the surface of aiortc's
[`RTCPeerConnection`][aiortc.RTCPeerConnection]. Session descriptions and ICE
candidates are aiortc's dataclasses; this module converts candidates between
aiortc and the browser-style dictionaries carried in
[`Candidate`][signalbox.messages.Candidate] messages.
"""
from __future__ import annotations

import warnings
from typing import Any
from typing import Callable
from typing import Protocol
from typing import Sequence

from aiortc import RTCConfiguration
from aiortc import RTCIceCandidate
from aiortc import RTCIceServer
from aiortc import RTCPeerConnection
from aiortc import RTCSessionDescription
from aiortc.sdp import candidate_from_sdp
from aiortc.sdp import candidate_to_sdp
from cryptography.utils import CryptographyDeprecationWarning

from signalbox.exceptions import MalformedMessageError
from signalbox.messages import Candidate

warnings.simplefilter('ignore', CryptographyDeprecationWarning)


class DataChannel(Protocol):
    """Data channel surface used by the mailbox."""

    label: str

    @property
    def readyState(self) -> str:  # noqa: N802
        """One of `connecting`, `open`, `closing`, or `closed`."""
        ...

    def on(self, event: str, f: Callable[..., Any] | None = None) -> Any:
        """Register a handler for `open`, `close`, or `message`."""
        ...

    def send(self, data: bytes | str) -> None:
        """Send data to the peer."""
        ...

    def close(self) -> None:
        """Close the channel."""
        ...


class PeerConnectionCapability(Protocol):
    """Peer connection surface required by the negotiation engine.

    Events registered with `on()`:

    * `connectionstatechange`: `connectionState` changed. States include
      `new`, `connecting`, `connected`, `disconnected`, `failed`, and
      `closed`.
    * `icecandidate`: a local candidate was gathered (called with the
      [`RTCIceCandidate`][aiortc.RTCIceCandidate]). aiortc gathers all
      candidates during `setLocalDescription()` and embeds them in the
      description instead of emitting this event.
    * `datachannel`: the remote peer opened a data channel.
    """

    @property
    def connectionState(self) -> str:  # noqa: N802
        """Current connection state."""
        ...

    @property
    def signalingState(self) -> str:  # noqa: N802
        """Current signaling state, e.g. `stable` or `have-local-offer`."""
        ...

    @property
    def localDescription(self) -> RTCSessionDescription | None:  # noqa: N802
        """Local session description, including gathered candidates."""
        ...

    @property
    def remoteDescription(self) -> RTCSessionDescription | None:  # noqa: N802
        """Remote session description if set."""
        ...

    async def createOffer(self) -> RTCSessionDescription:  # noqa: N802
        """Create a local offer."""
        ...

    async def createAnswer(self) -> RTCSessionDescription:  # noqa: N802
        """Create a local answer to the remote offer."""
        ...

    async def setLocalDescription(  # noqa: N802
        self,
        sessionDescription: RTCSessionDescription,  # noqa: N803
    ) -> None:
        """Set the local description."""
        ...

    async def setRemoteDescription(  # noqa: N802
        self,
        sessionDescription: RTCSessionDescription,  # noqa: N803
    ) -> None:
        """Set the remote description."""
        ...

    async def addIceCandidate(  # noqa: N802
        self,
        candidate: RTCIceCandidate,
    ) -> None:
        """Add a remote candidate."""
        ...

    def createDataChannel(  # noqa: N802
        self,
        label: str,
        **kwargs: Any,
    ) -> Any:
        """Create a data channel."""
        ...

    def on(self, event: str, f: Callable[..., Any] | None = None) -> Any:
        """Register an event handler."""
        ...

    async def close(self) -> None:
        """Terminate the peer connection."""
        ...


PeerFactory = Callable[[], PeerConnectionCapability]


def create_peer_connection(
    ice_servers: Sequence[str] = (),
) -> RTCPeerConnection:
    """Create an aiortc peer connection.

    Args:
        ice_servers: STUN/TURN server URLs.
    """
    configuration = RTCConfiguration(
        iceServers=[RTCIceServer(urls=url) for url in ice_servers],
    )
    return RTCPeerConnection(configuration=configuration)


def candidate_from_message(message: Candidate) -> RTCIceCandidate:
    """Convert a candidate message into an aiortc candidate.

    Raises:
        MalformedMessageError: If the candidate string cannot be parsed.
    """
    init = message.candidate
    sdp = init.get('candidate')
    if not isinstance(sdp, str):
        raise MalformedMessageError('Candidate is missing the candidate line.')
    if sdp.startswith('candidate:'):
        sdp = sdp.split(':', 1)[1]

    try:
        candidate = candidate_from_sdp(sdp)
    except (AssertionError, IndexError, ValueError) as e:
        raise MalformedMessageError(
            f'Failed to parse candidate line: {sdp!r}',
        ) from e

    candidate.sdpMid = init.get('sdpMid')
    candidate.sdpMLineIndex = init.get('sdpMLineIndex')
    if candidate.sdpMid is None and candidate.sdpMLineIndex is None:
        raise MalformedMessageError(
            'Candidate requires either sdpMid or sdpMLineIndex.',
        )
    return candidate


def candidate_to_message(candidate: RTCIceCandidate) -> Candidate:
    """Convert an aiortc candidate into a candidate message."""
    return Candidate(
        candidate={
            'candidate': f'candidate:{candidate_to_sdp(candidate)}',
            'sdpMid': candidate.sdpMid,
            'sdpMLineIndex': candidate.sdpMLineIndex,
        },
    )
