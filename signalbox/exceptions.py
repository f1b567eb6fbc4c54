"""Exception types raised during signaling and negotiation."""
from __future__ import annotations


class SignalingError(Exception):
    """Base exception type for signaling errors."""

    pass


class NotConnectedError(SignalingError):
    """Exception raised if the signaling transport is not connected."""

    pass


class RelayError(SignalingError):
    """Exception raised when a request to the relay fails."""

    pass


class MalformedMessageError(SignalingError):
    """Exception raised when a signaling message cannot be decoded."""

    pass


class NegotiationError(SignalingError):
    """Base exception type for failed negotiation attempts."""

    pass


class NegotiationTimeoutError(NegotiationError):
    """Negotiation attempt did not complete within the timeout."""

    pass


class OfferingTimeoutError(NegotiationTimeoutError):
    """No answer completed the connection before the offering timeout."""

    pass


class AnsweringTimeoutError(NegotiationTimeoutError):
    """No offer completed the connection before the answering timeout."""

    pass


class NegotiationAbortedError(NegotiationError):
    """Negotiation attempt was abandoned before it completed."""

    pass


class PeerConnectionError(NegotiationError):
    """The peer connection failed while negotiating."""

    pass
