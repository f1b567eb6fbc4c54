"""Relay server, storage, and client implementations.

The relay is a dumb, poll-only mailbox: peers append signal records to a
named session and read back (and thereby remove) the records written by
other peers in that session.
"""
from __future__ import annotations

from signalbox.relay.client import HTTPRelayClient
from signalbox.relay.client import LocalRelayClient
from signalbox.relay.client import RelayClient
