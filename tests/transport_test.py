from __future__ import annotations

import asyncio
import logging
import sqlite3
from unittest import mock

import pytest

from signalbox.exceptions import NotConnectedError
from signalbox.exceptions import RelayError
from signalbox.messages import Answer
from signalbox.messages import Candidate
from signalbox.messages import encode_message
from signalbox.messages import Message
from signalbox.messages import Offer
from signalbox.messages import SignalRecord
from signalbox.relay.client import LocalRelayClient
from signalbox.relay.storage import MemorySignalLog
from signalbox.transport import log_name
from signalbox.transport import SignalingTransport
from testing.utils import wait_until


def candidate(n: int) -> Candidate:
    return Candidate(candidate={'candidate': f'c{n}', 'sdpMid': '0'})


def test_log_name() -> None:
    assert log_name(None, None) == 'none(none)'
    assert log_name('room1', 'abcdefghijkl') == 'room1(abcdefgh)'


def test_bad_poll_interval(local_relay: LocalRelayClient) -> None:
    with pytest.raises(ValueError, match='Poll interval'):
        SignalingTransport(local_relay, poll_interval=0)


@pytest.mark.asyncio()
async def test_connect_disconnect(local_relay: LocalRelayClient) -> None:
    transport = SignalingTransport(local_relay, poll_interval=0.01)
    events = []
    transport.on('connected', lambda: events.append('connected'))
    transport.on('disconnected', lambda: events.append('disconnected'))

    assert not transport.connected
    assert transport.sender_id is None

    await transport.connect('room1')
    assert transport.connected
    assert transport.polling
    assert transport.session_name == 'room1'
    sender_id = transport.sender_id
    assert sender_id is not None

    # Same session is a no-op
    await transport.connect('room1')
    assert transport.sender_id == sender_id

    # Different session is ignored while connected
    await transport.connect('room2')
    assert transport.session_name == 'room1'

    await transport.disconnect()
    assert not transport.connected
    assert not transport.polling
    await transport.disconnect()

    # Reconnecting creates a new identity
    await transport.connect('room1')
    assert transport.sender_id != sender_id
    await transport.close()

    assert events == ['connected', 'disconnected', 'connected', 'disconnected']


@pytest.mark.asyncio()
async def test_context_manager(local_relay: LocalRelayClient) -> None:
    async with SignalingTransport(local_relay) as transport:
        await transport.connect('room1')
        assert transport.connected
    assert not transport.connected


@pytest.mark.asyncio()
async def test_send_not_connected(local_relay: LocalRelayClient) -> None:
    transport = SignalingTransport(local_relay)
    with pytest.raises(NotConnectedError):
        await transport.send(Offer(sdp='sdp'))


@pytest.mark.asyncio()
async def test_send_and_receive(local_relay: LocalRelayClient) -> None:
    alice = SignalingTransport(local_relay, poll_interval=0.01)
    bob = SignalingTransport(local_relay, poll_interval=0.01)
    received: list[Message] = []
    bob.on('message', received.append)

    await alice.connect('room1')
    await bob.connect('room1')

    await alice.send(Offer(sdp='offer'))
    await alice.send(candidate(1))
    await alice.send(candidate(2))

    await wait_until(lambda: len(received) == 3)
    # Oldest-first so candidate order is preserved
    assert received == [Offer(sdp='offer'), candidate(1), candidate(2)]

    await alice.close()
    await bob.close()


@pytest.mark.asyncio()
async def test_own_messages_not_received(
    local_relay: LocalRelayClient,
    signal_log: MemorySignalLog,
) -> None:
    transport = SignalingTransport(local_relay, poll_interval=100)
    received: list[Message] = []
    transport.on('message', received.append)

    await transport.connect('room1')
    await transport.send(Offer(sdp='offer'))
    await transport.poll_once()

    assert received == []
    assert len(signal_log) == 1
    await transport.close()


@pytest.mark.asyncio()
async def test_poll_drops_offers_older_than_answer(
    local_relay: LocalRelayClient,
    signal_log: MemorySignalLog,
) -> None:
    transport = SignalingTransport(local_relay, poll_interval=100)
    received: list[Message] = []
    transport.on('message', received.append)
    await transport.connect('room1')

    records = [
        ('carol', {'type': 'offer', 'sdp': 'old'}),
        ('dave', {'type': 'answer', 'sdp': 'answer'}),
        ('dave', {'type': 'candidate', 'candidate': {'candidate': 'c1'}}),
    ]
    relay = mock.AsyncMock()
    relay.read.return_value = [
        SignalRecord('room1', sender, message, 'now')
        for sender, message in reversed(records)
    ]
    transport._relay = relay
    await transport.poll_once()

    assert received == [
        Answer(sdp='answer'),
        Candidate(candidate={'candidate': 'c1'}),
    ]
    await transport.disconnect()


@pytest.mark.asyncio()
async def test_poll_skips_malformed_records(
    local_relay: LocalRelayClient,
    signal_log: MemorySignalLog,
    caplog,
) -> None:
    caplog.set_level(logging.WARNING)
    transport = SignalingTransport(local_relay, poll_interval=100)
    received: list[Message] = []
    transport.on('message', received.append)
    await transport.connect('room1')

    await signal_log.append('room1', 'alice', {'type': 'unknown'})
    await signal_log.append('room1', 'alice', {'type': 'offer', 'sdp': 'x'})
    await signal_log.append(
        'room1',
        'alice',
        {'type': 'candidate', 'candidate': 'not an object'},
    )
    await transport.poll_once()

    assert received == [Offer(sdp='x')]
    assert sum('malformed' in r.message for r in caplog.records) == 2
    await transport.close()


@pytest.mark.asyncio()
async def test_poll_stops_when_handler_disconnects(
    local_relay: LocalRelayClient,
    signal_log: MemorySignalLog,
) -> None:
    transport = SignalingTransport(local_relay, poll_interval=100)
    received: list[Message] = []

    async def handler(message: Message) -> None:
        received.append(message)
        await transport.disconnect()

    transport.on('message', handler)
    await transport.connect('room1')
    await signal_log.append('room1', 'alice', {'type': 'offer', 'sdp': '1'})
    await signal_log.append('room1', 'alice', encode_message(candidate(1)))
    await transport.poll_once()

    assert received == [Offer(sdp='1')]


@pytest.mark.asyncio()
async def test_relay_errors_are_logged(
    local_relay: LocalRelayClient,
    caplog,
) -> None:
    caplog.set_level(logging.WARNING)
    transport = SignalingTransport(local_relay, poll_interval=100)
    await transport.connect('room1')

    relay = mock.AsyncMock()
    relay.write.side_effect = RelayError('write failed')
    relay.read.side_effect = RelayError('read failed')
    relay.is_offering.side_effect = RelayError('query failed')
    relay.delete.side_effect = RelayError('delete failed')
    transport._relay = relay

    await transport.send(Offer(sdp='sdp'))
    await transport.poll_once()
    assert not await transport.is_offering()
    await transport.delete_own_messages()

    messages = [r.message for r in caplog.records]
    for expected in ('write', 'read', 'query', 'delete'):
        assert any(f'{expected} failed' in m for m in messages)
    await transport.disconnect()


@pytest.mark.asyncio()
async def test_is_offering(
    local_relay: LocalRelayClient,
    signal_log: MemorySignalLog,
) -> None:
    transport = SignalingTransport(local_relay, poll_interval=100)
    assert not await transport.is_offering()

    await transport.connect('room1')
    assert not await transport.is_offering()
    await signal_log.append('room1', 'alice', {'type': 'offer', 'sdp': 'x'})
    assert await transport.is_offering()
    await transport.close()


@pytest.mark.asyncio()
async def test_delete_own_messages(
    local_relay: LocalRelayClient,
    signal_log: MemorySignalLog,
) -> None:
    transport = SignalingTransport(local_relay, poll_interval=100)
    # No-op when disconnected
    await transport.delete_own_messages()

    await transport.connect('room1')
    await signal_log.append('room1', 'alice', {'type': 'offer', 'sdp': 'x'})
    await transport.send(Offer(sdp='mine'))
    await transport.send(candidate(1))
    assert len(signal_log) == 3

    await transport.delete_own_messages()
    assert len(signal_log) == 1
    assert signal_log.records()[0].sender_id == 'alice'
    await transport.close()


@pytest.mark.asyncio()
async def test_stop_and_start_polling(
    local_relay: LocalRelayClient,
    signal_log: MemorySignalLog,
) -> None:
    transport = SignalingTransport(local_relay, poll_interval=0.01)
    received: list[Message] = []
    transport.on('message', received.append)

    # Polling requires a connection
    transport.start_polling()
    assert not transport.polling

    await transport.connect('room1')
    transport.stop_negotiation()
    assert not transport.polling
    assert transport.connected

    await signal_log.append('room1', 'alice', {'type': 'offer', 'sdp': 'x'})
    await asyncio.sleep(0.05)
    assert received == []

    transport.start_polling()
    transport.start_polling()
    assert transport.polling
    await wait_until(lambda: len(received) == 1)
    await transport.close()


@pytest.mark.asyncio()
async def test_stop_polling_from_handler(
    local_relay: LocalRelayClient,
    signal_log: MemorySignalLog,
) -> None:
    transport = SignalingTransport(local_relay, poll_interval=0.01)
    received: list[Message] = []

    def handler(message: Message) -> None:
        received.append(message)
        transport.stop_negotiation()

    transport.on('message', handler)
    await transport.connect('room1')
    await signal_log.append('room1', 'alice', {'type': 'offer', 'sdp': 'x'})
    await wait_until(lambda: len(received) == 1)
    await wait_until(lambda: not transport.polling)

    await signal_log.append('room1', 'alice', {'type': 'offer', 'sdp': 'y'})
    await asyncio.sleep(0.05)
    assert len(received) == 1
    await transport.close()


@pytest.mark.asyncio()
async def test_poll_keeps_newest_offer(
    local_relay: LocalRelayClient,
    signal_log: MemorySignalLog,
) -> None:
    transport = SignalingTransport(local_relay, poll_interval=100)
    received: list[Message] = []
    transport.on('message', received.append)
    await transport.connect('room1')

    await signal_log.append('room1', 'alice', {'type': 'offer', 'sdp': 'old'})
    await signal_log.append('room1', 'alice', encode_message(candidate(1)))
    await signal_log.append('room1', 'alice', {'type': 'offer', 'sdp': 'new'})
    await signal_log.append('room1', 'alice', encode_message(candidate(2)))
    await transport.poll_once()

    assert received == [candidate(1), Offer(sdp='new'), candidate(2)]
    assert len(signal_log) == 0
    await transport.close()


class _FlakySignalLog(MemorySignalLog):
    def __init__(self) -> None:
        super().__init__()
        self.take_calls = 0

    async def take(
        self,
        session_name: str,
        recipient_id: str,
    ) -> list[SignalRecord]:
        self.take_calls += 1
        if self.take_calls == 1:
            raise sqlite3.OperationalError('database is locked')
        return await super().take(session_name, recipient_id)


@pytest.mark.asyncio()
async def test_polling_continues_after_log_error() -> None:
    log = _FlakySignalLog()
    transport = SignalingTransport(LocalRelayClient(log), poll_interval=0.01)
    received: list[Message] = []
    transport.on('message', received.append)
    await transport.connect('room1')

    await log.append('room1', 'alice', {'type': 'offer', 'sdp': 'x'})
    await wait_until(lambda: received == [Offer(sdp='x')])
    assert log.take_calls >= 2
    assert transport.polling
    await transport.close()
