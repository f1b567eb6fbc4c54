"""Keyed values and events shared over an open data channel."""
from __future__ import annotations

import json
import logging
from typing import Any

from signalbox.events import EventEmitter
from signalbox.peer import DataChannel

logger = logging.getLogger(__name__)

SET_VALUE = 'SET_VALUE'
EVENT = 'EVENT'


class SharedMailbox:
    """Mailbox of values and events shared with the remote peer.

    Values set locally are stored and forwarded to the peer when a data
    channel is attached. Sending on a channel that is not open reports the
    channel error instead. Values and events received from the peer
    update the local mailbox. Without a channel the mailbox behaves like a
    local key/value store.

    Args:
        events: Emitter on which `datachannelstatechange` and `sharedevent`
            notifications are published.
    """

    def __init__(self, events: EventEmitter | None = None) -> None:
        self._events = EventEmitter() if events is None else events
        self._channel: DataChannel | None = None
        self._values: dict[str, Any] = {}
        self._last_event: dict[str, Any] | None = None

    @property
    def channel(self) -> DataChannel | None:
        """Attached data channel."""
        return self._channel

    @property
    def channel_state(self) -> str:
        """Ready state of the attached channel or `'n/a'`."""
        return 'n/a' if self._channel is None else self._channel.readyState

    @property
    def last_event_type(self) -> str:
        """Type of the last event or `''`."""
        return '' if self._last_event is None else self._last_event['type']

    @property
    def last_event_data(self) -> Any:
        """Data of the last event or `''`."""
        return '' if self._last_event is None else self._last_event['data']

    async def attach(self, channel: DataChannel) -> None:
        """Attach a data channel and listen for messages from the peer.

        Any previously attached channel is closed. If the channel is already
        open, `datachannelstatechange` is emitted immediately.
        """
        if self._channel is not None and self._channel is not channel:
            self.detach()
        self._channel = channel

        async def _on_open() -> None:
            logger.info(f'Data channel opened: {channel.label}')
            await self._events.emit('datachannelstatechange', 'open')

        async def _on_close() -> None:
            logger.info(f'Data channel closed: {channel.label}')
            await self._events.emit('datachannelstatechange', 'closed')

        async def _on_message(data: bytes | str) -> None:
            if self._channel is channel:
                await self.handle_message(data)

        channel.on('open', _on_open)
        channel.on('close', _on_close)
        channel.on('message', _on_message)

        if channel.readyState == 'open':
            await self._events.emit('datachannelstatechange', 'open')

    def detach(self) -> None:
        """Close and forget the attached data channel."""
        if self._channel is not None:
            self._channel.close()
            self._channel = None

    def value_of(self, key: str) -> Any:
        """Get the value of a key or `''` if not set."""
        return self._values.get(key, '')

    def set_value(self, key: str, value: Any) -> str:
        """Set a value and share it with the peer.

        Returns:
            Human readable status of the operation. The error message if
            the attached channel fails to send, for example because it is
            not open yet.
        """
        self._values[key] = value
        if self._channel is None:
            return f'local {key} = {value}'
        try:
            self._send(SET_VALUE, {'key': key, 'value': value})
        except Exception as e:
            logger.warning(f'Error sending {SET_VALUE}: {e}')
            return str(e)
        logger.debug(f'send {SET_VALUE}: {key} = {value}')
        return f'send {key} = {value}'

    async def send_event(self, event_type: str, data: Any) -> str:
        """Publish an event locally and to the peer.

        Returns:
            Human readable status of the operation.
        """
        await self._events.emit('sharedevent', event_type, data)
        if self._channel is None:
            return f'local event: {event_type} data: {data}'
        try:
            self._send(EVENT, {'type': event_type, 'data': data})
        except Exception as e:
            logger.warning(f'Error sending {EVENT}: {e}')
            return str(e)
        return f'send event: {event_type} data: {data}'

    def _send(self, message_type: str, content: dict[str, Any]) -> None:
        assert self._channel is not None
        message = {'type': message_type, 'content': content}
        self._channel.send(json.dumps(message))

    async def handle_message(self, data: bytes | str) -> None:
        """Apply a message received from the peer."""
        try:
            message = json.loads(data)
            message_type = message['type']
            content = message['content']
        except (
            json.JSONDecodeError,
            UnicodeDecodeError,
            KeyError,
            TypeError,
        ):
            logger.warning(f'Received malformed message: {data!r}')
            return

        if message_type == SET_VALUE:
            try:
                self._values[content['key']] = content['value']
            except (KeyError, TypeError):
                logger.warning(f'Received malformed {SET_VALUE}: {content!r}')
        elif message_type == EVENT:
            if not isinstance(content, dict) or 'type' not in content:
                logger.warning(f'Received malformed {EVENT}: {content!r}')
                return
            self._last_event = {
                'type': content['type'],
                'data': content.get('data', ''),
            }
            await self._events.emit(
                'sharedevent',
                self._last_event['type'],
                self._last_event['data'],
            )
        else:
            logger.warning(f'Unknown message type: {message_type}')
