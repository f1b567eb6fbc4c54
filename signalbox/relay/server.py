"""Relay server implementing the signal record wire contract.

The relay is a mailbox for signaling messages. Peers write offers, answers,
and candidates for a named session and poll for the records written by
other peers in the same session. The relay does not interpret messages
beyond the rules of [`signalbox.relay.storage`][signalbox.relay.storage].

Routes (all on `/`):

* `POST /` with JSON `{sessionName, senderId, message}` writes a record.
* `GET /?sessionName=&recipientId=` reads and removes records.
* `GET /?action=isOffering&sessionName=&recipientId=` checks for offers.
* `GET /?action=delete&sessionName=&fromId=` removes a sender's records.
"""
from __future__ import annotations

import contextlib
import json
import logging
from typing import AsyncIterator
from typing import Optional

from fastapi import APIRouter
from fastapi import FastAPI
from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.responses import PlainTextResponse
from fastapi.responses import Response

from signalbox.relay.storage import MemorySignalLog
from signalbox.relay.storage import SignalLog

logger = logging.getLogger(__name__)

router = APIRouter()


def create_app(log: SignalLog | None = None) -> FastAPI:
    """Create the relay app and register routes.

    Args:
        log: Storage for pending records. Defaults to a new
            [`MemorySignalLog`][signalbox.relay.storage.MemorySignalLog].
            The log is closed when the app shuts down.

    Returns:
        FastAPI app.
    """
    signal_log = MemorySignalLog() if log is None else log

    @contextlib.asynccontextmanager
    async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await signal_log.close()

    app = FastAPI(lifespan=_lifespan)
    app.state.signal_log = signal_log

    # Browser peers poll the relay directly
    app.add_middleware(
        CORSMiddleware,
        allow_origins=['*'],
        allow_methods=['GET', 'POST'],
        allow_headers=['*'],
    )
    app.include_router(router)

    return app


def _bad_request(message: str) -> Response:
    return PlainTextResponse(message, status_code=400)


@router.post('/')
async def write_handler(request: Request) -> Response:
    """Route handler for `POST /`.

    The body is parsed as JSON regardless of the content type because
    browser clients often post with `text/plain` to avoid CORS preflights.
    The legacy `fromId` field is accepted in place of `senderId`.

    Responses:

    * `Status Code 200`: JSON `{"status": "success"}`.
    * `Status Code 400`: If the body is not JSON, is missing the
      `sessionName`, `senderId`, or `message` fields, or the message is not
      an object with a `type`.
    """
    body = await request.body()
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _bad_request('request body is not valid JSON')

    if not isinstance(data, dict):
        return _bad_request('request body must be a JSON object')

    session_name = data.get('sessionName')
    sender_id = data.get('senderId', data.get('fromId'))
    message = data.get('message')
    if not isinstance(session_name, str) or not session_name:
        return _bad_request('request missing sessionName')
    if not isinstance(sender_id, str) or not sender_id:
        return _bad_request('request missing senderId')
    if not isinstance(message, dict) or 'type' not in message:
        return _bad_request('request message must be an object with a type')

    log: SignalLog = request.app.state.signal_log
    await log.append(session_name, sender_id, message)
    logger.debug(
        f'Stored {message["type"]} record from {sender_id} in session '
        f'{session_name}',
    )
    return JSONResponse({'status': 'success'})


@router.get('/')
async def read_handler(
    request: Request,
    sessionName: Optional[str] = None,  # noqa: N803, UP007
    recipientId: Optional[str] = None,  # noqa: N803, UP007
    fromId: Optional[str] = None,  # noqa: N803, UP007
    action: Optional[str] = None,  # noqa: UP007
) -> Response:
    """Route handler for `GET /`.

    The `action` query parameter selects the operation. Without an action,
    the records of the session not written by `recipientId` are returned and
    removed.

    Responses:

    * `Status Code 200`: JSON array of `{from, message, timestamp}` records
      (read), `{"isOffering": bool}` (`action=isOffering`), or
      `{"status": "success", "deleted": int}` (`action=delete`).
    * `Status Code 400`: If a required query parameter is missing or the
      action is unknown.
    """
    if sessionName is None:
        return _bad_request('request missing sessionName')

    log: SignalLog = request.app.state.signal_log

    if action is None:
        if recipientId is None:
            return _bad_request('request missing recipientId')
        records = await log.take(sessionName, recipientId)
        if len(records) > 0:
            logger.debug(
                f'Delivered {len(records)} record(s) in session '
                f'{sessionName} to {recipientId}',
            )
        return JSONResponse(
            [
                {
                    'from': record.sender_id,
                    'message': record.message,
                    'timestamp': record.timestamp,
                }
                for record in records
            ],
        )
    elif action == 'isOffering':
        if recipientId is None:
            return _bad_request('request missing recipientId')
        offering = await log.is_offering(sessionName, recipientId)
        return JSONResponse({'isOffering': offering})
    elif action == 'delete':
        if fromId is None:
            return _bad_request('request missing fromId')
        deleted = await log.delete(sessionName, fromId)
        logger.debug(
            f'Deleted {deleted} record(s) from {fromId} in session '
            f'{sessionName}',
        )
        return JSONResponse({'status': 'success', 'deleted': deleted})
    else:
        return _bad_request(f'unknown action: {action}')
