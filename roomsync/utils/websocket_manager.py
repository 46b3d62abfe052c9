import asyncio
import logging
from typing import Awaitable, Callable, List

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from roomsync.core.exceptions import SubscriptionError

logger = logging.getLogger(__name__)


async def _drain(websocket: WebSocket) -> None:
    # Clients only listen; reading keeps disconnects visible while producers wait.
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


async def stream_until_disconnect(websocket: WebSocket, producers: List[Callable[[], Awaitable[None]]]) -> None:
    """Run the producers alongside a receive loop until either side finishes.

    A producer returning (e.g. the room was deleted) or the client hanging up
    ends the session; the remaining tasks are cancelled so their
    subscriptions get closed by their own ``async with`` blocks.
    """
    tasks = [asyncio.create_task(producer()) for producer in producers]
    tasks.append(asyncio.create_task(_drain(websocket)))
    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)

    for task in done:
        error = task.exception()
        if isinstance(error, SubscriptionError):
            logger.warning("Closing socket after subscription failure: %s", error)
            await close_quietly(websocket, code=1011)
        elif isinstance(error, WebSocketDisconnect):
            continue
        elif error is not None:
            raise error
    await close_quietly(websocket)


async def close_quietly(websocket: WebSocket, code: int = 1000) -> None:
    if websocket.client_state == WebSocketState.CONNECTED and websocket.application_state == WebSocketState.CONNECTED:
        await websocket.close(code=code)
