import asyncio
from typing import Any, AsyncGenerator, Callable, Dict, TypeVar

from fastapi import WebSocket

T = TypeVar("T")


async def stream_until_disconnect(
    websocket: WebSocket,
    snapshots: AsyncGenerator[T, None],
    render: Callable[[T], Dict[str, Any]],
) -> None:
    """Send every snapshot to the client until either side stops.

    The socket is read alongside the snapshot loop so a client disconnect is
    noticed even when no further changes arrive. The subscription is closed on
    the way out, which unregisters it from the change feed.
    """

    async def pump() -> None:
        async for item in snapshots:
            await websocket.send_json(render(item))

    async def wait_for_disconnect() -> None:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

    pump_task = asyncio.create_task(pump())
    disconnect_task = asyncio.create_task(wait_for_disconnect())
    try:
        done, _ = await asyncio.wait({pump_task, disconnect_task}, return_when=asyncio.FIRST_COMPLETED)
        if pump_task in done:
            # Surfaces send failures, including WebSocketDisconnect
            pump_task.result()
    finally:
        for task in (pump_task, disconnect_task):
            task.cancel()
        await asyncio.gather(pump_task, disconnect_task, return_exceptions=True)
        await snapshots.aclose()
