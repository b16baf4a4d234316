"""Websocket transport for the price feed."""

from __future__ import annotations

import asyncio

import structlog
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from priceoracle.feed.broadcaster import Broadcaster, QueueSubscriber

logger = structlog.get_logger()


async def pump(channel: QueueSubscriber, connection: ServerConnection) -> None:
    async for message in channel:
        await connection.send(message)


async def handle_connection(broadcaster: Broadcaster, connection: ServerConnection, queue_size: int = 16) -> None:
    """Stream snapshots to one socket until either side goes away."""
    channel = QueueSubscriber(maxsize=queue_size)
    unsubscribe = broadcaster.subscribe(channel)
    writer = asyncio.create_task(pump(channel, connection))
    closed = asyncio.create_task(connection.wait_closed())
    try:
        done, _ = await asyncio.wait({writer, closed}, return_when=asyncio.FIRST_COMPLETED)
        if writer in done and writer.exception() is not None:
            exc = writer.exception()
            if not isinstance(exc, ConnectionClosed):
                logger.warning("Price feed writer failed", error=str(exc))
    finally:
        unsubscribe()
        channel.close()
        for task in (writer, closed):
            task.cancel()


async def start_feed_server(broadcaster: Broadcaster, host: str, port: int, queue_size: int = 16) -> Server:
    async def handler(connection: ServerConnection) -> None:
        await handle_connection(broadcaster, connection, queue_size)

    server = await serve(handler, host, port)
    logger.info("Price feed listening", host=host, port=port)
    return server
