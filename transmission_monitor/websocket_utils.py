import logging

import aiohttp

from .distributor import Subscription

log = logging.getLogger("TransmissionMonitor.WebsocketUtils")


async def safe_send_json(ws, payload):
    """
    Safely send JSON data over WebSocket, handling connection errors gracefully.

    Returns:
        bool: True if sent successfully, False if connection was closed/closing
    """
    try:
        if ws.closed:
            return False
        await ws.send_json(payload)
        return True
    except (ConnectionResetError,
            aiohttp.client_exceptions.ClientConnectionResetError,
            RuntimeError) as e:
        # Client disconnected or connection is closing - this is normal
        log.debug(f"Could not send snapshot to client (connection closing): {type(e).__name__}")
        return False
    except Exception as e:
        log.warning(f"Unexpected error sending WebSocket message: {e}", exc_info=True)
        return False


async def pump_snapshots(ws, subscription: Subscription):
    """
    Forwards every snapshot of the subscription to one websocket client until
    either side goes away. A failed send ends the subscription and closes the socket.
    """
    try:
        async for snapshot in subscription:
            if not await safe_send_json(ws, snapshot.to_dict()):
                break
    finally:
        subscription.close()
        if not ws.closed:
            await ws.close()
