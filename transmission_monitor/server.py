import asyncio
import contextlib
import logging
from typing import Optional

import aiohttp
from aiohttp import web

from .config import (CORS_ORIGINS, DATABASE_FILE, DEFAULT_QUERY_SECONDS, SERVER_HOST, SERVER_PORT,
                     SNAPSHOT_INTERVAL_MS, TRANSMISSION_URL, WEBSOCKET_HEARTBEAT_SECONDS)
from .database import SnapshotStoreError
from .models import current_millis
from .tasks import start_background_tasks, shutdown_subscribers, cleanup_background_tasks
from .websocket_utils import pump_snapshots

log = logging.getLogger("TransmissionMonitor.Server")


def parse_int(value: Optional[str]) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@web.middleware
async def cors_middleware(request, handler):
    """Lets browser dashboards served from another origin read the API."""
    if request.method == 'OPTIONS':
        response = web.Response(status=204)
    else:
        response = await handler(request)

    response.headers['Access-Control-Allow-Origin'] = CORS_ORIGINS
    response.headers['Access-Control-Allow-Methods'] = 'GET, OPTIONS'
    response.headers['Access-Control-Allow-Headers'] = 'Content-Type'
    return response


async def handle_snapshots(request):
    """
    GET /snapshots?seconds=N           -> {count, seconds, snapshots}
    GET /snapshots?from=T1&to=T2       -> {count, from, to, snapshots}

    The range form is used only when both bounds are integers; otherwise the
    seconds form applies, defaulting to 60 seconds.
    """
    query_service = request.app['query_service']
    from_ms = parse_int(request.query.get('from'))
    to_ms = parse_int(request.query.get('to'))

    try:
        if from_ms is not None and to_ms is not None:
            result = await query_service.get_range(from_ms, to_ms)
        else:
            seconds = parse_int(request.query.get('seconds')) or DEFAULT_QUERY_SECONDS
            result = await query_service.get_last(seconds)
    except SnapshotStoreError:
        return web.json_response({'count': 0, 'snapshots': [], 'error': 'Failed to read snapshots'}, status=500)

    result['snapshots'] = [snapshot.to_dict() for snapshot in result['snapshots']]
    return web.json_response(result)


async def handle_health(request):
    return web.json_response({'status': 'ok', 'timestamp': current_millis()})


async def websocket_handler(request):
    """Live stream: one serialized snapshot per collector tick, server-initiated only."""
    ws = web.WebSocketResponse(heartbeat=WEBSOCKET_HEARTBEAT_SECONDS)
    await ws.prepare(request)

    distributor = request.app['distributor']
    subscription, unsubscribe = distributor.subscribe()
    log.info(f"WebSocket client connected. Total clients: {distributor.subscriber_count}")
    pump = asyncio.create_task(pump_snapshots(ws, subscription))

    try:
        # Incoming messages carry no meaning, reading only detects the disconnect
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.ERROR:
                log.warning(f"WebSocket error: {ws.exception()}")
    finally:
        unsubscribe()
        pump.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await pump
        log.info(f"WebSocket client disconnected. Total clients: {distributor.subscriber_count}")
    return ws


def create_app() -> web.Application:
    app = web.Application(middlewares=[cors_middleware])
    app.router.add_get('/snapshots', handle_snapshots)
    app.router.add_get('/health', handle_health)
    app.router.add_get('/ws', websocket_handler)
    # Dashboards that open the socket on the bare host
    app.router.add_get('/', websocket_handler)
    return app


def run_server(host: str = SERVER_HOST, port: int = SERVER_PORT,
               db_path: str = DATABASE_FILE, transmission_url: str = TRANSMISSION_URL):
    app = create_app()
    app["db_path"] = db_path
    app["transmission_url"] = transmission_url
    app.on_startup.append(start_background_tasks)
    app.on_shutdown.append(shutdown_subscribers)
    app.on_cleanup.append(cleanup_background_tasks)

    log.info(f"Transmission Monitor starting on http://{host}:{port}")
    log.info(f"REST API: http://{host}:{port}/snapshots?seconds=60")
    log.info(f"WebSocket: ws://{host}:{port}/ws or ws://{host}:{port}/ ({SNAPSHOT_INTERVAL_MS}ms interval)")
    web.run_app(app, host=host, port=port)
