"""
The local HTTP surface: a WebSocket push channel and a small JSON API.

Clients connect to ``/ws`` and re-fetch ``/api/state`` whenever they receive
``changed``. The server never pushes job data itself.
"""
import logging
from typing import Set

from aiohttp import WSMsgType, web

from .controller import AppController
from .exceptions import AccessDeniedError, JobExistsError, JobNotFoundError, NotFoundError, ValidationError
from .config import available_options

CHANGED_MESSAGE = 'changed'
CONTROLLER_KEY = web.AppKey('controller', AppController)

logger = logging.getLogger(__name__)


class Broadcaster:
    """Tracks connected WebSocket clients and wakes them up."""

    def __init__(self):
        self.clients: Set[web.WebSocketResponse] = set()
        self.logger = logging.getLogger(__name__)

    async def broadcast(self):
        for ws in list(self.clients):
            if ws.closed:
                self.clients.discard(ws)
                continue
            try:
                await ws.send_str(CHANGED_MESSAGE)
            except (ConnectionResetError, RuntimeError) as e:
                self.logger.debug(f"Dropping WebSocket client: {e}")
                self.clients.discard(ws)
        self.logger.debug(f"Broadcast '{CHANGED_MESSAGE}' to {len(self.clients)} client(s)")

    async def close_all(self):
        for ws in list(self.clients):
            await ws.close()
        self.clients.clear()


BROADCASTER_KEY = web.AppKey('broadcaster', Broadcaster)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Maps application errors to JSON responses."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except ValidationError as e:
        return web.json_response({'error': str(e)}, status=400)
    except JobNotFoundError:
        return web.json_response({'error': 'Download job not found'}, status=404)
    except NotFoundError as e:
        return web.json_response({'error': str(e)}, status=404)
    except AccessDeniedError as e:
        return web.json_response({'error': str(e)}, status=403)
    except JobExistsError:
        return web.json_response({'error': 'Download job already exists in queue'}, status=409)
    except Exception:
        logger.exception(f"{request.method} {request.path} failed")
        return web.json_response({'error': 'Something went wrong'}, status=500)


async def _json_body(request: web.Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    broadcaster = request.app[BROADCASTER_KEY]
    ws = web.WebSocketResponse(heartbeat=30)
    await ws.prepare(request)
    broadcaster.clients.add(ws)
    logger.debug(f"WebSocket client connected from {request.remote}")
    try:
        async for msg in ws:
            if msg.type == WSMsgType.ERROR:
                logger.error(f"WebSocket error: {ws.exception()}")
    finally:
        broadcaster.clients.discard(ws)
        logger.debug("WebSocket client disconnected")
    return ws


async def get_state(request: web.Request) -> web.Response:
    return web.json_response(await request.app[CONTROLLER_KEY].get_state())


async def add_job(request: web.Request) -> web.Response:
    body = await _json_body(request)
    job = await request.app[CONTROLLER_KEY].add_job(body.get('url'))
    return web.json_response({'message': 'Download job added to queue successfully', 'job': job.to_dict()},
                             status=201)


async def remove_job(request: web.Request) -> web.Response:
    result = await request.app[CONTROLLER_KEY].remove_job(request.match_info['job_id'])
    return web.json_response(result)


async def retry_job(request: web.Request) -> web.Response:
    job = await request.app[CONTROLLER_KEY].retry_job(request.match_info['job_id'])
    return web.json_response({'job': job.to_dict()})


async def get_notifications(request: web.Request) -> web.Response:
    notifications = await request.app[CONTROLLER_KEY].notifications.get_notifications()
    return web.json_response({'notifications': notifications})


async def dismiss_notification(request: web.Request) -> web.Response:
    removed = await request.app[CONTROLLER_KEY].notifications.dismiss_notification(
        request.match_info['notification_id']
    )
    return web.json_response({'removed': removed})


async def clear_notifications(request: web.Request) -> web.Response:
    count = await request.app[CONTROLLER_KEY].notifications.clear_all_notifications()
    return web.json_response({'count': count})


async def list_downloaded_files(request: web.Request) -> web.Response:
    files = await request.app[CONTROLLER_KEY].downloaded_files.get_downloaded_files()
    return web.json_response({'files': files})


async def get_downloaded_file(request: web.Request) -> web.Response:
    stats = await request.app[CONTROLLER_KEY].downloaded_files.get_file_stats(request.match_info['filename'])
    return web.json_response(stats)


async def delete_downloaded_file(request: web.Request) -> web.Response:
    result = await request.app[CONTROLLER_KEY].delete_downloaded_file(request.match_info['filename'])
    return web.json_response(result)


async def get_settings(request: web.Request) -> web.Response:
    controller = request.app[CONTROLLER_KEY]
    return web.json_response({'settings': controller.config.model_dump(mode='json'), 'options': available_options()})


async def update_settings(request: web.Request) -> web.Response:
    body = await _json_body(request)
    settings = await request.app[CONTROLLER_KEY].save_settings(body)
    return web.json_response({'message': 'Settings saved successfully', 'settings': settings.model_dump(mode='json')})


async def get_versions(request: web.Request) -> web.Response:
    return web.json_response(request.app[CONTROLLER_KEY].get_versions())


def create_app(controller: AppController, manage_lifecycle: bool = True) -> web.Application:
    """
    Builds the aiohttp application around ``controller``.

    Args:
        controller: The application controller.
        manage_lifecycle: Run the controller's startup and shutdown with the app.
    """
    app = web.Application(middlewares=[error_middleware])
    broadcaster = Broadcaster()
    app[CONTROLLER_KEY] = controller
    app[BROADCASTER_KEY] = broadcaster
    controller.set_broadcast(broadcaster.broadcast)

    app.router.add_get('/ws', websocket_handler)
    app.router.add_get('/api/state', get_state)
    app.router.add_post('/api/jobs', add_job)
    app.router.add_delete('/api/jobs/{job_id}', remove_job)
    app.router.add_post('/api/jobs/{job_id}/retry', retry_job)
    app.router.add_get('/api/notifications', get_notifications)
    app.router.add_delete('/api/notifications', clear_notifications)
    app.router.add_delete('/api/notifications/{notification_id}', dismiss_notification)
    app.router.add_get('/api/downloads', list_downloaded_files)
    app.router.add_get('/api/downloads/{filename}', get_downloaded_file)
    app.router.add_delete('/api/downloads/{filename}', delete_downloaded_file)
    app.router.add_get('/api/settings', get_settings)
    app.router.add_put('/api/settings', update_settings)
    app.router.add_get('/api/versions', get_versions)

    if manage_lifecycle:
        async def on_startup(app: web.Application):
            await controller.startup()

        async def on_shutdown(app: web.Application):
            await app[BROADCASTER_KEY].close_all()

        async def on_cleanup(app: web.Application):
            await controller.shutdown()

        app.on_startup.append(on_startup)
        app.on_shutdown.append(on_shutdown)
        app.on_cleanup.append(on_cleanup)

    return app
