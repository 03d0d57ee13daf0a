import signal
import asyncio
import logging
from typing import Optional
from starlette.routing import Route
from starlette.requests import Request
from starlette.applications import Starlette
from starlette.responses import JSONResponse
from hypercorn.config import Config
from hypercorn.asyncio import serve as hypercorn_serve

from botfleet import settings
from botfleet.local.supervisor import ProcessManager

log = logging.getLogger(__name__)


async def _read_json(request: Request) -> Optional[dict]:
    try:
        payload = await request.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def create_app(manager: ProcessManager, shutdown_event: Optional[asyncio.Event] = None) -> Starlette:
    """
    Builds the control API around a ProcessManager.

    :param manager: The supervisor driven by this endpoint.
    :param shutdown_event: Set by POST /shutdown so the hosting server can exit.
    """

    async def list_workers(request: Request) -> JSONResponse:
        return JSONResponse({"workers": manager.status()})

    async def send_message(request: Request) -> JSONResponse:
        payload = await _read_json(request)
        if payload is None or not isinstance(payload.get("message"), str):
            return JSONResponse({"error": "Bad Request", "detail": "'message' is required."}, status_code=400)
        identity = request.path_params["identity"]
        delivered = await asyncio.get_running_loop().run_in_executor(None, manager.send, identity, payload["message"])
        return JSONResponse({"delivered": delivered})

    async def broadcast_transcription(request: Request) -> JSONResponse:
        payload = await _read_json(request)
        if payload is None or not isinstance(payload.get("transcription"), str):
            return JSONResponse({"error": "Bad Request", "detail": "'transcription' is required."}, status_code=400)
        delivered = await asyncio.get_running_loop().run_in_executor(
            None, manager.broadcast_transcription, payload["transcription"]
        )
        return JSONResponse({"delivered": delivered})

    async def request_shutdown(request: Request) -> JSONResponse:
        log.info("Shutdown requested through the control API.")
        if shutdown_event is not None:
            shutdown_event.set()
        return JSONResponse({"status": "shutting down"}, status_code=202)

    routes = [
        Route("/workers", list_workers, methods=["GET"]),
        Route("/workers/{identity}/message", send_message, methods=["POST"]),
        Route("/transcription", broadcast_transcription, methods=["POST"]),
        Route("/shutdown", request_shutdown, methods=["POST"]),
    ]
    return Starlette(routes=routes)


async def serve(manager: ProcessManager, shutdown_event: asyncio.Event,
                host: Optional[str] = None, port: Optional[int] = None) -> None:
    """
    Serves the control API until shutdown is requested, then stops the fleet.

    SIGINT and SIGTERM trigger the same graceful path as POST /shutdown.
    """
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops do not support signal handlers.
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(shutdown_event.set))

    config = Config()
    config.bind = [f"{host or settings.CONTROL_API_HOST}:{port or settings.CONTROL_API_PORT}"]
    config.accesslog = None
    app = create_app(manager, shutdown_event)

    log.info(f"Server running at http://{config.bind[0]}")
    try:
        await hypercorn_serve(app, config, shutdown_trigger=shutdown_event.wait)
    finally:
        log.info("HTTP server closed")
        await loop.run_in_executor(None, manager.shutdown_all)
