import asyncio
import logging
from http.cookies import CookieError, SimpleCookie
from typing import Optional
import websockets
from websockets.asyncio.server import Server, ServerConnection

from .client_registry import ClientRegistry, ClientSession, CLOSE_SIGNAL
from ..interface.content_server import ROOT_COOKIE

logger = logging.getLogger(__name__)


def root_from_cookie(header: Optional[str]) -> Optional[str]:
    """Root named by the cookie set when a page was served, if any"""
    if not header:
        return None
    cookie = SimpleCookie()
    try:
        cookie.load(header)
    except CookieError:
        return None
    morsel = cookie.get(ROOT_COOKIE)
    return morsel.value if morsel else None


class SyncWebSocketServer:
    """Persistent connections carrying the sync protocol"""

    def __init__(self, registry: ClientRegistry, host: str = "127.0.0.1", port: int = 8243):
        self.registry = registry
        self.host = host
        self.port = port
        self.server: Optional[Server] = None

    async def start(self):
        """Start listening"""
        self.server = await websockets.serve(self._handle_client, self.host, self.port)
        logger.info(f"Sync server listening on ws://{self.host}:{self.port}")

    async def stop(self):
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()
            self.server = None

    async def _handle_client(self, websocket: ServerConnection):
        """Pump one connection through the registry"""
        cookie_header = websocket.request.headers.get("Cookie") if websocket.request else None
        session = self.registry.open_session(websocket, root_from_cookie(cookie_header))
        logger.info(f"New connection {session.session_id} from {websocket.remote_address}")
        writer = asyncio.create_task(self._write_outbox(websocket, session))
        try:
            async for message in websocket:
                await self.registry.receive(session, message)
                if session.closed:
                    break
        except websockets.exceptions.ConnectionClosedError as e:
            logger.warning(f"Connection {session.session_id} dropped: {e}")
        except Exception as e:
            logger.error(f"Error handling client {session.session_id}: {e}")
        finally:
            self.registry.remove(session)
            await writer

    async def _write_outbox(self, websocket: ServerConnection, session: ClientSession):
        """Send queued messages in order until the session closes"""
        while True:
            item = await session.outbox.get()
            if item is CLOSE_SIGNAL:
                break
            try:
                await websocket.send(item)
            except websockets.exceptions.ConnectionClosed:
                break
        await websocket.close()
