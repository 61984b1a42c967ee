import asyncio
import logging
import socket
from typing import Iterable, List, Optional

import uvicorn

from .change_detector import ChangeDetector
from .client_registry import ClientRegistry
from .errors import NoFreePortError
from .file_index import FileIndex, WorkspaceRoot, MARKUP_EXTENSIONS, STYLE_EXTENSIONS
from .file_watcher import FileWatcher
from .path_resolver import PathResolver
from .websocket_server import SyncWebSocketServer
from ..core.config_manager import LiveSyncConfig
from ..interface.content_server import ContentServer, STATIC_DIR
from ..monitoring.metrics import MetricsTracker

logger = logging.getLogger(__name__)


def find_free_port(host: str, start: int, end: int) -> int:
    """First port in [start, end] that can be bound on host"""
    for port in range(start, end + 1):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((host, port))
            except OSError:
                continue
            return port
    raise NoFreePortError(start, end)


class LiveServer:
    """Wires the index, registry, HTTP and sync servers and the file watcher together.

    Editor integrations report edits through :meth:`buffer_edited` and
    filesystem changes through :meth:`files_changed`; with ``watch`` enabled
    the bundled watcher feeds both from disk.
    """

    def __init__(self, roots: Iterable[WorkspaceRoot],
                 config: Optional[LiveSyncConfig] = None,
                 watch: bool = True):
        self.config = config or LiveSyncConfig()
        self.metrics = MetricsTracker()
        self.file_index = FileIndex(roots, self.config.rescan_quiet_interval, self.metrics)
        self.resolver = PathResolver(self.file_index, STATIC_DIR)
        self.detector = ChangeDetector()
        self.registry = ClientRegistry(
            self.file_index, self.resolver,
            handshake_timeout=self.config.handshake_timeout,
            metrics=self.metrics
        )
        self.content_server = ContentServer(self.file_index, self.resolver, metrics=self.metrics)
        self.watcher = FileWatcher() if watch else None
        self.http_port: Optional[int] = None
        self.sync_port: Optional[int] = None
        self.sync_server: Optional[SyncWebSocketServer] = None
        self._http_server: Optional[uvicorn.Server] = None
        self._tasks: List[asyncio.Task] = []

    @property
    def address(self) -> str:
        return f"http://{self.config.host}:{self.http_port}"

    async def start(self):
        """Index the roots, pick ports and start serving"""
        host = self.config.host
        await self.file_index.rescan()

        preferred = self.config.preferred_port
        self.http_port = find_free_port(host, preferred, preferred + self.config.port_span)
        self.sync_port = find_free_port(
            host, self.http_port + 1, self.http_port + 1 + self.config.port_span
        )
        self.content_server.sync_port = self.sync_port

        self.sync_server = SyncWebSocketServer(self.registry, host, self.sync_port)
        await self.sync_server.start()

        uvicorn_config = uvicorn.Config(
            self.content_server.app,
            host=host,
            port=self.http_port,
            log_config=None,
            lifespan="off"
        )
        self._http_server = uvicorn.Server(uvicorn_config)
        http_task = asyncio.create_task(self._http_server.serve())
        self._tasks.append(http_task)
        while not self._http_server.started:
            if http_task.done():
                await self.stop()
                raise RuntimeError(f"HTTP server failed to start on port {self.http_port}")
            await asyncio.sleep(0.05)

        if self.watcher is not None:
            self._start_watcher()
        logger.info(f"Serving {len(self.file_index.roots)} root(s) at {self.address}")

    def _start_watcher(self):
        for root in self.file_index.roots:
            self.watcher.add_path(str(root.root_path))
        self.watcher.on_change(self.files_changed)
        for extension in MARKUP_EXTENSIONS | STYLE_EXTENSIONS:
            self.watcher.add_handler(extension, self._file_saved)
        self._tasks.append(asyncio.create_task(self.watcher.start()))

    async def _file_saved(self, path: str, content: str):
        self.buffer_edited(path, content)

    def buffer_edited(self, path: str, text: str, language_id: Optional[str] = None) -> int:
        """BufferEdited: push an edit to the sessions watching the file"""
        event = self.detector.detect(path, text, language_id)
        if event is None:
            return 0
        return self.registry.publish(event)

    def files_changed(self, paths: Iterable[str] = ()):
        """FilesChanged: schedule a debounced rescan"""
        self.file_index.request_rescan()

    async def serve_forever(self):
        await self.start()
        try:
            await self._tasks[0]
        finally:
            await self.stop()

    async def stop(self):
        """Stop watching and serving; closes every session"""
        if self.watcher is not None:
            self.watcher.stop()
        if self._http_server is not None:
            self._http_server.should_exit = True
        for session in list(self.registry.sessions.values()):
            self.registry.remove(session)
        if self.sync_server is not None:
            await self.sync_server.stop()
        await self.file_index.stop()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []
