import asyncio
import logging
import os
import stat
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse

from ..monitoring.metrics import MetricsTracker
from ..preview.errors import PathEscapeError
from ..preview.file_index import FileIndex, is_markup, is_private
from ..preview.mime_types import content_type_for
from ..preview.path_resolver import PathResolver, Resolution

logger = logging.getLogger(__name__)

STATIC_DIR = str(Path(__file__).resolve().parent.parent / "static")

CLIENT_SCRIPT_ROUTE = "/_livesync.js"
CLIENT_SCRIPT_FILE = "livesync.js"
CLIENT_SCRIPT_TAG = f'<script type="module" src="{CLIENT_SCRIPT_ROUTE}"></script>'
LISTING_ROUTE = "/fl.json"
LISTING_PAGE = "index.html"
ROOT_COOKIE = "livesync_root"
CHUNK_SIZE = 64 * 1024

NO_CACHE_HEADERS = {
    'Cache-Control': 'no-store, no-cache, must-revalidate, proxy-revalidate',
    'Pragma': 'no-cache',
    'Expires': '0',
    'Surrogate-Control': 'no-store',
}

NOT_FOUND_EXCEPTIONS = (FileNotFoundError, IsADirectoryError, NotADirectoryError)


def not_found() -> PlainTextResponse:
    return PlainTextResponse("File not found", status_code=404)


def server_error() -> PlainTextResponse:
    return PlainTextResponse("Server error", status_code=500)


def _read_bytes(path: str) -> bytes:
    with open(path, 'rb') as f:
        return f.read()


class ContentServer:
    """HTTP side of the live server: pages, assets, listing and client script"""

    def __init__(self, file_index: FileIndex,
                 resolver: Optional[PathResolver] = None,
                 sync_port: int = 0,
                 static_dir: str = STATIC_DIR,
                 metrics: Optional[MetricsTracker] = None):
        self.file_index = file_index
        self.static_dir = static_dir
        self.resolver = resolver or PathResolver(file_index, static_dir)
        self.sync_port = sync_port
        self.metrics = metrics or MetricsTracker()
        self.app = FastAPI(
            title="livesync",
            docs_url=None,
            redoc_url=None,
            openapi_url=None
        )
        self._setup_middleware()
        self._register_routes()

    def _setup_middleware(self):
        """Timing and no-cache headers on every response"""
        @self.app.middleware("http")
        async def add_no_cache_headers(request: Request, call_next):
            start_time = self.metrics.time()
            response = await call_next(request)
            process_time = self.metrics.time() - start_time
            response.headers.update(NO_CACHE_HEADERS)
            response.headers["X-Process-Time"] = str(process_time)
            self.metrics.record('request_processing_time', process_time)
            return response

    def _register_routes(self):
        @self.app.get(LISTING_ROUTE)
        async def file_listing():
            return JSONResponse(self.file_index.markup_listing())

        @self.app.get(CLIENT_SCRIPT_ROUTE)
        async def client_script():
            return await self.client_script()

        @self.app.get("/{request_path:path}")
        async def content(request: Request, request_path: str):
            return await self.handle(request)

    async def client_script(self) -> Response:
        """Bundled client with the sync port spliced in front"""
        try:
            script = await asyncio.to_thread(
                _read_bytes, os.path.join(self.static_dir, CLIENT_SCRIPT_FILE)
            )
        except OSError as e:
            logger.error(f"Client script unavailable: {e}")
            return server_error()
        body = f"const ws_port={self.sync_port};\n".encode() + script
        return Response(body, media_type='application/javascript; charset=utf-8')

    async def handle(self, request: Request) -> Response:
        """Resolve a request to a file and serve it"""
        try:
            resolution = self.resolver.resolve(
                request.url.path,
                request.headers.get('referer'),
                request.cookies.get(ROOT_COOKIE)
            )
        except PathEscapeError as e:
            logger.warning(f"Rejected request outside its root: {e.request_path}")
            return not_found()

        if resolution.is_static:
            return await self._send_static(resolution)
        if is_private(resolution.relative_path):
            logger.warning(f"Refused request for version control data: {request.url.path}")
            return not_found()
        if is_markup(resolution.absolute_path):
            return await self._send_markup(resolution)
        return await self._send_file(resolution.absolute_path)

    async def _send_static(self, resolution: Resolution) -> Response:
        if not resolution.relative_path:
            response = await self._send_file(os.path.join(self.static_dir, LISTING_PAGE))
            response.delete_cookie(ROOT_COOKIE, path="/")
            return response
        return await self._send_file(resolution.absolute_path)

    async def _send_markup(self, resolution: Resolution) -> Response:
        """Page bytes with the client script tag appended"""
        try:
            content = await asyncio.to_thread(_read_bytes, resolution.absolute_path)
        except NOT_FOUND_EXCEPTIONS:
            return not_found()
        except OSError as e:
            logger.error(f"Failed to read {resolution.absolute_path}: {e}")
            self.metrics.record_error('content_read_error', str(e))
            return server_error()

        response = Response(
            content + CLIENT_SCRIPT_TAG.encode(),
            media_type=content_type_for(resolution.absolute_path)
        )
        response.set_cookie(ROOT_COOKIE, resolution.root.name, path="/",
                            httponly=True, samesite="lax")
        return response

    async def _send_file(self, path: str) -> Response:
        """Stream a file byte-for-byte"""
        try:
            handle = await asyncio.to_thread(open, path, 'rb')
        except NOT_FOUND_EXCEPTIONS:
            return not_found()
        except OSError as e:
            logger.error(f"Failed to open {path}: {e}")
            self.metrics.record_error('content_read_error', str(e))
            return server_error()

        file_stat = os.fstat(handle.fileno())
        if not stat.S_ISREG(file_stat.st_mode):
            handle.close()
            return not_found()

        return StreamingResponse(
            self._stream_file(handle, path),
            media_type=content_type_for(path),
            headers={'Content-Length': str(file_stat.st_size)}
        )

    async def _stream_file(self, handle, path: str):
        # headers are already out once this runs, a failure can only abort
        try:
            while True:
                chunk = await asyncio.to_thread(handle.read, CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        except OSError as e:
            logger.error(f"Stream error for {path}: {e}")
            self.metrics.record_error('content_stream_error', str(e))
            raise
        finally:
            handle.close()
