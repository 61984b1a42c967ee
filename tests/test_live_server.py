import asyncio
import json
import os
import socket
import pytest
import websockets
from websockets.asyncio.client import connect

from livesync.core.config_manager import LiveSyncConfig
from livesync.interface.content_server import CLIENT_SCRIPT_TAG
from livesync.preview.errors import NoFreePortError
from livesync.preview.file_index import ScanState
from livesync.preview.live_server import LiveServer, find_free_port
from livesync.preview.websocket_server import root_from_cookie
from conftest import STYLE_CSS, write

pytestmark = pytest.mark.integration


@pytest.fixture
async def live_server(app_root):
    config = LiveSyncConfig(
        preferred_port=28242,
        rescan_quiet_interval=0.05,
        handshake_timeout=0.3
    )
    server = LiveServer([app_root], config, watch=False)
    await server.start()
    yield server
    await server.stop()


def sync_url(server: LiveServer) -> str:
    return f"ws://127.0.0.1:{server.sync_port}"


async def register(ws, links):
    await ws.send(json.dumps({'command': 'newLinks', 'links': links}))
    # frames are handled in order, so the PONG means the links are in
    await ws.send("PING")
    assert await asyncio.wait_for(ws.recv(), 2) == "PONG"


class TestFindFreePort:
    def test_skips_bound_port(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as taken:
            taken.bind(("127.0.0.1", 0))
            port = taken.getsockname()[1]

            with pytest.raises(NoFreePortError) as exc_info:
                find_free_port("127.0.0.1", port, port)

            assert exc_info.value.start == port
            assert find_free_port("127.0.0.1", port, port + 20) > port


class TestRootFromCookie:
    def test_reads_root_cookie(self):
        assert root_from_cookie("livesync_root=app; theme=dark") == 'app'

    @pytest.mark.parametrize("header", [None, "", "theme=dark", "livesync_root"])
    def test_missing_root_cookie(self, header):
        assert root_from_cookie(header) is None


class TestLiveServer:
    @pytest.mark.asyncio
    async def test_ports_are_distinct(self, live_server):
        assert live_server.http_port >= 28242
        assert live_server.sync_port > live_server.http_port
        assert live_server.content_server.sync_port == live_server.sync_port

    @pytest.mark.asyncio
    async def test_serves_page_with_client_script(self, live_server, async_client):
        async with async_client.get(f"{live_server.address}/app/index.html") as response:
            assert response.status == 200
            body = await response.text()

        assert body.endswith(CLIENT_SCRIPT_TAG)

    @pytest.mark.asyncio
    async def test_client_script_points_at_sync_port(self, live_server, async_client):
        async with async_client.get(f"{live_server.address}/_livesync.js") as response:
            body = await response.text()

        assert body.startswith(f"const ws_port={live_server.sync_port};\n")

    @pytest.mark.asyncio
    async def test_markup_edit_reaches_registered_client(self, live_server, workspace):
        async with connect(sync_url(live_server)) as ws:
            await register(ws, {'/app/index.html': '/app/index.html'})

            delivered = live_server.buffer_edited(
                str(workspace['index']), '<html><body><p>Edited</p></body></html>'
            )
            message = json.loads(await asyncio.wait_for(ws.recv(), 2))

        assert delivered == 1
        assert message == {'file': '/app/index.html', 'data': '<p>Edited</p>'}

    @pytest.mark.asyncio
    async def test_style_edit_uses_registered_identifier(self, live_server, workspace):
        async with connect(sync_url(live_server)) as ws:
            await register(ws, {'/app/style.css': 'style.css'})

            live_server.buffer_edited(str(workspace['style']), "h1 { color: blue; }")
            message = json.loads(await asyncio.wait_for(ws.recv(), 2))

        assert message == {'file': 'style.css', 'data': "h1 { color: blue; }"}

    @pytest.mark.asyncio
    async def test_cookie_root_reaches_bare_page(self, live_server, workspace):
        headers = {'Cookie': 'livesync_root=app'}
        async with connect(sync_url(live_server), additional_headers=headers) as ws:
            await register(ws, {'/about.htm': '/about.htm'})

            delivered = live_server.buffer_edited(
                str(workspace['about']), '<html><body><p>New</p></body></html>'
            )
            message = json.loads(await asyncio.wait_for(ws.recv(), 2))

        assert delivered == 1
        assert message == {'file': '/about.htm', 'data': '<p>New</p>'}

    @pytest.mark.asyncio
    async def test_legacy_handshake_then_style_push(self, live_server, workspace):
        async with connect(sync_url(live_server)) as ws:
            await ws.send("/app/index.html")
            token = await asyncio.wait_for(ws.recv(), 2)

            live_server.buffer_edited(str(workspace['style']), "body { color: red; }")
            message = json.loads(await asyncio.wait_for(ws.recv(), 2))

        assert len(token) == 8
        assert message == {'file': '/app/style.css', 'data': "body { color: red; }"}

    @pytest.mark.asyncio
    async def test_unregistered_client_receives_nothing(self, live_server, workspace):
        async with connect(sync_url(live_server)) as watcher, connect(sync_url(live_server)) as other:
            await register(watcher, {'/app/index.html': '/app/index.html'})
            await register(other, {'/app/about.htm': '/app/about.htm'})

            delivered = live_server.buffer_edited(str(workspace['index']), '<p>x</p>')
            await asyncio.wait_for(watcher.recv(), 2)

            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(other.recv(), 0.2)

        assert delivered == 1

    @pytest.mark.asyncio
    async def test_unknown_handshake_is_closed(self, live_server):
        async with connect(sync_url(live_server)) as ws:
            await ws.send("/app/missing.html")

            with pytest.raises(websockets.exceptions.ConnectionClosed):
                await asyncio.wait_for(ws.recv(), 2)

        assert live_server.registry.sessions == {}

    @pytest.mark.asyncio
    async def test_silent_client_is_closed(self, live_server):
        async with connect(sync_url(live_server)) as ws:
            with pytest.raises(websockets.exceptions.ConnectionClosed):
                await asyncio.wait_for(ws.recv(), 2)

    @pytest.mark.asyncio
    async def test_get_content(self, live_server):
        async with connect(sync_url(live_server)) as ws:
            await register(ws, {'/app/index.html': '/app/index.html', '/app/style.css': '/app/style.css'})
            await ws.send(json.dumps({'command': 'getContent', 'url': '/app/style.css'}))
            message = json.loads(await asyncio.wait_for(ws.recv(), 2))

        assert message == {'file': '/app/style.css', 'data': STYLE_CSS}

    @pytest.mark.asyncio
    async def test_other_documents_are_not_pushed(self, live_server, workspace):
        assert live_server.buffer_edited(str(workspace['script']), "console.log(1)") == 0

    @pytest.mark.asyncio
    async def test_files_changed_rescans(self, live_server, workspace):
        late = write(workspace['root'] / "late.html", "<p>late</p>")

        live_server.files_changed([str(late)])
        while live_server.file_index.state is not ScanState.IDLE:
            await asyncio.sleep(0.01)

        assert live_server.file_index.contains(os.path.normpath(str(late)))

    @pytest.mark.asyncio
    async def test_stop_closes_sessions(self, live_server):
        async with connect(sync_url(live_server)) as ws:
            await register(ws, {'/app/index.html': '/app/index.html'})
            assert len(live_server.registry.sessions) == 1

            await live_server.stop()

            with pytest.raises(websockets.exceptions.ConnectionClosed):
                await asyncio.wait_for(ws.recv(), 2)
        assert live_server.registry.sessions == {}
