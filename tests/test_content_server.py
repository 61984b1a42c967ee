import asyncio
import pytest
from fastapi.testclient import TestClient

from livesync.interface import content_server
from livesync.interface.content_server import (
    ContentServer, CLIENT_SCRIPT_TAG, ROOT_COOKIE, NO_CACHE_HEADERS
)
from livesync.preview.file_index import FileIndex
from conftest import INDEX_HTML, STYLE_CSS, PNG_BYTES, write

PAGE_URL = "http://testserver/app/index.html"


@pytest.fixture
def server(app_root) -> ContentServer:
    index = FileIndex([app_root], quiet_interval=0.01)
    asyncio.run(index.rescan())
    return ContentServer(index, sync_port=8243)


@pytest.fixture
def client(server) -> TestClient:
    return TestClient(server.app)


class TestContentServer:
    def test_no_cache_headers(self, client):
        response = client.get("/fl.json")

        for name, value in NO_CACHE_HEADERS.items():
            assert response.headers[name] == value
        assert float(response.headers["X-Process-Time"]) >= 0

    def test_listing(self, client):
        response = client.get("/fl.json")

        assert response.status_code == 200
        assert response.json() == [
            {'name': 'app', 'files': ['about.htm', 'index.html', 'pages/page.html']}
        ]

    def test_client_script_carries_sync_port(self, client):
        response = client.get("/_livesync.js")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/javascript")
        assert response.text.startswith("const ws_port=8243;\n")
        assert "newLinks" in response.text

    def test_markup_gets_one_script_tag(self, client):
        response = client.get("/app/index.html")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        assert response.content == INDEX_HTML.encode() + CLIENT_SCRIPT_TAG.encode()
        assert response.text.count(CLIENT_SCRIPT_TAG) == 1
        assert response.cookies.get(ROOT_COOKIE) == "app"

    def test_binary_file_is_byte_identical(self, client):
        response = client.get("/app/img/logo.png")

        assert response.status_code == 200
        assert response.content == PNG_BYTES
        assert response.headers["content-type"] == "image/png"
        assert response.headers["content-length"] == str(len(PNG_BYTES))

    def test_asset_resolved_through_referer(self, client):
        response = client.get("/style.css", headers={"referer": PAGE_URL})

        assert response.status_code == 200
        assert response.text == STYLE_CSS
        assert response.headers["content-type"].startswith("text/css")

    def test_nested_asset_with_root_prefix(self, client):
        response = client.get("/app/css/theme.css", headers={"referer": PAGE_URL})

        assert response.status_code == 200
        assert "font-weight" in response.text

    def test_cookie_resolves_bare_page(self, client):
        client.get("/app/index.html")

        response = client.get("/about.htm")

        assert response.status_code == 200
        assert "<p>About</p>" in response.text

    def test_listing_page_clears_cookie(self, client):
        client.get("/app/index.html")

        response = client.get("/")

        assert response.status_code == 200
        assert "<flist>" in response.text
        assert ROOT_COOKIE in response.headers.get("set-cookie", "")
        assert client.get("/about.htm").status_code == 404

    def test_static_asset(self, client):
        response = client.get("/list.js")

        assert response.status_code == 200
        assert "fl.json" in response.text

    @pytest.mark.parametrize("path", [
        "/app/missing.css",
        "/app/css",
        "/nothing-here.js",
        "/app/%2E%2E/%2E%2E/secret.txt",
    ])
    def test_not_found(self, client, path):
        response = client.get(path)

        assert response.status_code == 404
        assert response.text == "File not found"

    def test_unreadable_page_is_server_error(self, client, server, monkeypatch):
        def refuse(path):
            raise PermissionError(13, "Permission denied", path)

        monkeypatch.setattr(content_server, "_read_bytes", refuse)

        response = client.get("/app/index.html")

        assert response.status_code == 500
        assert response.text == "Server error"
        assert server.metrics.counters["content_read_error.count"] == 1

    def test_unopenable_file_is_server_error(self, client, monkeypatch):
        def refuse(path, mode='r'):
            raise PermissionError(13, "Permission denied", path)

        monkeypatch.setattr(content_server, "open", refuse, raising=False)

        response = client.get("/app/style.css")

        assert response.status_code == 500

    def test_files_outside_index_are_still_served(self, client, workspace):
        write(workspace['root'] / "late.css", "a {}")

        response = client.get("/app/late.css")

        assert response.status_code == 200
        assert response.text == "a {}"

    def test_version_control_data_is_refused(self, client, workspace):
        write(workspace['root'] / ".git" / "config", "[remote \"origin\"]\n")

        response = client.get("/app/.git/config")

        assert response.status_code == 404
        assert response.text == "File not found"
