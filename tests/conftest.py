import asyncio
import pytest
from pathlib import Path
from typing import AsyncGenerator, Dict

from livesync.preview.file_index import FileIndex, WorkspaceRoot
from livesync.preview.path_resolver import PathResolver
from livesync.preview.client_registry import ClientRegistry, ClientSession, CLOSE_SIGNAL
from livesync.interface.content_server import STATIC_DIR

INDEX_HTML = """<!DOCTYPE html>
<html>
<head>
  <link rel="stylesheet" href="style.css">
  <link rel="stylesheet" href="/css/theme.css?v=2">
</head>
<body class="page">
  <h1 id="title">Hello</h1>
  <p>First</p>
</body>
</html>
"""

STYLE_CSS = "body { color: black; }\n"

# 1x1 transparent PNG
PNG_BYTES = bytes.fromhex(
    "89504e470d0a1a0a0000000d4948445200000001000000010806000000"
    "1f15c4890000000d49444154789c6360000002000154a24f5d00000000"
    "49454e44ae426082"
)


def write(path: Path, content) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_text(content, encoding='utf-8')
    return path


# Temporary workspace with one root called "app"
@pytest.fixture
def workspace(tmp_path: Path) -> Dict[str, Path]:
    app = tmp_path / "app"
    files = {
        'root': app,
        'index': write(app / "index.html", INDEX_HTML),
        'style': write(app / "style.css", STYLE_CSS),
        'theme': write(app / "css" / "theme.css", "h1 { font-weight: 300; }\n"),
        'about': write(app / "about.htm", "<html><body><p>About</p></body></html>"),
        'page': write(app / "pages" / "page.html", "<body><p>Nested</p></body>"),
        'script': write(app / "app.js", "console.log('hi');\n"),
        'image': write(app / "img" / "logo.png", PNG_BYTES),
        'ignored': write(app / "node_modules" / "lib" / "index.html", "<p>lib</p>"),
        'unlisted': write(app / "notes.md", "# notes\n"),
    }
    return files


@pytest.fixture
def app_root(workspace) -> WorkspaceRoot:
    return WorkspaceRoot.from_path(str(workspace['root']))


@pytest.fixture
async def file_index(app_root) -> FileIndex:
    index = FileIndex([app_root], quiet_interval=0.05)
    await index.rescan()
    return index


@pytest.fixture
def resolver(file_index) -> PathResolver:
    return PathResolver(file_index, STATIC_DIR)


@pytest.fixture
def registry(file_index, resolver) -> ClientRegistry:
    return ClientRegistry(file_index, resolver, handshake_timeout=0.2)


def drain(session: ClientSession) -> list:
    """Everything queued on a session outbox"""
    items = []
    while not session.outbox.empty():
        items.append(session.outbox.get_nowait())
    return items


def is_close_signal(item) -> bool:
    return item is CLOSE_SIGNAL


# Async client session
@pytest.fixture
async def async_client() -> AsyncGenerator:
    from aiohttp import ClientSession
    async with ClientSession() as session:
        yield session
