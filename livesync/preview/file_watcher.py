import asyncio
import hashlib
import logging
from pathlib import Path
from typing import Set, Callable, Awaitable, Dict, List, Optional
from watchfiles import awatch, Change

logger = logging.getLogger(__name__)

class FileWatcher:
    """Adapts filesystem notifications into FilesChanged and BufferEdited calls.

    Every batch of changes is reported to the change callback (the index
    rescans on it); added or modified files whose content really changed are
    handed, with their text, to the handler registered for their extension.
    """

    def __init__(self):
        self.watched_paths: Set[Path] = set()
        self._stop_event = asyncio.Event()
        self._file_hashes: Dict[str, str] = {}
        self._handlers: Dict[str, Callable[[str, str], Awaitable[None]]] = {}
        self._on_change: Optional[Callable[[List[str]], None]] = None

    def add_path(self, path: str):
        """Add a path to watch"""
        self.watched_paths.add(Path(path))

    def add_handler(self, extension: str, handler: Callable[[str, str], Awaitable[None]]):
        """Add a handler for specific file extensions"""
        self._handlers[extension.lower()] = handler

    def on_change(self, callback: Callable[[List[str]], None]):
        """Callback receiving every batch of changed paths"""
        self._on_change = callback

    async def start(self):
        """Start watching for file changes"""
        if not self.watched_paths:
            return
        self._stop_event.clear()
        try:
            async for changes in awatch(*self.watched_paths, stop_event=self._stop_event):
                await self._handle_changes(changes)
        except Exception as e:
            logger.error(f"Error in file watcher: {e}")

    def stop(self):
        """Stop watching for changes"""
        self._stop_event.set()

    async def _handle_changes(self, changes):
        paths = sorted({file_path for _, file_path in changes})
        if self._on_change is not None:
            self._on_change(paths)

        for change_type, file_path in sorted(changes, key=lambda c: c[1]):
            if change_type is Change.deleted:
                self._file_hashes.pop(file_path, None)
            elif change_type in {Change.added, Change.modified}:
                await self._handle_file_change(file_path)

    async def _handle_file_change(self, file_path: str):
        """Handle file changes"""
        path = Path(file_path)
        handler = self._handlers.get(path.suffix.lower())
        if handler is None or path.name.startswith('.'):
            return

        try:
            content = await self._read_file(file_path)
        except OSError as e:
            logger.warning(f"Could not read changed file {file_path}: {e}")
            return

        new_hash = hashlib.sha256(content.encode()).hexdigest()
        if new_hash == self._file_hashes.get(file_path):
            return
        self._file_hashes[file_path] = new_hash

        try:
            await handler(file_path, content)
        except Exception as e:
            logger.error(f"Error handling file {file_path}: {e}")

    @staticmethod
    async def _read_file(file_path: str) -> str:
        """Read file contents without blocking the loop"""
        return await asyncio.to_thread(Path(file_path).read_text, encoding='utf-8', errors='replace')
