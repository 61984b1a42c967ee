import asyncio
import logging
import os
import posixpath
import re
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Iterable, Tuple, Any
from dataclasses import dataclass, field

from ..monitoring.metrics import MetricsTracker

logger = logging.getLogger(__name__)

MARKUP_EXTENSIONS = {'.html', '.htm'}
STYLE_EXTENSIONS = {'.css'}
SCRIPT_EXTENSIONS = {'.js', '.mjs', '.map'}
DATA_EXTENSIONS = {'.json', '.xml', '.txt', '.csv', '.webmanifest'}
MEDIA_EXTENSIONS = {
    '.ico', '.png', '.jpg', '.jpeg', '.gif', '.svg', '.webp', '.avif', '.bmp',
    '.mp4', '.webm', '.ogg', '.mp3', '.wav', '.m4a'
}
FONT_EXTENSIONS = {'.woff', '.woff2', '.ttf', '.otf', '.eot'}

INDEXED_EXTENSIONS = (
    MARKUP_EXTENSIONS | STYLE_EXTENSIONS | SCRIPT_EXTENSIONS
    | DATA_EXTENSIONS | MEDIA_EXTENSIONS | FONT_EXTENSIONS
)

EXCLUDED_DIRECTORIES = {
    '.git', '.hg', '.svn', 'node_modules', '__pycache__',
    '.venv', 'venv', '.idea', '.vscode', '.cache'
}

# never served, even when requested directly
PRIVATE_DIRECTORIES = {'.git', '.hg', '.svn'}

# <link ... href="*.css"> in markup files
CSS_LINK_RE = re.compile(
    r'<link\b[^>]*\bhref\s*=\s*["\']([^"\']+\.css(?:\?[^"\']*)?)["\'][^>]*>',
    re.IGNORECASE
)


def is_markup(path: str) -> bool:
    return os.path.splitext(path)[1].lower() in MARKUP_EXTENSIONS


def is_stylesheet(path: str) -> bool:
    return os.path.splitext(path)[1].lower() in STYLE_EXTENSIONS


def is_private(relative_name: str) -> bool:
    return any(part.lower() in PRIVATE_DIRECTORIES for part in relative_name.split('/'))


@dataclass(frozen=True)
class WorkspaceRoot:
    name: str
    root_path: Path

    @classmethod
    def from_path(cls, path: str, name: Optional[str] = None) -> 'WorkspaceRoot':
        root_path = Path(os.path.abspath(path))
        return cls(name=name or root_path.name, root_path=root_path)

    def join(self, relative_name: str) -> str:
        """Absolute filesystem path of a root-relative '/' separated name"""
        parts = [p for p in relative_name.split('/') if p]
        return os.path.normpath(os.path.join(str(self.root_path), *parts))


@dataclass(frozen=True)
class FileRecord:
    relative_name: str
    absolute_path: str


@dataclass
class IndexSnapshot:
    records: Dict[str, List[FileRecord]] = field(default_factory=dict)
    # absolute path -> (root name, record)
    by_path: Dict[str, Tuple[str, FileRecord]] = field(default_factory=dict)
    # markup absolute path -> root-relative stylesheet names it links
    linked_styles: Dict[str, List[str]] = field(default_factory=dict)


class ScanState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    PENDING = "running+pending"


def _sort_key(record: FileRecord):
    return ('/' in record.relative_name, record.relative_name)


def _linked_stylesheets(markup_relative: str, html: str) -> List[str]:
    """Root-relative names of the stylesheets a markup file links"""
    base_dir = posixpath.dirname(markup_relative)
    names = []
    for match in CSS_LINK_RE.finditer(html):
        href = match.group(1).split('?', 1)[0]
        if '://' in href or href.startswith('//'):
            continue
        if href.startswith('/'):
            name = posixpath.normpath(href.lstrip('/'))
        else:
            name = posixpath.normpath(posixpath.join(base_dir, href))
        if name.startswith('..') or name in names:
            continue
        names.append(name)
    return names


def scan_root(root: WorkspaceRoot) -> Tuple[List[FileRecord], Dict[str, List[str]]]:
    """Walk one root and collect its indexed files (blocking)"""
    records = []
    for dirpath, dirnames, filenames in os.walk(root.root_path):
        dirnames[:] = [d for d in dirnames if d not in EXCLUDED_DIRECTORIES]
        for filename in filenames:
            if os.path.splitext(filename)[1].lower() not in INDEXED_EXTENSIONS:
                continue
            absolute_path = os.path.join(dirpath, filename)
            relative_name = os.path.relpath(absolute_path, root.root_path).replace(os.sep, '/')
            records.append(FileRecord(relative_name, os.path.normpath(absolute_path)))
    records.sort(key=_sort_key)

    linked = {}
    for record in records:
        if not is_markup(record.relative_name):
            continue
        try:
            with open(record.absolute_path, encoding='utf-8', errors='replace') as f:
                html = f.read()
        except OSError:
            continue
        linked[record.absolute_path] = _linked_stylesheets(record.relative_name, html)
    return records, linked


class FileIndex:
    """Listing of the servable files of every workspace root.

    Rescans are debounced: a request made while a scan runs schedules one
    trailing scan after ``quiet_interval`` seconds, further requests are
    absorbed until that trailing scan starts. The listing is swapped in one
    assignment once a scan has finished.
    """

    def __init__(self, roots: Iterable[WorkspaceRoot] = (),
                 quiet_interval: float = 0.5,
                 metrics: Optional[MetricsTracker] = None):
        self.quiet_interval = quiet_interval
        self.metrics = metrics or MetricsTracker()
        self.scan_count = 0
        self._roots: Dict[str, WorkspaceRoot] = {}
        self._snapshot = IndexSnapshot()
        self._state = ScanState.IDLE
        self._task: Optional[asyncio.Task] = None
        self.set_roots(roots)

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def roots(self) -> List[WorkspaceRoot]:
        return list(self._roots.values())

    def set_roots(self, roots: Iterable[WorkspaceRoot]):
        """Replace the workspace roots; names must be unique"""
        by_name: Dict[str, WorkspaceRoot] = {}
        for root in roots:
            if root.name in by_name:
                raise ValueError(f"Duplicate workspace root name: {root.name}")
            by_name[root.name] = root
        self._roots = by_name

    def root(self, name: str) -> Optional[WorkspaceRoot]:
        return self._roots.get(name)

    def request_rescan(self) -> asyncio.Task:
        """Ask for a rescan, coalescing with one already in flight"""
        if self._state is ScanState.IDLE:
            self._state = ScanState.RUNNING
            self._task = asyncio.create_task(self._run())
        elif self._state is ScanState.RUNNING:
            self._state = ScanState.PENDING
            logger.debug("Rescan requested while scanning, trailing rescan scheduled")
        return self._task

    async def rescan(self):
        """Request a rescan and wait until the listing is current"""
        await asyncio.shield(self.request_rescan())

    async def stop(self):
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _run(self):
        try:
            while True:
                await self._scan_once()
                # a request may have arrived while the scan awaited I/O
                if self._state is not ScanState.PENDING:
                    break
                await asyncio.sleep(self.quiet_interval)
                self._state = ScanState.RUNNING
        finally:
            self._state = ScanState.IDLE

    async def _scan_once(self):
        start_time = self.metrics.time()
        roots = self.roots
        snapshot = IndexSnapshot()
        for root in roots:
            try:
                records, linked = await asyncio.to_thread(scan_root, root)
            except OSError as e:
                logger.error(f"Failed to scan workspace root {root.root_path}: {e}")
                self.metrics.record_error('file_index_scan_error', str(e))
                records, linked = [], {}
            snapshot.records[root.name] = records
            snapshot.linked_styles.update(linked)
            for record in records:
                snapshot.by_path[record.absolute_path] = (root.name, record)

        self._snapshot = snapshot
        self.scan_count += 1
        elapsed = self.metrics.time() - start_time
        self.metrics.record('file_index_scan_time', elapsed)
        logger.info(f"Indexed {len(snapshot.by_path)} files in {len(roots)} root(s) ({elapsed:.3f}s)")

    def contains(self, absolute_path: str) -> bool:
        return os.path.normpath(absolute_path) in self._snapshot.by_path

    def lookup(self, absolute_path: str) -> Optional[Tuple[WorkspaceRoot, FileRecord]]:
        entry = self._snapshot.by_path.get(os.path.normpath(absolute_path))
        if entry is None:
            return None
        root = self._roots.get(entry[0])
        return (root, entry[1]) if root else None

    def files(self, root_name: str) -> List[FileRecord]:
        return list(self._snapshot.records.get(root_name, []))

    def linked_stylesheets(self, absolute_path: str) -> List[str]:
        return list(self._snapshot.linked_styles.get(os.path.normpath(absolute_path), []))

    def markup_listing(self) -> List[Dict[str, Any]]:
        """Markup files per root, for the listing endpoint"""
        snapshot = self._snapshot
        return [
            {
                'name': root.name,
                'files': [
                    r.relative_name for r in snapshot.records.get(root.name, [])
                    if is_markup(r.relative_name)
                ]
            }
            for root in self.roots
        ]
