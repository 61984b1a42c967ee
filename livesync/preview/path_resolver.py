import os
from typing import Optional, List, Tuple
from urllib.parse import urlsplit, unquote
from dataclasses import dataclass

from .errors import PathEscapeError
from .file_index import FileIndex, WorkspaceRoot, is_markup


@dataclass(frozen=True)
class Resolution:
    """Where a request points: a workspace file, or the bundled UI when root is None"""
    root: Optional[WorkspaceRoot]
    relative_path: str
    absolute_path: Optional[str] = None

    @property
    def is_static(self) -> bool:
        return self.root is None


def url_segments(url: Optional[str]) -> List[str]:
    """Decoded, non-empty path segments of a URL or bare path"""
    if not url:
        return []
    path = urlsplit(url).path
    return [unquote(segment) for segment in path.split('/') if segment]


def join_within(base: str, relative_path: str) -> str:
    """Join a '/' separated path to base using native separators, refusing escapes"""
    base = os.path.normpath(base)
    parts = [p for p in relative_path.split('/') if p]
    candidate = os.path.normpath(os.path.join(base, *parts))
    if os.path.commonpath([base, candidate]) != base:
        raise PathEscapeError(relative_path)
    return candidate


class PathResolver:
    def __init__(self, file_index: FileIndex, static_dir: str):
        self.file_index = file_index
        self.static_dir = static_dir

    def resolve(self, request_url: str,
                referer_url: Optional[str] = None,
                cookie_value: Optional[str] = None) -> Resolution:
        """Map a request to a workspace file or to the bundled UI.

        The referer's root wins for asset requests so that relative
        references from a served page land in that page's root. Requests for
        markup ignore the referer since they are page navigations.
        """
        segments = url_segments(request_url)
        if segments and is_markup(segments[-1]):
            referer_url = None

        root = None
        referer_segments = url_segments(referer_url)
        if referer_segments:
            root = self.file_index.root(referer_segments[0])
        if root is None and segments:
            root = self.file_index.root(segments[0])
        if root is None and cookie_value:
            root = self.file_index.root(unquote(cookie_value))

        if root is None:
            relative_path = '/'.join(segments)
            return Resolution(None, relative_path, join_within(self.static_dir, relative_path))

        if segments and segments[0] == root.name:
            segments = segments[1:]
        relative_path = '/'.join(segments)
        return Resolution(root, relative_path, join_within(str(root.root_path), relative_path))

    def resolve_link(self, url: str,
                     default_root: Optional[str] = None) -> Optional[Tuple[WorkspaceRoot, str]]:
        """Resolve a registered link URL to (root, absolute path), None when unknown.

        ``default_root`` plays the referer's part: when it names a root, that
        root is authoritative and the link's leading segment is stripped only
        when it equals the root name, so a link resolves to the file HTTP
        served for it.
        """
        segments = url_segments(url)
        root = self.file_index.root(default_root) if default_root else None
        if root is None and segments:
            root = self.file_index.root(segments[0])
        if root is None:
            return None
        if segments and segments[0] == root.name:
            segments = segments[1:]
        if not segments:
            return None
        try:
            return root, join_within(str(root.root_path), '/'.join(segments))
        except PathEscapeError:
            return None
