import os
import re
from enum import Enum
from typing import Optional
from dataclasses import dataclass

from .file_index import is_markup, is_stylesheet

BODY_OPEN_RE = re.compile(r'<body\b[^>]*>', re.IGNORECASE)
BODY_CLOSE_RE = re.compile(r'</body\s*>', re.IGNORECASE)


class ChangeKind(Enum):
    MARKUP = "markup"
    STYLE = "style"


@dataclass(frozen=True)
class ChangeEvent:
    source_path: str
    kind: ChangeKind
    payload: str


def extract_body(html: str) -> str:
    """Content between the first <body> and the last </body>, tags excluded.

    Text without both boundaries is returned unchanged.
    """
    opening = BODY_OPEN_RE.search(html)
    if opening is None:
        return html
    closing = None
    for closing in BODY_CLOSE_RE.finditer(html, opening.end()):
        pass
    if closing is None:
        return html
    return html[opening.end():closing.start()]


class ChangeDetector:
    """Turns buffer edits into change events for markup and stylesheets"""

    LANGUAGE_KINDS = {
        'html': ChangeKind.MARKUP,
        'css': ChangeKind.STYLE,
    }

    def classify(self, path: str, language_id: Optional[str] = None) -> Optional[ChangeKind]:
        if language_id:
            return self.LANGUAGE_KINDS.get(language_id.lower())
        if is_markup(path):
            return ChangeKind.MARKUP
        if is_stylesheet(path):
            return ChangeKind.STYLE
        return None

    def detect(self, path: str, text: str,
               language_id: Optional[str] = None) -> Optional[ChangeEvent]:
        """Build the change event for one edit, None for other document kinds"""
        kind = self.classify(path, language_id)
        if kind is None:
            return None
        payload = extract_body(text) if kind is ChangeKind.MARKUP else text
        return ChangeEvent(source_path=os.path.normpath(os.path.abspath(path)),
                           kind=kind, payload=payload)
