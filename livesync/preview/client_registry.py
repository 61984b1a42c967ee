import asyncio
import logging
import secrets
from enum import Enum
from typing import Any, Dict, Optional
from dataclasses import dataclass, field

from .change_detector import ChangeEvent
from .file_index import FileIndex
from .path_resolver import PathResolver
from .sync_protocol import (
    SyncMessage, Handshake, HandshakeAck, Ping, Pong, RegisterLinks,
    FetchContent, Push, parse_message, encode_message
)
from ..monitoring.metrics import MetricsTracker

logger = logging.getLogger(__name__)

# Put on a session outbox to tell its writer to close the connection
CLOSE_SIGNAL = object()


class SessionState(Enum):
    AWAITING_HANDSHAKE = "awaiting_handshake"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass(eq=False)
class ClientSession:
    session_id: str
    connection: Any = None
    state: SessionState = SessionState.AWAITING_HANDSHAKE
    # root that root-less link paths are resolved against
    root_name: Optional[str] = None
    # absolute file path -> identifier the browser used for it
    subscriptions: Dict[str, str] = field(default_factory=dict)
    outbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    handshake_timer: Optional[asyncio.TimerHandle] = None

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    def send(self, message: SyncMessage):
        """Queue an outbound message; dropped once closed"""
        if self.closed:
            return
        self.outbox.put_nowait(encode_message(message))

    def cancel_handshake_timer(self):
        if self.handshake_timer is not None:
            self.handshake_timer.cancel()
            self.handshake_timer = None

    def close(self):
        if self.closed:
            return
        self.state = SessionState.CLOSED
        self.cancel_handshake_timer()
        self.outbox.put_nowait(CLOSE_SIGNAL)


def _read_text(path: str) -> str:
    with open(path, encoding='utf-8', errors='replace') as f:
        return f.read()


class ClientRegistry:
    """Connected browsers and the files each of them watches.

    Each connection is driven through AWAITING_HANDSHAKE -> ACTIVE -> CLOSED
    by the frames passed to :meth:`receive`. Outbound messages are queued on
    the session's outbox, so the state machine never touches a socket.
    Only active sessions are kept in :attr:`sessions`.
    """

    def __init__(self, file_index: FileIndex, resolver: PathResolver,
                 handshake_timeout: float = 1.0,
                 metrics: Optional[MetricsTracker] = None):
        self.file_index = file_index
        self.resolver = resolver
        self.handshake_timeout = handshake_timeout
        self.metrics = metrics or MetricsTracker()
        self.sessions: Dict[str, ClientSession] = {}

    def open_session(self, connection: Any = None,
                     root_hint: Optional[str] = None) -> ClientSession:
        """Create the session for a new connection and arm its handshake timer.

        ``root_hint`` is the root the browser last loaded a page from, if known.
        """
        token = secrets.token_hex(4)
        while token in self.sessions:
            token = secrets.token_hex(4)
        session = ClientSession(session_id=token, connection=connection, root_name=root_hint)
        loop = asyncio.get_running_loop()
        session.handshake_timer = loop.call_later(
            self.handshake_timeout, self._handshake_expired, session
        )
        return session

    def remove(self, session: ClientSession):
        """Forget a session and close it"""
        if self.sessions.get(session.session_id) is session:
            del self.sessions[session.session_id]
            logger.info(f"Session {session.session_id} closed ({len(self.sessions)} active)")
        session.close()

    async def receive(self, session: ClientSession, raw):
        """Advance a session's state machine with one inbound frame"""
        if session.closed:
            return
        message = parse_message(raw)
        if message is None:
            return

        if isinstance(message, Ping):
            session.send(Pong())
        elif isinstance(message, Pong):
            return
        elif isinstance(message, RegisterLinks):
            self.register_links(session, message.links)
        elif session.state is SessionState.AWAITING_HANDSHAKE:
            if isinstance(message, Handshake):
                self._legacy_handshake(session, message.path)
        elif isinstance(message, FetchContent):
            await self.fetch_content(session, message.url)

    def _handshake_expired(self, session: ClientSession):
        session.handshake_timer = None
        if session.state is SessionState.AWAITING_HANDSHAKE:
            logger.info(f"Session {session.session_id} sent no handshake in time")
            self.remove(session)

    def _activate(self, session: ClientSession):
        session.cancel_handshake_timer()
        session.state = SessionState.ACTIVE
        self.sessions[session.session_id] = session
        logger.info(f"Session {session.session_id} active ({len(self.sessions)} active)")

    def _legacy_handshake(self, session: ClientSession, path: str):
        link = self.resolver.resolve_link(path)
        if link is None or not self.file_index.contains(link[1]):
            logger.info(f"Rejected handshake for unwatched file: {path!r}")
            self.remove(session)
            return

        root, absolute_path = link
        session.root_name = root.name
        session.subscriptions[absolute_path] = path
        for css_name in self.file_index.linked_stylesheets(absolute_path):
            session.subscriptions[root.join(css_name)] = f"/{root.name}/{css_name}"
        self._activate(session)
        session.send(HandshakeAck(token=session.session_id))

    def register_links(self, session: ClientSession, links: Dict[str, str]) -> int:
        """Merge declared links into a session's subscriptions.

        Links resolve against the session's root the way assets resolve
        against the referer, so root-absolute stylesheet paths and pages
        reached without a root prefix still map to their files.
        """
        if session.root_name is None or not session.subscriptions:
            # the first registration names the page, which wins over the cookie hint
            for url in links:
                link = self.resolver.resolve_link(url)
                if link is not None:
                    session.root_name = link[0].name
                    break

        registered = 0
        for url, identifier in links.items():
            link = self.resolver.resolve_link(url, session.root_name)
            if link is None:
                logger.debug(f"Skipping link outside any workspace root: {url}")
                continue
            session.subscriptions[link[1]] = identifier
            registered += 1
        if session.state is SessionState.AWAITING_HANDSHAKE:
            self._activate(session)
        return registered

    def find_path(self, identifier: str) -> Optional[str]:
        """Absolute path some active session registered under identifier"""
        for session in self.sessions.values():
            for absolute_path, registered in session.subscriptions.items():
                if registered == identifier:
                    return absolute_path
        return None

    async def fetch_content(self, session: ClientSession, url: str):
        """Send the current content of a registered file to one session"""
        absolute_path = self.find_path(url)
        if absolute_path is None:
            logger.debug(f"No registered file for {url}")
            return
        try:
            text = await asyncio.to_thread(_read_text, absolute_path)
        except OSError as e:
            logger.warning(f"Could not read {absolute_path}: {e}")
            self.metrics.record_error('fetch_content_error', str(e))
            return
        session.send(Push(url=url, data=text))

    def publish(self, event: ChangeEvent) -> int:
        """Push a change to every session watching its file"""
        delivered = 0
        for session in list(self.sessions.values()):
            identifier = session.subscriptions.get(event.source_path)
            if identifier is None:
                continue
            session.send(Push(url=identifier, data=event.payload))
            delivered += 1
        if delivered:
            self.metrics.increment('pushes_delivered', delivered)
            logger.debug(f"Pushed {event.kind.value} change of {event.source_path} to {delivered} session(s)")
        return delivered
