import json
import logging
from typing import Dict, Optional, Union
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

PING = "PING"
PONG = "PONG"

COMMAND_NEW_LINKS = "newLinks"
COMMAND_GET_CONTENT = "getContent"


@dataclass(frozen=True)
class Handshake:
    path: str


@dataclass(frozen=True)
class HandshakeAck:
    token: str


@dataclass(frozen=True)
class Ping:
    pass


@dataclass(frozen=True)
class Pong:
    pass


@dataclass(frozen=True)
class RegisterLinks:
    links: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class FetchContent:
    url: str


@dataclass(frozen=True)
class Push:
    url: str
    data: str


SyncMessage = Union[Handshake, HandshakeAck, Ping, Pong, RegisterLinks, FetchContent, Push]


def parse_message(raw: Union[str, bytes]) -> Optional[SyncMessage]:
    """Decode an inbound frame; None for malformed structured messages"""
    if isinstance(raw, bytes):
        raw = raw.decode('utf-8', errors='replace')
    text = raw.strip()

    if text == PING:
        return Ping()
    if text == PONG:
        return Pong()
    if not text.startswith('{'):
        return Handshake(path=text)

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.debug(f"Ignoring unparseable message: {text[:80]}")
        return None
    if not isinstance(data, dict):
        return None

    command = data.get('command')
    if command == COMMAND_NEW_LINKS:
        links = data.get('links')
        if not isinstance(links, dict):
            return None
        return RegisterLinks(links={
            str(url): str(identifier)
            for url, identifier in links.items()
            if isinstance(identifier, str)
        })
    if command == COMMAND_GET_CONTENT:
        url = data.get('url')
        if not isinstance(url, str):
            return None
        return FetchContent(url=url)

    logger.debug(f"Ignoring unknown command: {command!r}")
    return None


def encode_message(message: SyncMessage) -> str:
    """Encode an outbound message as a text frame"""
    if isinstance(message, Ping):
        return PING
    if isinstance(message, Pong):
        return PONG
    if isinstance(message, HandshakeAck):
        return message.token
    if isinstance(message, Handshake):
        return message.path
    if isinstance(message, Push):
        return json.dumps({'file': message.url, 'data': message.data})
    if isinstance(message, RegisterLinks):
        return json.dumps({'command': COMMAND_NEW_LINKS, 'links': message.links})
    if isinstance(message, FetchContent):
        return json.dumps({'command': COMMAND_GET_CONTENT, 'url': message.url})
    raise TypeError(f"Unsupported message: {message!r}")
