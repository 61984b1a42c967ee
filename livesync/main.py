import argparse
import asyncio
import logging
import os
from typing import List, Optional

from livesync.core.config_manager import ConfigManager
from livesync.preview.file_index import WorkspaceRoot
from livesync.preview.live_server import LiveServer

logger = logging.getLogger(__name__)


def build_roots(paths: List[str]) -> List[WorkspaceRoot]:
    """One root per folder, named after it; names must be unique"""
    roots = [WorkspaceRoot.from_path(path) for path in paths]
    names = [root.name for root in roots]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ValueError(f"Workspace root names must be unique: {', '.join(duplicates)}")
    return roots


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="livesync",
        description="Serve HTML/CSS folders and push edits to open browsers"
    )
    parser.add_argument("roots", nargs="*", help="workspace folders to serve")
    parser.add_argument("--config", default="livesync.json", help="JSON configuration file")
    parser.add_argument("--host", help="interface to listen on")
    parser.add_argument("--port", type=int, help="preferred HTTP port")
    parser.add_argument("--save-config", action="store_true",
                        help="write the command line settings back to the configuration file")
    return parser.parse_args(argv)


def apply_overrides(manager: ConfigManager, args: argparse.Namespace):
    """Command line settings win over the file; persisted with --save-config"""
    overrides = {
        'host': args.host,
        'preferred_port': args.port,
        'roots': [os.path.abspath(path) for path in args.roots],
    }
    for key, value in overrides.items():
        if not value:
            continue
        if args.save_config:
            manager.update(key, value)
        else:
            setattr(manager.config, key, value)


def main(argv: Optional[List[str]] = None):
    args = parse_args(argv)
    manager = ConfigManager(args.config)
    apply_overrides(manager, args)

    log_level = manager.get('log_level')
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    roots = build_roots(manager.get('roots') or ["."])
    server = LiveServer(roots, manager.config)
    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        logger.info("Stopped")


if __name__ == '__main__':
    main()
