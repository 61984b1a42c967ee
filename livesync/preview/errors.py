class LiveSyncError(Exception):
    """Base class for live-sync errors"""


class PathEscapeError(LiveSyncError, LookupError):
    """Raised when a request path resolves outside of its root"""

    def __init__(self, request_path: str):
        super().__init__(f"Path escapes its root: {request_path}")
        self.request_path = request_path


class NoFreePortError(LiveSyncError, RuntimeError):
    """Raised when no port in the tried range can be bound"""

    def __init__(self, start: int, end: int):
        super().__init__(f"No free port found between {start} and {end}")
        self.start = start
        self.end = end
