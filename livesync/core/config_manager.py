import json
from pathlib import Path
from typing import Any, List
from dataclasses import dataclass, field, asdict

@dataclass
class LiveSyncConfig:
    host: str = "127.0.0.1"
    preferred_port: int = 8242
    port_span: int = 50  # ports tried after the preferred one
    rescan_quiet_interval: float = 0.5  # seconds
    handshake_timeout: float = 1.0  # seconds
    log_level: str = "INFO"
    roots: List[str] = field(default_factory=list)

class ConfigManager:
    def __init__(self, config_path: str = "livesync.json"):
        self.config_path = Path(config_path)
        self.config = self._load_config()

    def _load_config(self) -> LiveSyncConfig:
        """Load configuration from file or create default"""
        if self.config_path.exists():
            with open(self.config_path) as f:
                config_dict = json.load(f)
                return LiveSyncConfig(**config_dict)
        return LiveSyncConfig()

    def save_config(self):
        """Save current configuration to file"""
        with open(self.config_path, 'w') as f:
            json.dump(asdict(self.config), f, indent=2)

    def get(self, key: str) -> Any:
        """Get configuration value"""
        if not hasattr(self.config, key):
            raise KeyError(f"Unknown configuration key: {key}")
        return getattr(self.config, key)

    def update(self, key: str, value: Any):
        """Update configuration value"""
        if hasattr(self.config, key):
            setattr(self.config, key, value)
            self.save_config()
        else:
            raise KeyError(f"Unknown configuration key: {key}")
