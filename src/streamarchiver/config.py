"""
Configuration module for Stream Archiver.
Loads settings from YAML file and provides typed configuration.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional

import yaml


@dataclass
class TwitchConfig:
    """Twitch API, live polling and chat credentials."""
    client_id: str
    client_secret: str
    channels: List[str] = field(default_factory=list)
    bot_username: str = ""        # IRC login used by the chat recorder
    oauth_token: str = ""         # IRC token, with or without "oauth:" prefix
    live_poll_interval: int = 30  # seconds between live status checks


@dataclass
class ProcessingConfig:
    """Processing engine settings."""
    data_dir: str = "./data/vods"
    tick_interval: int = 60             # seconds between orchestrator ticks
    max_concurrent_downloads: int = 1
    retry_cooldown: int = 600           # seconds before an errored recording is eligible again
    download_max_attempts: int = 5
    download_backoff_base: float = 2.0  # seconds
    bandwidth_limit: str = ""           # yt-dlp rate string, e.g. "5M"; empty = unlimited
    discovery_interval: int = 900       # seconds between catalog discovery passes


@dataclass
class CircuitConfig:
    """Circuit breaker settings."""
    failure_threshold: int = 5
    open_cooldown: int = 300  # seconds; fixed, does not grow on repeated probe failures


@dataclass
class PublishConfig:
    """Republishing to Telegram."""
    enabled: bool = False
    api_id: int = 0
    api_hash: str = ""
    channel_id: int = 0
    session_name: str = "stream_archiver"
    max_attempts: int = 5
    backoff_base: float = 2.0


@dataclass
class ReconcileConfig:
    """Live-to-archive reconciliation settings."""
    initial_delay: int = 60
    window: int = 900          # seconds after offline during which matching is attempted
    poll_interval: int = 30
    match_tolerance: int = 600  # +/- seconds around the placeholder start


@dataclass
class ChatConfig:
    """Live chat capture settings."""
    enabled: bool = True
    export_dir: str = "./data/chat"  # JSON chat files written after reconciliation; empty = off


@dataclass
class DatabaseConfig:
    """Storage settings."""
    url: str = "sqlite+aiosqlite:///./data/archiver.db"
    echo: bool = False


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    file: str = "./logs/archiver.log"
    max_size_mb: int = 10
    backup_count: int = 5


@dataclass
class Config:
    """Main configuration container."""
    twitch: TwitchConfig
    processing: ProcessingConfig = field(default_factory=ProcessingConfig)
    circuit: CircuitConfig = field(default_factory=CircuitConfig)
    publish: PublishConfig = field(default_factory=PublishConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    chat: ChatConfig = field(default_factory=ChatConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    
    def ensure_directories(self) -> None:
        """Create data and log directories."""
        Path(self.processing.data_dir).mkdir(parents=True, exist_ok=True)
        if self.chat.export_dir:
            Path(self.chat.export_dir).mkdir(parents=True, exist_ok=True)
        if self.logging.file:
            Path(self.logging.file).parent.mkdir(parents=True, exist_ok=True)
        sqlite_prefix = "sqlite+aiosqlite:///"
        if self.database.url.startswith(sqlite_prefix):
            db_path = self.database.url[len(sqlite_prefix):]
            if db_path and db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)


def as_bool(value: Any, default: bool) -> bool:
    """Parse bool from YAML value with safe fallbacks."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("1", "true", "yes", "y", "on"):
            return True
        if text in ("0", "false", "no", "n", "off"):
            return False
    return default


def as_float(value: Any, default: float) -> float:
    """Parse float from YAML value with safe fallbacks."""
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip().replace(",", "."))
        except ValueError:
            return default
    return default


def as_int(value: Any, default: int) -> int:
    """Parse int from YAML value with safe fallbacks."""
    if value is None:
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return default
        try:
            return int(float(text.replace(",", ".")))
        except ValueError:
            return default
    return default


def load_config(config_path: str = "config.yaml") -> Config:
    """
    Load configuration from YAML file.
    
    Args:
        config_path: Path to YAML configuration file.
        
    Returns:
        Config object with all settings.
        
    Raises:
        FileNotFoundError: If config file doesn't exist.
        ValueError: If required fields are missing.
    """
    config_path = Path(config_path)
    
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path}\n"
            f"Please create a config.yaml file. See config.example.yaml for reference."
        )
    
    with open(config_path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)
    
    if not data:
        raise ValueError("Configuration file is empty")
    
    if 'twitch' not in data:
        raise ValueError("Missing 'twitch' section in config")
    
    twitch_data = data['twitch'] or {}
    for field_name in ('client_id', 'client_secret'):
        if not twitch_data.get(field_name):
            raise ValueError(f"Missing required field: twitch.{field_name}")
    
    channels = twitch_data.get('channels') or []
    if isinstance(channels, str):
        channels = [channels]
    
    twitch_config = TwitchConfig(
        client_id=str(twitch_data['client_id']),
        client_secret=str(twitch_data['client_secret']),
        channels=[str(ch).lower() for ch in channels],
        bot_username=str(twitch_data.get('bot_username', '') or ''),
        oauth_token=str(twitch_data.get('oauth_token', '') or ''),
        live_poll_interval=max(1, as_int(twitch_data.get('live_poll_interval'), 30)),
    )
    
    processing_data = data.get('processing') or {}
    processing_config = ProcessingConfig(
        data_dir=processing_data.get('data_dir', './data/vods'),
        tick_interval=max(1, as_int(processing_data.get('tick_interval'), 60)),
        max_concurrent_downloads=max(1, as_int(processing_data.get('max_concurrent_downloads'), 1)),
        retry_cooldown=max(0, as_int(processing_data.get('retry_cooldown'), 600)),
        download_max_attempts=max(1, as_int(processing_data.get('download_max_attempts'), 5)),
        download_backoff_base=max(0.0, as_float(processing_data.get('download_backoff_base'), 2.0)),
        bandwidth_limit=str(processing_data.get('bandwidth_limit', '') or ''),
        discovery_interval=max(1, as_int(processing_data.get('discovery_interval'), 900)),
    )
    
    circuit_data = data.get('circuit') or {}
    circuit_config = CircuitConfig(
        failure_threshold=max(1, as_int(circuit_data.get('failure_threshold'), 5)),
        open_cooldown=max(1, as_int(circuit_data.get('open_cooldown'), 300)),
    )
    
    publish_data = data.get('publish') or {}
    publish_config = PublishConfig(
        enabled=as_bool(publish_data.get('enabled'), False),
        api_id=as_int(publish_data.get('api_id'), 0),
        api_hash=str(publish_data.get('api_hash', '') or ''),
        channel_id=as_int(publish_data.get('channel_id'), 0),
        session_name=publish_data.get('session_name', 'stream_archiver'),
        max_attempts=max(1, as_int(publish_data.get('max_attempts'), 5)),
        backoff_base=max(0.0, as_float(publish_data.get('backoff_base'), 2.0)),
    )
    if publish_config.enabled:
        for field_name in ('api_id', 'api_hash', 'channel_id'):
            if not getattr(publish_config, field_name):
                raise ValueError(f"Missing required field: publish.{field_name}")
    
    reconcile_data = data.get('reconcile') or {}
    reconcile_config = ReconcileConfig(
        initial_delay=max(0, as_int(reconcile_data.get('initial_delay'), 60)),
        window=max(1, as_int(reconcile_data.get('window'), 900)),
        poll_interval=max(1, as_int(reconcile_data.get('poll_interval'), 30)),
        match_tolerance=max(0, as_int(reconcile_data.get('match_tolerance'), 600)),
    )
    
    chat_data = data.get('chat') or {}
    chat_config = ChatConfig(
        enabled=as_bool(chat_data.get('enabled'), True),
        export_dir=str(chat_data.get('export_dir', './data/chat') or ''),
    )
    
    database_data = data.get('database') or {}
    database_config = DatabaseConfig(
        url=database_data.get('url', 'sqlite+aiosqlite:///./data/archiver.db'),
        echo=as_bool(database_data.get('echo'), False),
    )
    
    logging_data = data.get('logging') or {}
    logging_config = LoggingConfig(
        level=logging_data.get('level', 'INFO'),
        file=logging_data.get('file', './logs/archiver.log'),
        max_size_mb=as_int(logging_data.get('max_size_mb'), 10),
        backup_count=as_int(logging_data.get('backup_count'), 5),
    )
    
    return Config(
        twitch=twitch_config,
        processing=processing_config,
        circuit=circuit_config,
        publish=publish_config,
        reconcile=reconcile_config,
        chat=chat_config,
        database=database_config,
        logging=logging_config,
    )


def create_example_config(path: str = "config.example.yaml") -> None:
    """Create an example configuration file."""
    example = """# Stream Archiver Configuration

twitch:
  client_id: YOUR_CLIENT_ID
  client_secret: YOUR_CLIENT_SECRET
  channels:
    - channel1
  bot_username: your_bot  # Needed for live chat capture
  oauth_token: oauth:xxxxxxxx
  live_poll_interval: 30

processing:
  data_dir: ./data/vods
  tick_interval: 60
  max_concurrent_downloads: 1
  retry_cooldown: 600        # Seconds before a failed recording is retried
  download_max_attempts: 5
  download_backoff_base: 2
  bandwidth_limit: ""        # e.g. 5M; empty = unlimited
  discovery_interval: 900

circuit:
  failure_threshold: 5
  open_cooldown: 300

publish:
  enabled: false
  api_id: YOUR_API_ID        # Get from https://my.telegram.org
  api_hash: YOUR_API_HASH
  channel_id: -1001234567890
  session_name: stream_archiver
  max_attempts: 5
  backoff_base: 2

reconcile:
  initial_delay: 60
  window: 900
  poll_interval: 30
  match_tolerance: 600

chat:
  enabled: true
  export_dir: ./data/chat  # Chat replay files; empty = off

database:
  url: sqlite+aiosqlite:///./data/archiver.db
  echo: false

logging:
  level: INFO  # DEBUG, INFO, WARNING, ERROR
  file: ./logs/archiver.log
  max_size_mb: 10
  backup_count: 5
"""
    with open(path, 'w', encoding='utf-8') as f:
        f.write(example)


if __name__ == '__main__':
    create_example_config()
    print("Created config.example.yaml")
