# =============================================================================
# Configuration Management
# =============================================================================
# Handles loading, saving, and validating Osprey configuration.
#
# XDG Base Directory Compliance (https://specifications.freedesktop.org/basedir-spec/):
#   - Config:  $XDG_CONFIG_HOME/osprey/  (default: ~/.config/osprey/)
#   - Data:    $XDG_DATA_HOME/osprey/    (default: ~/.local/share/osprey/)
#   - State:   $XDG_STATE_HOME/osprey/   (default: ~/.local/state/osprey/)
#
# Files:
#   - config.toml: User configuration (accounts, sync tuning)
#   - osprey.db: SQLite database (in data directory)
#   - attachments/: Downloaded attachment content (in data directory)
#   - osprey.log: Log file (in state directory)
# =============================================================================

import os
import tomllib  # Built into Python 3.11+
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomli_w  # For writing TOML (tomllib is read-only)

from osprey.core import SYNC_INTERVAL_PUSH, Account, SyncWindow


# =============================================================================
# XDG Directory Management
# =============================================================================

# Application identifier used in all XDG paths
APP_NAME = "osprey"


def get_xdg_config_home() -> Path:
    """
    Returns the XDG config directory for Osprey.

    Respects $XDG_CONFIG_HOME if set, otherwise uses ~/.config/osprey/
    """
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base = Path(xdg_config)
    else:
        base = Path.home() / ".config"
    return base / APP_NAME


def get_xdg_data_home() -> Path:
    """
    Returns the XDG data directory for Osprey.

    Respects $XDG_DATA_HOME if set, otherwise uses ~/.local/share/osprey/
    This is where the message database and attachment files live.
    """
    xdg_data = os.environ.get("XDG_DATA_HOME")
    if xdg_data:
        base = Path(xdg_data)
    else:
        base = Path.home() / ".local" / "share"
    return base / APP_NAME


def get_xdg_state_home() -> Path:
    """
    Returns the XDG state directory for Osprey.

    Respects $XDG_STATE_HOME if set, otherwise uses ~/.local/state/osprey/
    Logs go here.
    """
    xdg_state = os.environ.get("XDG_STATE_HOME")
    if xdg_state:
        base = Path(xdg_state)
    else:
        base = Path.home() / ".local" / "state"
    return base / APP_NAME


def ensure_directories() -> dict[str, Path]:
    """
    Creates all required XDG directories if they don't exist.

    Returns:
        Dictionary mapping directory type to path.
    """
    dirs = {
        "config": get_xdg_config_home(),
        "data": get_xdg_data_home(),
        "state": get_xdg_state_home(),
    }

    for dir_path in dirs.values():
        dir_path.mkdir(parents=True, exist_ok=True)

    (dirs["data"] / "attachments").mkdir(exist_ok=True)

    return dirs


# =============================================================================
# Configuration Data Structures
# =============================================================================

@dataclass
class SyncConfig:
    """
    Tuning for the sync window planner and the reconciliation engine.

    Attributes:
        quick_sync_window_hours: How far back a quick (non-full) sync looks.
        full_sync_interval_hours: A full sync is forced once this much time
                                  has passed since the last one.
        max_messages_to_fetch: Chunk size for bulk FLAGS refreshes.
        minimum_messages_to_sync: A full sync keeps widening its window
                                  until at least this many messages are seen.
        load_more_min_increment: Extra messages requested by "load more".
        load_more_max_increment: Cap on extra messages kept per expansion.
    """
    quick_sync_window_hours: int = 24
    full_sync_interval_hours: int = 4
    max_messages_to_fetch: int = 500
    minimum_messages_to_sync: int = 10
    load_more_min_increment: int = 10
    load_more_max_increment: int = 20

    @property
    def quick_sync_window_ms(self) -> int:
        return self.quick_sync_window_hours * 60 * 60 * 1000

    @property
    def full_sync_interval_ms(self) -> int:
        return self.full_sync_interval_hours * 60 * 60 * 1000


@dataclass
class IdleConfig:
    """
    Timings for the IDLE connection supervisor.

    Attributes:
        kick_timeout_minutes: An idling connection is restarted after this long.
        kick_window_minutes: Slack allowed when scheduling the kick.
        restart_delay_min_seconds: Earliest restart after connectivity returns.
        restart_delay_max_seconds: Latest restart after connectivity returns.
        ping_base_delay_ms: First retry delay after an IDLE failure.
        ping_max_delay_ms: Retry delay ceiling.
    """
    kick_timeout_minutes: int = 25
    kick_window_minutes: int = 3
    restart_delay_min_seconds: int = 30
    restart_delay_max_seconds: int = 60
    ping_base_delay_ms: int = 500
    ping_max_delay_ms: int = 30 * 60 * 1000


@dataclass
class NotificationsConfig:
    """
    Attributes:
        battery_exempt: Whether the host lets push connections run while
                        the device sleeps. Restart-all is skipped when False.
    """
    battery_exempt: bool = True


@dataclass
class Config:
    """
    Main configuration container for Osprey.

    Attributes:
        default_account: Name of the account used when none is given.
        accounts: Dictionary of configured accounts, keyed by name.
        sync: Sync planner tuning.
        idle: IDLE supervisor tuning.
        notifications: Host notification settings.

    Usage:
        >>> config = Config.load()
        >>> print(config.accounts['personal'].email)
        'user@example.com'
    """
    # General settings
    default_account: str = ""

    # Account configurations (name -> Account)
    accounts: dict[str, Account] = field(default_factory=dict)

    # Subsystem configurations
    sync: SyncConfig = field(default_factory=SyncConfig)
    idle: IdleConfig = field(default_factory=IdleConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)

    # -------------------------------------------------------------------------
    # File Paths
    # -------------------------------------------------------------------------

    @staticmethod
    def config_file_path() -> Path:
        """Returns the path to the main config file."""
        return get_xdg_config_home() / "config.toml"

    @staticmethod
    def database_path() -> Path:
        """Returns the path to the SQLite database."""
        return get_xdg_data_home() / "osprey.db"

    @staticmethod
    def attachments_dir() -> Path:
        """Returns the directory holding downloaded attachment content."""
        return get_xdg_data_home() / "attachments"

    @staticmethod
    def log_file_path() -> Path:
        """Returns the path to the log file."""
        return get_xdg_state_home() / "osprey.log"

    # -------------------------------------------------------------------------
    # Loading and Saving
    # -------------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """
        Load configuration from the config file.

        If the config file doesn't exist, returns default configuration.
        Creates necessary directories if they don't exist.

        Args:
            path: Explicit config file. Defaults to the XDG location.

        Returns:
            Loaded Config object.

        Raises:
            ConfigError: If the config file exists but is invalid.
        """
        if path is None:
            ensure_directories()
            path = cls.config_file_path()

        if not path.exists():
            return cls()

        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid config file: {e}") from e

        return cls._from_dict(data)

    def save(self, path: Path | None = None) -> None:
        """
        Save configuration to the config file.

        Creates the config directory if it doesn't exist.
        """
        if path is None:
            ensure_directories()
            path = self.config_file_path()
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "wb") as f:
            tomli_w.dump(self._to_dict(), f)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """
        Create a Config object from a dictionary (parsed TOML).

        Raises:
            ConfigError: If a value has the wrong shape.
        """
        config = cls()

        # General settings
        general = data.get("general", {})
        config.default_account = general.get("default_account", "")

        # Sync settings
        sync = data.get("sync", {})
        defaults = SyncConfig()
        config.sync = SyncConfig(
            quick_sync_window_hours=sync.get("quick_sync_window_hours", defaults.quick_sync_window_hours),
            full_sync_interval_hours=sync.get("full_sync_interval_hours", defaults.full_sync_interval_hours),
            max_messages_to_fetch=sync.get("max_messages_to_fetch", defaults.max_messages_to_fetch),
            minimum_messages_to_sync=sync.get("minimum_messages_to_sync", defaults.minimum_messages_to_sync),
            load_more_min_increment=sync.get("load_more_min_increment", defaults.load_more_min_increment),
            load_more_max_increment=sync.get("load_more_max_increment", defaults.load_more_max_increment),
        )
        if config.sync.max_messages_to_fetch <= 0:
            raise ConfigError("sync.max_messages_to_fetch must be positive")

        # IDLE settings
        idle = data.get("idle", {})
        idle_defaults = IdleConfig()
        config.idle = IdleConfig(
            kick_timeout_minutes=idle.get("kick_timeout_minutes", idle_defaults.kick_timeout_minutes),
            kick_window_minutes=idle.get("kick_window_minutes", idle_defaults.kick_window_minutes),
            restart_delay_min_seconds=idle.get("restart_delay_min_seconds", idle_defaults.restart_delay_min_seconds),
            restart_delay_max_seconds=idle.get("restart_delay_max_seconds", idle_defaults.restart_delay_max_seconds),
            ping_base_delay_ms=idle.get("ping_base_delay_ms", idle_defaults.ping_base_delay_ms),
            ping_max_delay_ms=idle.get("ping_max_delay_ms", idle_defaults.ping_max_delay_ms),
        )
        if config.idle.restart_delay_max_seconds < config.idle.restart_delay_min_seconds:
            raise ConfigError("idle.restart_delay_max_seconds is below the minimum")

        # Notification settings
        notifications = data.get("notifications", {})
        config.notifications = NotificationsConfig(
            battery_exempt=notifications.get("battery_exempt", True),
        )

        # Accounts - each key under [accounts] is an account name
        accounts_data = data.get("accounts", {})
        for name, acct_data in accounts_data.items():
            try:
                lookback = SyncWindow.parse(acct_data.get("sync_lookback", "auto"))
            except ValueError as e:
                raise ConfigError(f"Account {name!r}: {e}") from e
            config.accounts[name] = Account(
                name=name,
                email=acct_data.get("email", ""),
                display_name=acct_data.get("display_name", ""),
                imap_host=acct_data.get("imap_host", ""),
                imap_port=acct_data.get("imap_port", 993),
                imap_security=acct_data.get("imap_security", "ssl"),
                sync_interval=acct_data.get("sync_interval", SYNC_INTERVAL_PUSH),
                sync_lookback=lookback,
                enabled=acct_data.get("enabled", True),
            )

        return config

    def _to_dict(self) -> dict[str, Any]:
        """
        Convert Config to a dictionary for TOML serialization.
        """
        data: dict[str, Any] = {}

        data["general"] = {
            "default_account": self.default_account,
        }

        data["sync"] = {
            "quick_sync_window_hours": self.sync.quick_sync_window_hours,
            "full_sync_interval_hours": self.sync.full_sync_interval_hours,
            "max_messages_to_fetch": self.sync.max_messages_to_fetch,
            "minimum_messages_to_sync": self.sync.minimum_messages_to_sync,
            "load_more_min_increment": self.sync.load_more_min_increment,
            "load_more_max_increment": self.sync.load_more_max_increment,
        }

        data["idle"] = {
            "kick_timeout_minutes": self.idle.kick_timeout_minutes,
            "kick_window_minutes": self.idle.kick_window_minutes,
            "restart_delay_min_seconds": self.idle.restart_delay_min_seconds,
            "restart_delay_max_seconds": self.idle.restart_delay_max_seconds,
            "ping_base_delay_ms": self.idle.ping_base_delay_ms,
            "ping_max_delay_ms": self.idle.ping_max_delay_ms,
        }

        data["notifications"] = {
            "battery_exempt": self.notifications.battery_exempt,
        }

        data["accounts"] = {}
        for name, account in self.accounts.items():
            data["accounts"][name] = {
                "email": account.email,
                "display_name": account.display_name,
                "imap_host": account.imap_host,
                "imap_port": account.imap_port,
                "imap_security": account.imap_security,
                "sync_interval": account.sync_interval,
                "sync_lookback": account.sync_lookback.name.lower(),
                "enabled": account.enabled,
            }

        return data


# =============================================================================
# Exceptions
# =============================================================================

class ConfigError(Exception):
    """Raised when there's an error loading or parsing configuration."""
    pass


# =============================================================================
# Utility Functions
# =============================================================================

def print_paths() -> None:
    """
    Print all XDG paths for debugging.
    Useful for users wondering where their config/data is stored.
    """
    print(f"Config:  {get_xdg_config_home()}")
    print(f"Data:    {get_xdg_data_home()}")
    print(f"State:   {get_xdg_state_home()}")
    print()
    print(f"Config file:  {Config.config_file_path()}")
    print(f"Database:     {Config.database_path()}")
    print(f"Attachments:  {Config.attachments_dir()}")
    print(f"Log file:     {Config.log_file_path()}")
