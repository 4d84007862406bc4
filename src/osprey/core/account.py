# =============================================================================
# Account Model
# =============================================================================
# Represents a mail account: IMAP connection details plus the sync policy
# that decides how (and how far back) its mailboxes are synchronized.
#
# IMPORTANT: Passwords are NOT stored here. They are retrieved from the system
# keyring at runtime using the 'keyring' library. This keeps credentials out
# of the database and the config file.
# =============================================================================

from dataclasses import dataclass
from enum import IntEnum


# Account.sync_interval special values (positive values are poll minutes)
SYNC_INTERVAL_NEVER = -1
SYNC_INTERVAL_PUSH = -2

DAY_MS = 24 * 60 * 60 * 1000


class SyncWindow(IntEnum):
    """
    How far back in time a mailbox is synchronized.

    Mailboxes usually say ACCOUNT, which defers to the account's own
    lookback. The stored integer values are stable and go straight into
    the database and the config file.
    """
    ACCOUNT = -2        # Mailbox defers to its account
    AUTO = 0            # Let the engine pick (one week)
    DAY_1 = 1
    DAYS_3 = 2
    WEEK_1 = 3
    WEEKS_2 = 4
    MONTH_1 = 5
    ALL = 6
    MONTHS_3 = 7
    MONTHS_6 = 8

    def to_days(self) -> int:
        """
        Number of days covered by this window.

        ACCOUNT has no day count of its own; callers resolve it through the
        account first (see Mailbox.lookback_days). It maps to the AUTO value
        so a stray ACCOUNT never produces an empty window.
        """
        return _WINDOW_DAYS[self]

    @classmethod
    def parse(cls, value: "str | int | SyncWindow") -> "SyncWindow":
        """
        Convert a config value into a SyncWindow.

        Accepts the enum name in any case ("week_1", "ALL") or its integer value.

        Raises:
            ValueError: If the value names no window.
        """
        if isinstance(value, SyncWindow):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[value.strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown sync window: {value!r}") from None


_WINDOW_DAYS = {
    SyncWindow.ACCOUNT: 7,
    SyncWindow.AUTO: 7,
    SyncWindow.DAY_1: 1,
    SyncWindow.DAYS_3: 3,
    SyncWindow.WEEK_1: 7,
    SyncWindow.WEEKS_2: 14,
    SyncWindow.MONTH_1: 30,
    SyncWindow.MONTHS_3: 90,
    SyncWindow.MONTHS_6: 180,
    SyncWindow.ALL: 36500,
}


@dataclass
class Account:
    """
    Represents an IMAP account and its synchronization policy.

    Attributes:
        name: A unique identifier for this account (e.g., "personal", "work").
              Used as the key in config files and for keyring lookups.
        email: The email address, also the IMAP login name.
        display_name: Human-friendly name. Defaults to the email address.

        imap_host: Hostname of the IMAP server (e.g., "imap.gmail.com").
        imap_port: Port for IMAP connection. Standard ports:
                   - 993 for IMAP with SSL/TLS (recommended)
                   - 143 for IMAP with STARTTLS
        imap_security: Connection security method ("ssl" or "starttls").

        sync_interval: Minutes between polls. SYNC_INTERVAL_PUSH means the
                       account is kept current through IMAP IDLE,
                       SYNC_INTERVAL_NEVER means manual sync only.
        sync_lookback: Default lookback for mailboxes that defer to the account.

        id: Database primary key. None until the account is saved to storage.
        enabled: Whether this account is active. Disabled accounts won't sync.

    Example:
        >>> account = Account(
        ...     name="personal",
        ...     email="user@example.com",
        ...     imap_host="imap.example.com",
        ...     sync_interval=SYNC_INTERVAL_PUSH,
        ... )
        >>> account.is_push
        True
    """

    # Account identification
    name: str                           # Unique account identifier
    email: str                          # Email address / login
    display_name: str = ""

    # IMAP configuration
    imap_host: str = ""
    imap_port: int = 993                # Default to SSL port
    imap_security: str = "ssl"          # "ssl" or "starttls"

    # Sync policy
    sync_interval: int = SYNC_INTERVAL_PUSH
    sync_lookback: SyncWindow = SyncWindow.AUTO

    # Database fields
    id: int | None = None               # Primary key (None until saved)
    enabled: bool = True                # Whether account is active

    def __post_init__(self) -> None:
        if not self.display_name:
            self.display_name = self.email

    @property
    def is_push(self) -> bool:
        """True when the account is kept current through IMAP IDLE."""
        return self.sync_interval == SYNC_INTERVAL_PUSH

    @property
    def keyring_service(self) -> str:
        """
        Returns the service name used for keyring password storage.

        Passwords can be managed via the keyring CLI:
            keyring set osprey:personal user@example.com
        """
        return f"osprey:{self.name}"

    def __str__(self) -> str:
        return f"{self.name} <{self.email}>"

    def __repr__(self) -> str:
        return (
            f"Account(name={self.name!r}, email={self.email!r}, "
            f"imap={self.imap_host}:{self.imap_port}, "
            f"sync_interval={self.sync_interval})"
        )
