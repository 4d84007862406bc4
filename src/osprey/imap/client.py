# =============================================================================
# IMAP Client
# =============================================================================
# Provides an async IMAP client wrapper around aioimaplib.
#
# Key responsibilities:
#   - Connection management (connect, disconnect)
#   - Authentication (supports STARTTLS and SSL, password from keyring)
#   - Raw folder and UID commands (select, search, fetch, store, copy, append)
#   - Response parsing (FETCH records, COPYUID/APPENDUID, PERMANENTFLAGS)
#   - IDLE support for push notifications
#
# Design notes:
#   - All methods are async; transport failures become ConnectionFailedError,
#     rejected LOGINs AuthenticationFailedError, NO/BAD replies ServerError
#   - FETCH responses are parsed with a small s-expression reader that keeps
#     IMAP literals ({N} blocks) as raw bytes
#   - One IMAPClient is one connection; ImapStore pools them per account
# =============================================================================

import asyncio
import base64
import email.header
import email.utils
import logging
import quopri
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import keyring
from aioimaplib import aioimaplib

from osprey.core import AuthenticationFailedError, ConnectionFailedError, ServerError
from osprey.imap.folder import BodyPart, Flag

if TYPE_CHECKING:
    from osprey.core import Account

# Set up logging for this module
logger = logging.getLogger(__name__)


def _quote_folder_name(name: str) -> str:
    """
    Quote an IMAP folder name if it contains special characters.

    Args:
        name: The folder name to quote.

    Returns:
        Properly quoted folder name for IMAP commands.
    """
    if ' ' in name or '"' in name or '\\' in name or any(c in name for c in '(){}[]'):
        escaped = name.replace('\\', '\\\\').replace('"', '\\"')
        return f'"{escaped}"'
    return name


_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def imap_date(epoch_ms: int) -> str:
    """
    Format epoch milliseconds as an IMAP search date (e.g. "7-Jul-2024").

    Month names are spelled out here because strftime's %b is locale-dependent.
    """
    when = datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)
    return f"{when.day}-{_MONTHS[when.month - 1]}-{when.year}"


# =============================================================================
# Response Parsing
# =============================================================================

# Literal references are spliced into the text as \x00<index>\x00
_TOKEN_RE = re.compile(
    r'\s*(?:(\()|(\))|"((?:[^"\\]|\\.)*)"|\x00(\d+)\x00|([^\s()"\x00]+))'
)
_LITERAL_RE = re.compile(r"\{(\d+)\}\s*$")
_FETCH_START_RE = re.compile(r"^(\d+)\s+FETCH\s+\(", re.IGNORECASE)


def _to_text(line: bytes | bytearray | str) -> str:
    if isinstance(line, (bytes, bytearray)):
        return bytes(line).decode("utf-8", errors="replace")
    return str(line)


def parse_sexp(text: str, literals: list[bytes] | None = None) -> list[Any]:
    """
    Parse an IMAP parenthesized list into nested Python lists.

    Quoted strings and atoms become str, NIL becomes None and literal
    references become bytes.

    Example:
        >>> parse_sexp("(UID 7 X NIL)")
        [["UID", "7", "X", None]]
    """
    literals = literals or []
    stack: list[list[Any]] = [[]]
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match or match.end() == pos:
            break
        pos = match.end()
        open_paren, close_paren, quoted, literal, atom = match.groups()
        if open_paren:
            stack.append([])
        elif close_paren:
            if len(stack) == 1:
                break
            done = stack.pop()
            stack[-1].append(done)
        elif quoted is not None:
            stack[-1].append(re.sub(r"\\(.)", r"\1", quoted))
        elif literal is not None:
            stack[-1].append(literals[int(literal)])
        elif atom is not None:
            stack[-1].append(None if atom.upper() == "NIL" else atom)
    # Unbalanced input: fold whatever is still open
    while len(stack) > 1:
        done = stack.pop()
        stack[-1].append(done)
    return stack[0]


def parse_fetch_response(lines: list) -> list[dict[str, Any]]:
    """
    Parse the lines of a FETCH/UID FETCH response into one dict per message.

    aioimaplib hands back a line ending in "{N}" followed by the literal
    as a separate bytearray, then the rest of the line. Those pieces are
    stitched back together before parsing.

    Returns:
        Dicts keyed by upper-case data item name ("UID", "FLAGS",
        "ENVELOPE", "BODY[1]", ...), plus "SEQ" for the sequence number.
    """
    groups: list[tuple[str, list[bytes]]] = []
    text: str | None = None
    literals: list[bytes] = []
    expect_literal = False
    after_literal = False

    for item in lines:
        if expect_literal:
            literals.append(bytes(item) if isinstance(item, (bytes, bytearray)) else str(item).encode())
            text += f" \x00{len(literals) - 1}\x00"
            expect_literal = False
            after_literal = True
            continue

        line = _to_text(item)
        if _FETCH_START_RE.match(line):
            if text is not None:
                groups.append((text, literals))
            text, literals = line, []
        elif after_literal and text is not None:
            text += " " + line
        else:
            after_literal = False
            continue

        after_literal = False
        literal_match = _LITERAL_RE.search(text)
        if literal_match:
            text = text[:literal_match.start()]
            expect_literal = True

    if text is not None:
        groups.append((text, literals))

    records = []
    for text, literals in groups:
        start = _FETCH_START_RE.match(text)
        parsed = parse_sexp(text[start.end() - 1:], literals)
        if not parsed or not isinstance(parsed[0], list):
            continue
        items = parsed[0]
        record: dict[str, Any] = {"SEQ": int(start.group(1))}
        for i in range(0, len(items) - 1, 2):
            key = items[i]
            if isinstance(key, str):
                record[key.upper().replace(".PEEK", "")] = items[i + 1]
        records.append(record)
    return records


def parse_flags(values: list | None) -> set[Flag]:
    """Convert a FLAGS list into the Flag values we track."""
    flags = set()
    for value in values or []:
        if isinstance(value, str):
            flag = Flag.from_imap(value)
            if flag:
                flags.add(flag)
    return flags


def parse_permanent_flags(lines: list) -> set[Flag]:
    """
    Extract PERMANENTFLAGS from a SELECT response.

    A server that sends no PERMANENTFLAGS lets every flag persist.
    """
    for line in lines:
        match = re.search(r"PERMANENTFLAGS\s+\(([^)]*)\)", _to_text(line), re.IGNORECASE)
        if match:
            return parse_flags(match.group(1).split())
    return set(Flag)


def parse_uid_set(value: str) -> list[int]:
    """
    Expand an IMAP uid set ("304,319:320") into a list of uids.
    """
    uids = []
    for chunk in value.split(","):
        if ":" in chunk:
            low, high = (int(x) for x in chunk.split(":"))
            step = 1 if high >= low else -1
            uids.extend(range(low, high + step, step))
        elif chunk:
            uids.append(int(chunk))
    return uids


def parse_copyuid(lines: list) -> dict[str, str]:
    """
    Map source uids to destination uids from a COPYUID response code (RFC 4315).

    Example:
        >>> parse_copyuid([b"[COPYUID 38505 304,319:320 3956:3958] Done"])
        {'304': '3956', '319': '3957', '320': '3958'}
    """
    for line in lines:
        match = re.search(r"COPYUID\s+\d+\s+([\d:,]+)\s+([\d:,]+)", _to_text(line), re.IGNORECASE)
        if match:
            sources = parse_uid_set(match.group(1))
            targets = parse_uid_set(match.group(2))
            return {str(s): str(t) for s, t in zip(sources, targets)}
    return {}


def parse_appenduid(lines: list) -> str | None:
    """Extract the new uid from an APPENDUID response code (RFC 4315)."""
    for line in lines:
        match = re.search(r"APPENDUID\s+\d+\s+(\d+)", _to_text(line), re.IGNORECASE)
        if match:
            return match.group(1)
    return None


def parse_search_response(lines: list) -> list[str]:
    """Collect the uids of a (UID) SEARCH response, in server order."""
    uids = []
    for line in lines:
        tokens = _to_text(line).split()
        if tokens and tokens[0].upper() == "SEARCH":
            tokens = tokens[1:]
        if tokens and all(token.isdigit() for token in tokens):
            uids.extend(tokens)
    return uids


def parse_internal_date(value: str | None) -> datetime | None:
    """Parse an INTERNALDATE value ("17-Jul-1996 02:44:25 -0700")."""
    if not value:
        return None
    try:
        return datetime.strptime(value.strip(), "%d-%b-%Y %H:%M:%S %z")
    except ValueError:
        logger.debug(f"Unparseable INTERNALDATE: {value!r}")
        return None


def decode_header(value: str | bytes | None) -> str:
    """Decode an RFC 2047 encoded header value."""
    if not value:
        return ""
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    try:
        result = ""
        for part, charset in email.header.decode_header(value):
            if isinstance(part, bytes):
                result += part.decode(charset or "utf-8", errors="replace")
            else:
                result += part
        return result
    except (LookupError, ValueError):
        return value


@dataclass
class Envelope:
    """The fields of an ENVELOPE response the sync engine stores."""
    date: datetime | None = None
    subject: str = ""
    sender: str = ""
    sender_name: str = ""
    recipients: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    message_id: str = ""


def _address_list(value: Any) -> list[tuple[str, str]]:
    """(name, email) pairs from an ENVELOPE address list."""
    addresses = []
    if not isinstance(value, list):
        return addresses
    for entry in value:
        if not isinstance(entry, list) or len(entry) < 4:
            continue
        name, _route, mailbox, host = entry[:4]
        if mailbox is None:
            continue  # Group syntax marker
        address = f"{decode_header(mailbox)}@{decode_header(host)}" if host else decode_header(mailbox)
        addresses.append((decode_header(name), address))
    return addresses


def parse_envelope(value: list) -> Envelope:
    """
    Parse an ENVELOPE list.

    Layout: (date subject from sender reply-to to cc bcc in-reply-to message-id)
    """
    envelope = Envelope()
    if not isinstance(value, list):
        return envelope
    value = list(value) + [None] * (10 - len(value))

    if value[0]:
        try:
            envelope.date = email.utils.parsedate_to_datetime(decode_header(value[0]))
        except (TypeError, ValueError):
            envelope.date = None
    envelope.subject = decode_header(value[1])

    senders = _address_list(value[2])
    if senders:
        envelope.sender_name, envelope.sender = senders[0]
    envelope.recipients = [addr for _, addr in _address_list(value[5])]
    envelope.cc = [addr for _, addr in _address_list(value[6])]
    envelope.message_id = decode_header(value[9])
    return envelope


def _params(value: Any) -> dict[str, str]:
    if not isinstance(value, list):
        return {}
    params = {}
    for i in range(0, len(value) - 1, 2):
        if isinstance(value[i], str):
            params[value[i].lower()] = decode_header(value[i + 1])
    return params


def parse_body_structure(node: list, prefix: str = "") -> list[BodyPart]:
    """
    Flatten a BODYSTRUCTURE into its leaf parts with IMAP section numbers.

    A non-multipart message has a single part numbered "1".
    """
    if not isinstance(node, list) or not node:
        return []

    if isinstance(node[0], list):
        parts = []
        index = 0
        for child in node:
            if not isinstance(child, list):
                break  # Multipart subtype and extension data follow
            index += 1
            child_id = f"{prefix}.{index}" if prefix else str(index)
            parts.extend(parse_body_structure(child, child_id))
        return parts

    fields = list(node) + [None] * (7 - len(node))
    main_type = (fields[0] or "text").lower()
    sub_type = (fields[1] or "plain").lower()
    params = _params(fields[2])

    part = BodyPart(
        part_id=prefix or "1",
        content_type=f"{main_type}/{sub_type}",
        charset=params.get("charset", ""),
        encoding=(fields[5] or "7bit").lower(),
        filename=params.get("name", ""),
        content_id=(fields[3] or "").strip("<>"),
    )
    try:
        part.size = int(fields[6] or 0)
    except (TypeError, ValueError):
        part.size = 0

    # The disposition sits at different offsets depending on the type;
    # it is the first extension list shaped like ("attachment" (params))
    for extra in fields[7:]:
        if (
            isinstance(extra, list) and len(extra) >= 1
            and isinstance(extra[0], str)
            and extra[0].lower() in ("inline", "attachment")
        ):
            part.disposition = extra[0].lower()
            disposition_params = _params(extra[1] if len(extra) > 1 else None)
            part.filename = disposition_params.get("filename", part.filename)
            break
    return [part]


def decode_part_content(raw: bytes | str | None, part: BodyPart) -> str:
    """Undo the transfer encoding of a fetched part and decode its charset."""
    if raw is None:
        return ""
    data = raw.encode("utf-8", errors="replace") if isinstance(raw, str) else bytes(raw)
    if part.encoding == "base64":
        try:
            data = base64.b64decode(data, validate=False)
        except ValueError:
            logger.warning(f"Bad base64 in part {part.part_id}")
    elif part.encoding == "quoted-printable":
        data = quopri.decodestring(data)
    try:
        return data.decode(part.charset or "utf-8", errors="replace")
    except LookupError:
        return data.decode("utf-8", errors="replace")


@dataclass
class ConnectionState:
    """
    Tracks the current state of an IMAP connection.

    Attributes:
        connected: Whether we have an active connection.
        authenticated: Whether we've successfully logged in.
        selected_folder: Currently selected folder, if any.
        readonly: Whether the selected folder was opened with EXAMINE.
        capabilities: Server capabilities (from CAPABILITY response).
    """
    connected: bool = False
    authenticated: bool = False
    selected_folder: str | None = None
    readonly: bool = False
    capabilities: list[str] = field(default_factory=list)


class IMAPClient:
    """
    Async IMAP connection for one account.

    Usage:
        >>> client = IMAPClient(account)
        >>> await client.connect()
        >>> await client.select_folder("INBOX")
        >>> uids = await client.uid_search("SINCE 1-Jan-2024")
        >>> await client.disconnect()

    Attributes:
        account: The Account configuration for this connection.
        state: Current connection state.
    """

    # Timeout for IMAP operations (seconds)
    TIMEOUT = 30

    def __init__(self, account: "Account") -> None:
        self.account = account
        self.state = ConnectionState()
        self._client: aioimaplib.IMAP4_SSL | aioimaplib.IMAP4 | None = None
        self._idle_task: asyncio.Future | None = None

    @property
    def is_connected(self) -> bool:
        """Check if client is connected and authenticated."""
        return self.state.connected and self.state.authenticated and self._client is not None

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self) -> None:
        """
        Establish connection to the IMAP server and log in.

        Raises:
            ConnectionFailedError: If unable to connect to server.
            AuthenticationFailedError: If login fails.
        """
        logger.info(f"Connecting to {self.account.imap_host}:{self.account.imap_port}")

        try:
            if self.account.imap_security == "ssl":
                self._client = aioimaplib.IMAP4_SSL(
                    host=self.account.imap_host,
                    port=self.account.imap_port,
                    timeout=self.TIMEOUT,
                )
            else:
                # Plain connection, upgraded with STARTTLS below
                self._client = aioimaplib.IMAP4(
                    host=self.account.imap_host,
                    port=self.account.imap_port,
                    timeout=self.TIMEOUT,
                )

            await self._client.wait_hello_from_server()
            self.state.connected = True

            # aioimaplib stores capabilities after the greeting
            self.state.capabilities = list(self._client.protocol.capabilities)
            logger.debug(f"Server capabilities: {self.state.capabilities}")

            if self.account.imap_security == "starttls":
                if not self._client.has_capability("STARTTLS"):
                    raise ConnectionFailedError("Server does not support STARTTLS")
                await self._client.starttls()

            await self._authenticate()

        except asyncio.TimeoutError as e:
            self.state.connected = False
            raise ConnectionFailedError(
                f"Connection timed out to {self.account.imap_host}:{self.account.imap_port}"
            ) from e
        except OSError as e:
            self.state.connected = False
            raise ConnectionFailedError(
                f"Failed to connect to {self.account.imap_host}:{self.account.imap_port}: {e}"
            ) from e

    async def _authenticate(self) -> None:
        """
        Authenticate with the IMAP server using credentials from keyring.

        Raises:
            AuthenticationFailedError: If login fails or password not found.
        """
        password = keyring.get_password(
            self.account.keyring_service,
            self.account.email
        )

        if not password:
            raise AuthenticationFailedError(
                f"No password found in keyring for {self.account.email}. "
                f"Set it with: keyring set {self.account.keyring_service} {self.account.email}"
            )

        logger.debug(f"Authenticating as {self.account.email}")
        response = await self._client.login(self.account.email, password)

        if response.result != "OK":
            raise AuthenticationFailedError(
                f"Authentication failed for {self.account.email}: {response.lines}"
            )

        self.state.authenticated = True

    async def disconnect(self) -> None:
        """
        Gracefully disconnect from the IMAP server.

        Sends LOGOUT and drops the connection. Errors are logged, never raised.
        """
        if self._client and self.state.connected:
            try:
                await asyncio.wait_for(self._client.logout(), timeout=self.TIMEOUT)
            except (asyncio.TimeoutError, OSError, aioimaplib.Abort) as e:
                logger.warning(f"Error during logout: {e}")
            finally:
                self._client = None
                self.state = ConnectionState()

    async def ensure_connected(self) -> None:
        """
        Ensure we have an active connection, reconnecting if necessary.

        Raises:
            ConnectionFailedError: If reconnection fails.
        """
        if not self.is_connected:
            await self.connect()

    async def _command(self, description: str, coro) -> Any:
        """
        Await an aioimaplib command, translating failures.

        Raises:
            ConnectionFailedError: On transport errors or timeouts.
            ServerError: If the server answers NO or BAD.
        """
        try:
            response = await coro
        except (asyncio.TimeoutError, aioimaplib.CommandTimeout) as e:
            self.state = ConnectionState()
            raise ConnectionFailedError(f"{description} timed out") from e
        except (OSError, aioimaplib.Abort) as e:
            self.state = ConnectionState()
            raise ConnectionFailedError(f"{description} failed: {e}") from e

        if response.result != "OK":
            raise ServerError(f"{description} failed: {response.lines}")
        return response

    # =========================================================================
    # Folder Operations
    # =========================================================================

    async def list_folders(self) -> list[tuple[str, list[str]]]:
        """
        Fetch the folder list.

        Returns:
            (path, attributes) pairs, e.g. ("Sent", ["\\HasNoChildren", "\\Sent"]).
        """
        await self.ensure_connected()
        response = await self._command("LIST", self._client.list('""', "*"))

        folders = []
        for line in response.lines:
            parsed = self._parse_folder_line(line)
            if parsed:
                folders.append(parsed)
        return folders

    def _parse_folder_line(self, line: bytes | str) -> tuple[str, list[str]] | None:
        """
        Parse a single LIST response line.

        LIST response format:
            (\\HasNoChildren) "/" "INBOX"
            (\\HasNoChildren \\Sent) "/" "Sent"
        """
        line = _to_text(line)
        if not line or "completed" in line.lower():
            return None

        match = re.match(r'\(([^)]*)\)\s+(?:"[^"]*"|NIL)\s+(.+)$', line)
        if not match:
            logger.debug(f"Could not parse folder line: {line}")
            return None

        flags_str, name = match.groups()
        name = name.strip()
        if name.startswith('"') and name.endswith('"'):
            name = re.sub(r"\\(.)", r"\1", name[1:-1])
        return name, flags_str.split()

    async def folder_exists(self, folder_name: str) -> bool:
        await self.ensure_connected()
        response = await self._command(
            "LIST", self._client.list('""', _quote_folder_name(folder_name))
        )
        return any(self._parse_folder_line(line) for line in response.lines)

    async def create_folder(self, folder_name: str) -> None:
        await self.ensure_connected()
        await self._command(
            f"CREATE {folder_name}", self._client.create(_quote_folder_name(folder_name))
        )

    async def select_folder(self, folder_name: str, readonly: bool = False) -> dict[str, Any]:
        """
        Select a folder for subsequent operations.

        Args:
            folder_name: Name of the folder to select.
            readonly: If True, open in read-only mode (EXAMINE).

        Returns:
            Dictionary with EXISTS and PERMANENTFLAGS.

        Raises:
            ServerError: If the folder cannot be selected.
        """
        await self.ensure_connected()
        quoted_name = _quote_folder_name(folder_name)

        if readonly:
            response = await self._command(f"EXAMINE {folder_name}", self._client.examine(quoted_name))
        else:
            response = await self._command(f"SELECT {folder_name}", self._client.select(quoted_name))

        status: dict[str, Any] = {"EXISTS": 0}
        for line in response.lines:
            match = re.search(r"(\d+)\s+EXISTS", _to_text(line), re.IGNORECASE)
            if match:
                status["EXISTS"] = int(match.group(1))
        status["PERMANENTFLAGS"] = parse_permanent_flags(response.lines)

        self.state.selected_folder = folder_name
        self.state.readonly = readonly
        logger.debug(f"Selected folder: {folder_name}, {status['EXISTS']} messages")
        return status

    async def close_folder(self, expunge: bool = False) -> None:
        """Leave the selected folder. CLOSE expunges, so it is only used on request."""
        if not self.is_connected or self.state.selected_folder is None:
            return
        if expunge and not self.state.readonly:
            await self._command("CLOSE", self._client.close())
        self.state.selected_folder = None

    async def message_count(self, folder_name: str) -> int:
        await self.ensure_connected()
        response = await self._command(
            f"STATUS {folder_name}",
            self._client.status(_quote_folder_name(folder_name), "(MESSAGES)"),
        )
        for line in response.lines:
            match = re.search(r"MESSAGES\s+(\d+)", _to_text(line), re.IGNORECASE)
            if match:
                return int(match.group(1))
        return 0

    # =========================================================================
    # UID Commands
    # =========================================================================

    async def uid_search(self, criteria: str) -> list[str]:
        response = await self._command(f"UID SEARCH {criteria}", self._client.uid_search(criteria))
        return parse_search_response(response.lines)

    async def uid_fetch(self, uid_set: str, items: str) -> list[dict[str, Any]]:
        response = await self._command("UID FETCH", self._client.uid("FETCH", uid_set, items))
        return parse_fetch_response(response.lines)

    async def fetch_uids(self, sequence_set: str) -> list[str]:
        """Map message sequence numbers onto uids."""
        response = await self._command("FETCH UID", self._client.fetch(sequence_set, "(UID)"))
        return [str(r["UID"]) for r in parse_fetch_response(response.lines) if "UID" in r]

    async def uid_store(self, uid_set: str, flags: set[Flag], add: bool) -> None:
        flags_str = " ".join(sorted(flag.value for flag in flags))
        command = f"{'+' if add else '-'}FLAGS.SILENT ({flags_str})"
        logger.debug(f"Setting flags on {uid_set}: {command}")
        await self._command("UID STORE", self._client.uid("STORE", uid_set, command))

    async def uid_copy(self, uid_set: str, destination: str) -> dict[str, str]:
        """
        Copy messages, returning the source → destination uid map
        when the server supports UIDPLUS.
        """
        response = await self._command(
            f"UID COPY {destination}",
            self._client.uid("COPY", uid_set, _quote_folder_name(destination)),
        )
        return parse_copyuid(response.lines)

    async def append(
        self,
        folder_name: str,
        message_bytes: bytes,
        flags: set[Flag],
        date: datetime | None,
    ) -> str | None:
        """
        Upload a message.

        Returns:
            The new uid when the server supports UIDPLUS, otherwise None.
        """
        await self.ensure_connected()
        flags_str = " ".join(sorted(flag.value for flag in flags)) or None
        response = await self._command(
            f"APPEND {folder_name}",
            self._client.append(
                message_bytes,
                mailbox=_quote_folder_name(folder_name),
                flags=flags_str,
                date=date,
            ),
        )
        return parse_appenduid(response.lines)

    async def expunge(self) -> None:
        await self._command("EXPUNGE", self._client.expunge())

    # =========================================================================
    # IDLE Support
    # =========================================================================

    def supports_idle(self) -> bool:
        return self._client is not None and self._client.has_capability("IDLE")

    async def idle_start(self, timeout: float) -> None:
        """
        Enter IDLE on the selected folder.

        Args:
            timeout: Seconds after which aioimaplib ends IDLE by itself.
        """
        try:
            self._idle_task = await self._client.idle_start(timeout=timeout)
        except (OSError, aioimaplib.Abort) as e:
            raise ConnectionFailedError(f"IDLE failed: {e}") from e

    async def idle_wait(self, timeout: float) -> list[str]:
        """
        Wait for IDLE notifications from server.

        Returns:
            Notification lines. An empty list means aioimaplib ended IDLE
            on its own.

        Raises:
            asyncio.TimeoutError: If nothing arrived within `timeout` seconds.
            ConnectionFailedError: If the connection dropped.
        """
        try:
            msg = await self._client.wait_server_push(timeout=timeout)
        except (OSError, aioimaplib.Abort) as e:
            raise ConnectionFailedError(f"IDLE connection lost: {e}") from e

        if msg == aioimaplib.STOP_WAIT_SERVER_PUSH:
            return []
        notifications = [_to_text(line) for line in msg]
        logger.debug(f"IDLE notifications: {notifications}")
        return notifications

    async def idle_done(self) -> None:
        """Exit IDLE mode and wait for the server to confirm."""
        if self._client is None or self._idle_task is None:
            return
        try:
            self._client.idle_done()
            await asyncio.wait_for(self._idle_task, timeout=self.TIMEOUT)
        except (asyncio.TimeoutError, OSError, aioimaplib.Abort) as e:
            logger.warning(f"Error ending IDLE: {e}")
        finally:
            self._idle_task = None
