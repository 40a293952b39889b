"""Minimal IMAP4rev1 client speaking the wire protocol over a raw socket.

Only the handful of commands needed to read newsletters are supported:
LOGIN, SELECT, SEARCH, FETCH, STORE, LOGOUT and STARTTLS. Exactly one
command is in flight at a time; every failure is raised as an ``ImapError``
subclass carrying a stable ``kind`` string.
"""

from __future__ import annotations

import logging
import re
import socket
import ssl
import time
from enum import Enum
from typing import Callable


logger = logging.getLogger(__name__)

ENCRYPTION_SSL = "ssl"
ENCRYPTION_TLS = "tls"
ENCRYPTION_NONE = "none"
SUPPORTED_ENCRYPTION_MODES = (ENCRYPTION_SSL, ENCRYPTION_TLS, ENCRYPTION_NONE)
DEFAULT_CONNECT_TIMEOUT_SECONDS = 30.0
DEFAULT_COMMAND_TIMEOUT_SECONDS = 30.0
DEFAULT_FETCH_TIMEOUT_SECONDS = 60.0
COMMAND_TAG_PREFIX = "A"
FETCH_TAG_PREFIX = "F"
FETCH_TAG_START = 1000
RECV_CHUNK_BYTES = 8192
# Same ceiling imaplib uses for a single response line.
MAX_LINE_BYTES = 1_000_000
TRACE_CLIENT = "C"
TRACE_SERVER = "S"
LITERAL_PATTERN = re.compile(rb"\{(\d+)\}\s*$")
SEARCH_RESPONSE_PATTERN = re.compile(r"^\*\s+SEARCH\b(?P<numbers>[\d\s]*)$", re.IGNORECASE)
EXISTS_RESPONSE_PATTERN = re.compile(r"^\*\s+(?P<count>\d+)\s+EXISTS\b", re.IGNORECASE)
SECTION_PATTERN = re.compile(r"^(?:HEADER|\d+(?:\.\d+)*)?$")

TraceHook = Callable[[str, str], None]
SocketFactory = Callable[[tuple[str, int], float], socket.socket]


class ImapError(Exception):
    """Base class for IMAP network and protocol failures."""

    kind = "imap_error"


class ConnectionFailed(ImapError):
    """Raised when the socket cannot be opened or the greeting is unusable."""

    kind = "connection_failed"


class TlsFailed(ImapError):
    """Raised when the STARTTLS upgrade cannot be completed."""

    kind = "tls_failed"


class AuthFailed(ImapError):
    """Raised when the server rejects LOGIN."""

    kind = "auth_failed"


class ImapCommandError(ImapError):
    """Raised on a tagged NO or BAD completion."""

    kind = "imap_error"

    def __init__(self, line: str) -> None:
        super().__init__(f"IMAP error: {line}")
        self.line = line


class ImapTimeout(ImapError):
    """Raised when the server does not complete a command in time."""

    kind = "timeout"


class ImapReadError(ImapError):
    """Raised when the connection drops or fails while reading a response."""

    kind = "read_error"


class ImapStateError(RuntimeError):
    """Raised when a command is issued in a state that does not allow it."""


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    SELECTED = "selected"
    CLOSED = "closed"


OPEN_STATES = (
    ConnectionState.CONNECTED,
    ConnectionState.AUTHENTICATED,
    ConnectionState.SELECTED,
)
MAILBOX_STATES = (ConnectionState.AUTHENTICATED, ConnectionState.SELECTED)


def quote_imap_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', r"\"")
    return f'"{escaped}"'


def parse_search_response(lines: list[str]) -> list[int]:
    numbers: list[int] = []
    for line in lines:
        match = SEARCH_RESPONSE_PATTERN.match(line.strip())
        if match:
            numbers.extend(int(token) for token in match.group("numbers").split())
    return numbers


def parse_exists_count(lines: list[str]) -> int:
    count = 0
    for line in lines:
        match = EXISTS_RESPONSE_PATTERN.match(line)
        if match:
            count = int(match.group("count"))
    return count


class ImapClient:
    """One IMAP session over a blocking socket.

    The client moves through ``ConnectionState`` values in order:
    DISCONNECTED -> CONNECTED -> AUTHENTICATED -> SELECTED -> CLOSED.
    Commands that need a later state raise ``ImapStateError`` instead of
    reaching the wire. Tag counters belong to the instance, so each session
    starts again at ``A0001`` and ``F1001``.

    ``socket_factory`` and ``ssl_context`` exist so that tests can drive the
    client over ``socket.socketpair()``; ``trace`` receives every protocol
    line as ``(direction, text)`` with LOGIN credentials masked.
    """

    def __init__(
        self,
        host: str,
        port: int,
        encryption: str = ENCRYPTION_SSL,
        *,
        socket_factory: SocketFactory | None = None,
        ssl_context: ssl.SSLContext | None = None,
        trace: TraceHook | None = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
    ) -> None:
        if encryption not in SUPPORTED_ENCRYPTION_MODES:
            supported = ", ".join(SUPPORTED_ENCRYPTION_MODES)
            raise ValueError(f"Unsupported encryption mode {encryption!r}. Expected one of: {supported}.")
        self.host = host
        self.port = port
        self.encryption = encryption
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.fetch_timeout = fetch_timeout
        self.state = ConnectionState.DISCONNECTED
        self._socket_factory = socket_factory or socket.create_connection
        self._ssl_context = ssl_context
        self._trace_hook = trace
        self._sock: socket.socket | None = None
        self._buffer = bytearray()
        self._tag_counter = 0
        self._fetch_counter = FETCH_TAG_START

    def __enter__(self) -> "ImapClient":
        return self

    def __exit__(self, *_args) -> None:
        self.logout()

    # Connection lifecycle

    def connect(self) -> None:
        if self.state is not ConnectionState.DISCONNECTED:
            raise ImapStateError(f"Cannot connect from state {self.state.value}.")

        address = (self.host, self.port)
        try:
            sock = self._socket_factory(address, self.connect_timeout)
        except OSError as error:
            self.state = ConnectionState.CLOSED
            raise ConnectionFailed(f"Could not connect to {self.host}:{self.port} - {error}") from error

        if self.encryption == ENCRYPTION_SSL:
            try:
                sock = self._get_ssl_context().wrap_socket(sock, server_hostname=self.host)
            except OSError as error:
                sock.close()
                self.state = ConnectionState.CLOSED
                raise ConnectionFailed(
                    f"Could not establish SSL with {self.host}:{self.port} - {error}"
                ) from error
        self._sock = sock

        deadline = time.monotonic() + self.connect_timeout
        try:
            greeting = self._read_line(deadline).decode("utf-8", errors="replace").rstrip("\r\n")
        except ImapError as error:
            self.close()
            raise ConnectionFailed(f"No server greeting from {self.host}:{self.port} - {error}") from error
        self._trace(TRACE_SERVER, greeting)

        if not greeting.startswith("* OK"):
            self.close()
            raise ConnectionFailed(f"Unexpected server greeting: {greeting.strip()}")
        self.state = ConnectionState.CONNECTED

        if self.encryption == ENCRYPTION_TLS:
            self._start_tls()

    def _start_tls(self) -> None:
        try:
            self.run_command("STARTTLS")
        except ImapError as error:
            self.close()
            raise TlsFailed(f"STARTTLS was not accepted: {error}") from error

        if self._buffer:
            # Anything sent before the handshake could be injected plaintext.
            self.close()
            raise TlsFailed("Server sent unexpected data before the TLS handshake.")

        if self._sock is None:
            raise TlsFailed("Connection closed before the TLS handshake.")
        try:
            self._sock.settimeout(self.connect_timeout)
            self._sock = self._get_ssl_context().wrap_socket(self._sock, server_hostname=self.host)
        except OSError as error:
            self.close()
            raise TlsFailed(f"Failed to enable TLS encryption: {error}") from error

    def _get_ssl_context(self) -> ssl.SSLContext:
        if self._ssl_context is None:
            self._ssl_context = ssl.create_default_context()
        return self._ssl_context

    def login(self, username: str, password: str) -> None:
        self._require_state("LOGIN", ConnectionState.CONNECTED)
        command = f"LOGIN {quote_imap_string(username)} {quote_imap_string(password)}"
        masked = f'LOGIN {quote_imap_string(username)} "***"'
        try:
            self.run_command(command, trace_text=masked)
        except ImapCommandError as error:
            self.close()
            raise AuthFailed("Authentication failed. Check your username and password.") from error
        self.state = ConnectionState.AUTHENTICATED

    def logout(self) -> None:
        """Send LOGOUT when a session is open, then close the socket.

        Safe to call more than once and on any exit path.
        """
        if self.state in OPEN_STATES:
            try:
                self.run_command("LOGOUT")
            except ImapError as error:
                logger.debug("LOGOUT did not complete cleanly: %s", error)
        self.close()

    def close(self) -> None:
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError as error:
                logger.debug("Socket close failed: %s", error)
        self._sock = None
        self._buffer.clear()
        self.state = ConnectionState.CLOSED

    # Commands

    def run_command(
        self,
        command: str,
        *,
        timeout: float | None = None,
        trace_text: str | None = None,
    ) -> list[str]:
        """Send one tagged command and collect its response lines.

        Returns every line received, the tagged OK completion included, with
        line terminators removed.
        """
        if self.state not in OPEN_STATES:
            raise ImapStateError(f"Cannot send {command.split(' ', 1)[0]} in state {self.state.value}.")

        tag = self._next_tag()
        self._send_line(f"{tag} {command}", trace_text=f"{tag} {trace_text or command}")

        deadline = time.monotonic() + (timeout if timeout is not None else self.command_timeout)
        ok_prefix = f"{tag} OK"
        failure_prefixes = (f"{tag} NO", f"{tag} BAD")
        lines: list[str] = []
        while True:
            try:
                raw = self._read_response_line(deadline)
            except ImapTimeout as error:
                raise ImapTimeout(f"IMAP command timed out: {trace_text or command}") from error
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            self._trace(TRACE_SERVER, line)
            lines.append(line)
            if line.startswith(ok_prefix):
                return lines
            if line.startswith(failure_prefixes):
                raise ImapCommandError(line.strip())

    def select(self, folder: str) -> list[str]:
        self._require_state("SELECT", *MAILBOX_STATES)
        lines = self.run_command(f"SELECT {quote_imap_string(folder)}")
        self.state = ConnectionState.SELECTED
        return lines

    def search(self, criteria: str) -> list[int]:
        self._require_state("SEARCH", ConnectionState.SELECTED)
        return parse_search_response(self.run_command(f"SEARCH {criteria}"))

    def store_seen(self, sequence_number: int) -> list[str]:
        self._require_state("STORE", ConnectionState.SELECTED)
        return self.run_command(f"STORE {sequence_number} +FLAGS (\\Seen)")

    def fetch_section(self, sequence_number: int, section: str = "") -> bytes:
        """Fetch ``BODY[section]`` of one message.

        ``section`` is ``HEADER``, ``""`` for the whole message, or a MIME
        part number such as ``1.2``. The payload is the first IMAP literal in
        the response. An empty result means nothing was fetched within the
        fetch timeout; it is not an error.
        """
        self._require_state("FETCH", ConnectionState.SELECTED)
        if not SECTION_PATTERN.match(section):
            raise ValueError(f"Unsupported FETCH section {section!r}.")

        tag = self._next_fetch_tag()
        self._send_line(f"{tag} FETCH {sequence_number} BODY[{section}]")

        deadline = time.monotonic() + self.fetch_timeout
        completion_prefixes = (f"{tag} OK", f"{tag} NO", f"{tag} BAD")
        payload = b""
        literal_seen = False
        try:
            while True:
                raw = self._read_line(deadline)
                if not literal_seen:
                    match = LITERAL_PATTERN.search(raw)
                    if match:
                        size = int(match.group(1))
                        self._trace(TRACE_SERVER, raw.decode("utf-8", errors="replace").rstrip("\r\n"))
                        payload = self._read_exact(size, deadline)
                        literal_seen = True
                        self._trace(TRACE_SERVER, f"<{size} literal bytes>")
                        continue
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                self._trace(TRACE_SERVER, line)
                if line.startswith(completion_prefixes):
                    break
        except (ImapTimeout, ImapReadError) as error:
            logger.warning(
                "FETCH %s BODY[%s] ended before completion: %s",
                sequence_number,
                section,
                error,
            )
        return payload

    # Wire helpers

    def _require_state(self, command: str, *allowed: ConnectionState) -> None:
        if self.state not in allowed:
            allowed_text = ", ".join(state.value for state in allowed)
            raise ImapStateError(
                f"{command} requires state {allowed_text}; connection is {self.state.value}."
            )

    def _next_tag(self) -> str:
        self._tag_counter += 1
        return f"{COMMAND_TAG_PREFIX}{self._tag_counter:04d}"

    def _next_fetch_tag(self) -> str:
        self._fetch_counter += 1
        return f"{FETCH_TAG_PREFIX}{self._fetch_counter}"

    def _trace(self, direction: str, text: str) -> None:
        if self._trace_hook is not None:
            self._trace_hook(direction, text)

    def _send_line(self, text: str, trace_text: str | None = None) -> None:
        if self._sock is None:
            raise ImapStateError("Connection is not open.")
        self._trace(TRACE_CLIENT, trace_text or text)
        try:
            self._sock.settimeout(self.command_timeout)
            self._sock.sendall(text.encode("utf-8") + b"\r\n")
        except OSError as error:
            raise ConnectionFailed(f"Failed to write IMAP command: {error}") from error

    def _fill_buffer(self, deadline: float) -> None:
        if self._sock is None:
            raise ImapReadError("Connection is not open.")
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ImapTimeout("Timed out waiting for the server.")
        try:
            self._sock.settimeout(remaining)
            chunk = self._sock.recv(RECV_CHUNK_BYTES)
        except TimeoutError as error:
            raise ImapTimeout("Timed out waiting for the server.") from error
        except OSError as error:
            raise ImapReadError(f"Failed to read IMAP response: {error}") from error
        if not chunk:
            raise ImapReadError("Failed to read IMAP response: connection closed by server.")
        self._buffer.extend(chunk)

    def _read_line(self, deadline: float) -> bytes:
        while True:
            newline_index = self._buffer.find(b"\n")
            if newline_index >= 0:
                line = bytes(self._buffer[: newline_index + 1])
                del self._buffer[: newline_index + 1]
                return line
            if len(self._buffer) > MAX_LINE_BYTES:
                raise ImapReadError("IMAP response line exceeds the maximum length.")
            self._fill_buffer(deadline)

    def _read_exact(self, size: int, deadline: float) -> bytes:
        while len(self._buffer) < size:
            self._fill_buffer(deadline)
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    def _read_response_line(self, deadline: float) -> bytes:
        # Literals inside ordinary responses are folded into their line.
        line = self._read_line(deadline)
        match = LITERAL_PATTERN.search(line)
        while match:
            literal = self._read_exact(int(match.group(1)), deadline)
            remainder = self._read_line(deadline)
            line = line + literal + remainder
            match = LITERAL_PATTERN.search(remainder)
        return line
