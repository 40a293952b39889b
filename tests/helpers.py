from __future__ import annotations

import socket

from imap_wire import ENCRYPTION_NONE, ImapClient
from newsletter_poster import PostCreationError, PostDraft, Settings


GREETING = b"* OK [CAPABILITY IMAP4rev1 STARTTLS] test server ready\r\n"


def make_settings(
    *,
    host: str = "imap.example.test",
    port: int = 143,
    username: str = "newsletters@example.test",
    password: str = "secret",
    folder: str = "INBOX",
    filter_by_sender: bool = False,
    qualified_senders: tuple[str, ...] = (),
    post_status: str = "draft",
    post_category: int = 0,
    webmaster_email: str = "",
) -> Settings:
    return Settings(
        host=host,
        port=port,
        encryption=ENCRYPTION_NONE,
        username=username,
        password=password,
        folder=folder,
        filter_by_sender=filter_by_sender,
        qualified_senders=qualified_senders,
        post_status=post_status,
        post_category=post_category,
        webmaster_email=webmaster_email,
    )


def tagged(tag: str, status: str = "OK", text: str = "completed") -> bytes:
    return f"{tag} {status} {text}\r\n".encode()


def fetch_literal(tag: str, sequence_number: int, section: str, payload: bytes) -> bytes:
    opening = f"* {sequence_number} FETCH (BODY[{section}] {{{len(payload)}}}\r\n".encode()
    return opening + payload + b")\r\n" + tagged(tag, text="FETCH completed")


def select_response(tag: str, exists: int = 1) -> bytes:
    return f"* {exists} EXISTS\r\n* 0 RECENT\r\n".encode() + tagged(tag, text="[READ-WRITE] SELECT completed")


def search_response(tag: str, *numbers: int) -> bytes:
    listed = "".join(f" {number}" for number in numbers)
    return f"* SEARCH{listed}\r\n".encode() + tagged(tag, text="SEARCH completed")


def logout_response(tag: str) -> bytes:
    return b"* BYE logging out\r\n" + tagged(tag, text="LOGOUT completed")


def newsletter_header(message_id: str, subject: str = "Fwd: Weekly Update") -> bytes:
    return (
        "From: Forwarder <forwarder@example.test>\r\n"
        f"Subject: {subject}\r\n"
        "Date: Tue, 17 Feb 2026 09:30:00 -0500\r\n"
        f"Message-ID: {message_id}\r\n"
        "\r\n"
    ).encode()


def html_message(message_id: str, html: str, subject: str = "Fwd: Weekly Update") -> bytes:
    return (
        "From: Forwarder <forwarder@example.test>\r\n"
        f"Subject: {subject}\r\n"
        f"Message-ID: {message_id}\r\n"
        "MIME-Version: 1.0\r\n"
        'Content-Type: text/html; charset="utf-8"\r\n'
        "\r\n"
        f"{html}\r\n"
    ).encode()


def text_message(message_id: str, text: str = "Plain text only.") -> bytes:
    return (
        "From: Forwarder <forwarder@example.test>\r\n"
        "Subject: Plain\r\n"
        f"Message-ID: {message_id}\r\n"
        "Content-Type: text/plain; charset=us-ascii\r\n"
        "\r\n"
        f"{text}\r\n"
    ).encode()


class ScriptedServer:
    """Fake IMAP server on one end of a socketpair.

    Every scripted response is written up front; the client reads them in
    order as it issues commands. ``sent_lines`` returns what the client wrote
    once it has closed its end.
    """

    def __init__(self, *responses: bytes, hang_up: bool = False) -> None:
        self.client_sock, self.server_sock = socket.socketpair()
        for response in responses:
            self.server_sock.sendall(response)
        if hang_up:
            self.server_sock.shutdown(socket.SHUT_WR)

    def socket_factory(self, _address: tuple[str, int], _timeout: float) -> socket.socket:
        return self.client_sock

    def client(self, encryption: str = ENCRYPTION_NONE, **kwargs) -> ImapClient:
        kwargs.setdefault("command_timeout", 1.0)
        kwargs.setdefault("fetch_timeout", 1.0)
        return ImapClient("imap.example.test", 143, encryption, socket_factory=self.socket_factory, **kwargs)

    def client_factory(self, _settings: Settings) -> ImapClient:
        return self.client()

    def sent_lines(self) -> list[str]:
        self.server_sock.settimeout(0.5)
        chunks: list[bytes] = []
        while True:
            try:
                chunk = self.server_sock.recv(65536)
            except TimeoutError:
                break
            if not chunk:
                break
            chunks.append(chunk)
        self.server_sock.close()
        data = b"".join(chunks).decode("utf-8")
        return [line for line in data.split("\r\n") if line]


class RecordingSink:
    def __init__(self, fail_titles: set[str] | None = None) -> None:
        self.fail_titles = fail_titles or set()
        self.drafts: list[PostDraft] = []

    def create_post(self, draft: PostDraft) -> int:
        if draft.title in self.fail_titles:
            raise PostCreationError(f"rejected {draft.title}")
        self.drafts.append(draft)
        return 100 + len(self.drafts)


class MemoryLedger:
    def __init__(self, processed_ids: list[str] | None = None) -> None:
        self.processed_ids = list(processed_ids or [])
        self.save_calls = 0
        self.load_calls = 0

    def load(self) -> list[str]:
        self.load_calls += 1
        return list(self.processed_ids)

    def save(self, processed_ids: list[str]) -> None:
        self.save_calls += 1
        self.processed_ids = list(processed_ids)
