#!/usr/bin/env python3
"""Newsletter Poster: turn newsletter emails from an IMAP mailbox into posts."""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import sys
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Callable, Mapping, Protocol

from html_rewrite import clean_html, extract_forwarded_content
from imap_wire import (
    ENCRYPTION_SSL,
    SUPPORTED_ENCRYPTION_MODES,
    ImapClient,
    ImapCommandError,
    ImapError,
    TraceHook,
    parse_exists_count,
    quote_imap_string,
)
from mime_extract import decode_mime_header, extract_html, parse_headers


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "newsletter_poster.json"
DEFAULT_LEDGER_FILE = ".newsletter_poster_ledger.json"
DEFAULT_POSTS_DIR = "posts"
DEFAULT_IMAP_PORT = 993
DEFAULT_FOLDER = "INBOX"
POST_STATUS_DRAFT = "draft"
POST_STATUS_PUBLISH = "publish"
SUPPORTED_POST_STATUSES = (POST_STATUS_DRAFT, POST_STATUS_PUBLISH)
DEFAULT_SUBJECT = "Newsletter"
MAX_PROCESSED_IDS = 500
ENV_IMAP_USERNAME = "NEWSLETTER_POSTER_IMAP_USERNAME"
ENV_IMAP_PASSWORD = "NEWSLETTER_POSTER_IMAP_PASSWORD"
NO_NEW_MAIL_MESSAGE = "No new newsletter emails found."
FORWARD_PREFIX_PATTERN = re.compile(r"^(?:\s*(?:Fwd?|Re)\s*:\s*)+", re.IGNORECASE)
POST_FILE_PATTERN = re.compile(r"^post-(?P<id>\d+)\.json$")


class MissingSettings(ValueError):
    """Raised when host, username or password is not configured."""

    kind = "missing_settings"


class PostCreationError(Exception):
    """Raised by a content sink when one post cannot be created."""


@dataclass(frozen=True)
class Settings:
    host: str = ""
    port: int = DEFAULT_IMAP_PORT
    encryption: str = ENCRYPTION_SSL
    username: str = ""
    password: str = ""
    folder: str = DEFAULT_FOLDER
    filter_by_sender: bool = False
    qualified_senders: tuple[str, ...] = ()
    post_status: str = POST_STATUS_DRAFT
    post_category: int = 0
    webmaster_email: str = ""


@dataclass(frozen=True)
class NewsletterItem:
    message_id: str
    subject: str
    html: str
    raw_date: str
    sequence_number: int


@dataclass(frozen=True)
class PostDraft:
    title: str
    html: str
    status: str
    category: int


class LedgerStore(Protocol):
    def load(self) -> list[str]: ...

    def save(self, processed_ids: list[str]) -> None: ...


class ContentSink(Protocol):
    def create_post(self, draft: PostDraft) -> int: ...


ClientFactory = Callable[[Settings], ImapClient]
Notifier = Callable[[int, str, str], None]


# Configuration


def parse_boolean_config(raw_value: object, source: str, default: bool) -> bool:
    if raw_value is None:
        return default
    if isinstance(raw_value, bool):
        return raw_value
    raise ValueError(f"{source} must be a boolean.")


def parse_string_config(raw_value: object, source: str, default: str) -> str:
    if raw_value is None:
        return default
    if not isinstance(raw_value, str):
        raise ValueError(f"{source} must be a string.")
    return raw_value.strip()


def parse_nonempty_string_config(raw_value: object, source: str, default: str) -> str:
    if raw_value is None:
        return default
    cleaned = parse_string_config(raw_value, source, default)
    if not cleaned:
        raise ValueError(f"{source} cannot be empty.")
    return cleaned


def parse_choice_config(raw_value: object, source: str, default: str, choices: tuple[str, ...]) -> str:
    value = parse_nonempty_string_config(raw_value, source, default).lower()
    if value not in choices:
        raise ValueError(f"{source} must be one of: {', '.join(choices)}.")
    return value


def parse_port_config(raw_value: object, source: str, default: int) -> int:
    if raw_value is None:
        return default
    if isinstance(raw_value, str) and raw_value.strip().isdigit():
        raw_value = int(raw_value.strip())
    if isinstance(raw_value, bool) or not isinstance(raw_value, int):
        raise ValueError(f"{source} must be an integer.")
    if raw_value < 1 or raw_value > 65535:
        raise ValueError(f"{source} must be between 1 and 65535.")
    return raw_value


def parse_non_negative_int_config(raw_value: object, source: str, default: int) -> int:
    if raw_value is None:
        return default
    if isinstance(raw_value, bool) or not isinstance(raw_value, int):
        raise ValueError(f"{source} must be an integer.")
    if raw_value < 0:
        raise ValueError(f"{source} must be >= 0.")
    return raw_value


def parse_sender_list(raw_value: object, source: str) -> tuple[str, ...]:
    if raw_value is None:
        return ()
    if isinstance(raw_value, str):
        values: list[object] = raw_value.splitlines()
    elif isinstance(raw_value, list):
        values = raw_value
    else:
        raise ValueError(f"{source} must be a list of addresses or a newline-separated string.")

    senders: list[str] = []
    for index, value in enumerate(values):
        if not isinstance(value, str):
            raise ValueError(f"{source}[{index}] must be a string.")
        cleaned = value.strip()
        if cleaned and cleaned not in senders:
            senders.append(cleaned)
    return tuple(senders)


def read_config_section(raw: Mapping[str, object], name: str, path: Path) -> Mapping[str, object]:
    section = raw.get(name, {})
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ValueError(f"Config file {path} has invalid {name} section.")
    return section


def load_settings(path: Path, env: Mapping[str, str] | None = None) -> Settings:
    """Read settings from a JSON config file, then apply env overrides.

    A missing file yields defaults; connection fields are only checked for
    presence when a connection is attempted.
    """
    if env is None:
        env = os.environ
    defaults = Settings()
    raw: Mapping[str, object] = {}
    if path.exists():
        try:
            with path.open("r", encoding="utf-8") as file:
                loaded = json.load(file)
        except (OSError, json.JSONDecodeError) as error:
            raise ValueError(f"Could not read config file {path}: {error}") from error
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file {path} must contain a JSON object.")
        raw = loaded

    imap = read_config_section(raw, "imap", path)
    senders = read_config_section(raw, "senders", path)
    posts = read_config_section(raw, "posts", path)

    username = parse_string_config(imap.get("username"), "imap.username", defaults.username)
    password = imap.get("password")
    if password is not None and not isinstance(password, str):
        raise ValueError("imap.password must be a string.")

    env_username = env.get(ENV_IMAP_USERNAME, "").strip()
    env_password = env.get(ENV_IMAP_PASSWORD, "")
    if env_username:
        username = env_username
    if env_password:
        password = env_password

    return Settings(
        host=parse_string_config(imap.get("host"), "imap.host", defaults.host),
        port=parse_port_config(imap.get("port"), "imap.port", defaults.port),
        encryption=parse_choice_config(
            imap.get("encryption"),
            "imap.encryption",
            defaults.encryption,
            SUPPORTED_ENCRYPTION_MODES,
        ),
        username=username,
        password=password or "",
        folder=parse_nonempty_string_config(imap.get("folder"), "imap.folder", defaults.folder),
        filter_by_sender=parse_boolean_config(
            senders.get("filter_by_sender"),
            "senders.filter_by_sender",
            defaults.filter_by_sender,
        ),
        qualified_senders=parse_sender_list(senders.get("qualified_senders"), "senders.qualified_senders"),
        post_status=parse_choice_config(
            posts.get("status"),
            "posts.status",
            defaults.post_status,
            SUPPORTED_POST_STATUSES,
        ),
        post_category=parse_non_negative_int_config(
            posts.get("category"),
            "posts.category",
            defaults.post_category,
        ),
        webmaster_email=parse_string_config(
            posts.get("webmaster_email"),
            "posts.webmaster_email",
            defaults.webmaster_email,
        ),
    )


def require_connection_settings(settings: Settings) -> None:
    missing = [
        name
        for name, value in (
            ("host", settings.host),
            ("username", settings.username),
            ("password", settings.password),
        )
        if not value
    ]
    if missing:
        raise MissingSettings(f"IMAP settings are not configured (missing {', '.join(missing)}).")


def active_senders(settings: Settings) -> tuple[str, ...]:
    if not settings.filter_by_sender:
        return ()
    return settings.qualified_senders


# Processed-ID ledger


def trim_processed_ids(processed_ids: list[str], max_items: int = MAX_PROCESSED_IDS) -> list[str]:
    if len(processed_ids) <= max_items:
        return list(processed_ids)
    return processed_ids[-max_items:]


class JsonLedgerStore:
    """Message-IDs already turned into posts, kept in a JSON file.

    There is no locking: one ingestion cycle reads the file at its start and
    writes it once at its end.
    """

    def __init__(self, path: Path, max_items: int = MAX_PROCESSED_IDS) -> None:
        self.path = path
        self.max_items = max_items

    def load(self) -> list[str]:
        if not self.path.exists():
            return []

        try:
            with self.path.open("r", encoding="utf-8") as file:
                raw = json.load(file)
        except (OSError, json.JSONDecodeError) as error:
            logger.warning("Ignoring unreadable ledger %s: %s", self.path, error)
            return []

        if not isinstance(raw, dict):
            return []
        processed_ids = raw.get("processed_ids")
        if not isinstance(processed_ids, list):
            return []
        return [value for value in processed_ids if isinstance(value, str) and value]

    def save(self, processed_ids: list[str]) -> None:
        payload = {"processed_ids": trim_processed_ids(processed_ids, self.max_items)}
        with self.path.open("w", encoding="utf-8") as file:
            json.dump(payload, file, indent=2)

    def reset(self) -> bool:
        if not self.path.exists():
            return False
        self.path.unlink()
        return True


# Content sink


def wrap_html_block(html: str) -> str:
    return f"<!-- wp:html -->\n{html}\n<!-- /wp:html -->"


class DirectoryPostSink:
    """Writes each post as ``post-NNNNN.json`` in a directory.

    Stands in for a content-management system: the record carries the
    title, status, category, the HTML wrapped in a custom-HTML block and a
    ``login_required`` flag.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def _next_post_id(self) -> int:
        highest = 0
        for path in self.directory.iterdir():
            match = POST_FILE_PATTERN.match(path.name)
            if match:
                highest = max(highest, int(match.group("id")))
        return highest + 1

    def create_post(self, draft: PostDraft) -> int:
        if not draft.title:
            raise PostCreationError("Post title cannot be empty.")
        self.directory.mkdir(parents=True, exist_ok=True)
        post_id = self._next_post_id()
        record = {
            "id": post_id,
            "title": draft.title,
            "status": draft.status,
            "category": draft.category or None,
            "content": wrap_html_block(draft.html),
            "meta": {"login_required": True},
            "created_at": datetime.now().astimezone().isoformat(timespec="seconds"),
        }
        path = self.directory / f"post-{post_id:05d}.json"
        with path.open("x", encoding="utf-8") as file:
            json.dump(record, file, indent=2)
        return post_id


def format_notification(post_id: int, title: str, status: str) -> tuple[str, str]:
    subject = f"[Newsletter Poster] New newsletter post created: {title}"
    body = (
        "A new newsletter post has been created.\n\n"
        f"Title: {title}\n"
        f"Status: {status}\n"
        f"Post ID: {post_id}\n"
    )
    return subject, body


# Mailbox scanner


def create_imap_client(settings: Settings, trace: TraceHook | None = None) -> ImapClient:
    return ImapClient(settings.host, settings.port, settings.encryption, trace=trace)


def open_session(settings: Settings, client_factory: ClientFactory) -> ImapClient:
    require_connection_settings(settings)
    client = client_factory(settings)
    try:
        client.connect()
        client.login(settings.username, settings.password)
    except ImapError:
        client.close()
        raise
    return client


def search_candidates(client: ImapClient, settings: Settings) -> list[int]:
    senders = active_senders(settings)
    if senders:
        found: set[int] = set()
        for sender in senders:
            try:
                found.update(client.search(f"FROM {quote_imap_string(sender)}"))
            except ImapCommandError as error:
                logger.warning("SEARCH FROM %s failed, skipping sender: %s", sender, error)
        return sorted(found)

    try:
        return sorted(set(client.search("ALL")))
    except ImapCommandError as error:
        logger.warning("SEARCH ALL failed, treating mailbox as empty: %s", error)
        return []


def mark_seen(client: ImapClient, sequence_number: int) -> None:
    try:
        client.store_seen(sequence_number)
    except ImapError as error:
        logger.warning("Message #%s - could not mark as seen: %s", sequence_number, error)


def fetch_newsletter_item(
    client: ImapClient,
    sequence_number: int,
    processed_ids: set[str],
) -> NewsletterItem | None:
    header_data = client.fetch_section(sequence_number, "HEADER")
    if not header_data:
        logger.warning("Message #%s - header fetch returned empty, skipping", sequence_number)
        return None

    headers = parse_headers(header_data)
    message_id = headers.get("message-id", "")
    if message_id and message_id in processed_ids:
        logger.info("Message #%s - already processed (%s), skipping", sequence_number, message_id)
        return None

    subject = decode_mime_header(headers.get("subject") or DEFAULT_SUBJECT)
    logger.debug("Message #%s - Message-ID %r, subject %r", sequence_number, message_id, subject)

    body_data = client.fetch_section(sequence_number, "")
    html = ""
    if body_data:
        html = extract_html(body_data)
    else:
        logger.warning("Message #%s - body fetch returned empty", sequence_number)

    item = None
    if html:
        item = NewsletterItem(
            message_id=message_id,
            subject=subject,
            html=html,
            raw_date=headers.get("date", ""),
            sequence_number=sequence_number,
        )
    else:
        logger.info("Message #%s - no HTML content found, skipping", sequence_number)

    mark_seen(client, sequence_number)
    return item


def fetch_newsletters(
    settings: Settings,
    ledger: LedgerStore,
    client_factory: ClientFactory = create_imap_client,
    processed_ids: list[str] | None = None,
) -> list[NewsletterItem]:
    """Scan the configured folder and extract newsletters not yet ledgered.

    Candidates are found by Message-ID rather than the UNSEEN flag because
    the mailbox may also be read from another client. The connection is
    logged out and closed on every exit path. ``processed_ids`` lets a caller
    that already loaded the ledger pass it in instead of reading it again.
    """
    if processed_ids is None:
        processed_ids = ledger.load()
    seen_ids = set(processed_ids)
    client = open_session(settings, client_factory)
    with client:
        client.select(settings.folder)
        candidates = search_candidates(client, settings)
        logger.info("Search returned %s message(s)", len(candidates))
        if not candidates:
            return []

        items: list[NewsletterItem] = []
        for sequence_number in candidates:
            item = fetch_newsletter_item(client, sequence_number, seen_ids)
            if item is not None:
                items.append(item)
        return items


def test_connection(settings: Settings, client_factory: ClientFactory = create_imap_client) -> str:
    client = open_session(settings, client_factory)
    with client:
        count = parse_exists_count(client.select(settings.folder))
    return f"Connection successful! Mailbox has {count} message(s)."


# Ingestion


def clean_subject(subject: str) -> str:
    return FORWARD_PREFIX_PATTERN.sub("", subject).strip()


def build_post_draft(item: NewsletterItem, settings: Settings) -> PostDraft:
    html = clean_html(extract_forwarded_content(item.html))
    return PostDraft(
        title=clean_subject(item.subject) or DEFAULT_SUBJECT,
        html=html,
        status=settings.post_status,
        category=settings.post_category,
    )


def run_ingestion_cycle(
    settings: Settings,
    ledger: LedgerStore,
    sink: ContentSink,
    notify: Notifier | None = None,
    client_factory: ClientFactory = create_imap_client,
) -> str:
    """Fetch new newsletters, create one post each and update the ledger.

    Connection, authentication and protocol errors propagate unchanged. A
    post that cannot be created is logged and skipped, and its Message-ID is
    not ledgered. An unexpected error from the sink or the notification hook
    propagates, but the posts created before it are still ledgered. Cycles
    must not overlap: the ledger is read once at the start and written once
    at the end with no locking.
    """
    processed_ids = ledger.load()
    items = fetch_newsletters(settings, ledger, client_factory, processed_ids=processed_ids)
    if not items:
        return NO_NEW_MAIL_MESSAGE

    created_count = 0
    try:
        for item in items:
            draft = build_post_draft(item, settings)
            try:
                post_id = sink.create_post(draft)
            except (PostCreationError, OSError) as error:
                logger.error('Failed to create post for "%s": %s', item.subject, error)
                continue

            if item.message_id:
                processed_ids.append(item.message_id)
            created_count += 1

            if notify is not None:
                try:
                    notify(post_id, draft.title, draft.status)
                except OSError as error:
                    logger.warning("Notification for post %s failed: %s", post_id, error)
    finally:
        ledger.save(trim_processed_ids(processed_ids))
    message = f"Processed {created_count} newsletter email(s)."
    logger.info(message)
    return message


# Command line


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Newsletter Poster checks an IMAP mailbox for newsletter emails and "
            "creates one post per new newsletter. Run it from cron to poll."
        )
    )
    parser.add_argument(
        "--config-file",
        default=DEFAULT_CONFIG_FILE,
        help=f"Path to settings JSON file (default: {DEFAULT_CONFIG_FILE}).",
    )
    parser.add_argument(
        "--ledger-file",
        default=DEFAULT_LEDGER_FILE,
        help=f"Path to processed Message-ID ledger (default: {DEFAULT_LEDGER_FILE}).",
    )
    parser.add_argument(
        "--posts-dir",
        default=DEFAULT_POSTS_DIR,
        help=f"Directory where created posts are written (default: {DEFAULT_POSTS_DIR}).",
    )
    parser.add_argument(
        "--test-connection",
        action="store_true",
        help="Only log in, select the folder and report its message count.",
    )
    parser.add_argument(
        "--trace",
        action="store_true",
        help="Print every IMAP protocol line to stderr (passwords masked).",
    )
    parser.add_argument(
        "--reset-ledger",
        action="store_true",
        help="Delete the ledger file so every newsletter is treated as new, then exit.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log per-message progress.",
    )
    return parser.parse_args(argv)


def print_trace(direction: str, text: str) -> None:
    print(f"{direction}: {text}", file=sys.stderr)


def build_cli_notifier(settings: Settings) -> Notifier | None:
    if not settings.webmaster_email:
        return None

    def notify(post_id: int, title: str, status: str) -> None:
        subject, _body = format_notification(post_id, title, status)
        print(f"Notify {settings.webmaster_email}: {subject} (status {status})")

    return notify


def cli_option_was_set(option_name: str, argv: list[str]) -> bool:
    option_prefix = f"{option_name}="
    return any(arg == option_name or arg.startswith(option_prefix) for arg in argv)


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ledger = JsonLedgerStore(Path(args.ledger_file))

    if args.reset_ledger:
        disallowed_with_reset = ["--config-file", "--posts-dir", "--test-connection", "--trace"]
        conflicting_options = [opt for opt in disallowed_with_reset if cli_option_was_set(opt, argv)]
        if conflicting_options:
            options_text = ", ".join(conflicting_options)
            print(
                "Invalid arguments: --reset-ledger cannot be combined with "
                f"{options_text}. Use only --reset-ledger and optional --ledger-file.",
                file=sys.stderr,
            )
            return 2

        try:
            if ledger.reset():
                print(f"Reset complete. Removed ledger file: {ledger.path}")
            else:
                print(f"Reset complete. Ledger file does not exist: {ledger.path}")
        except OSError as error:
            print(f"Could not reset ledger at {ledger.path}: {error}", file=sys.stderr)
            return 1
        return 0

    try:
        settings = load_settings(Path(args.config_file))
    except ValueError as error:
        print(error, file=sys.stderr)
        return 2

    client_factory = partial(create_imap_client, trace=print_trace if args.trace else None)

    try:
        if args.test_connection:
            print(test_connection(settings, client_factory))
            return 0

        started_at = datetime.now().astimezone().isoformat(timespec="seconds")
        print(f"Checking {settings.folder} on {settings.host}:{settings.port} at {started_at}")
        summary = run_ingestion_cycle(
            settings,
            ledger,
            DirectoryPostSink(Path(args.posts_dir)),
            notify=build_cli_notifier(settings),
            client_factory=client_factory,
        )
    except MissingSettings as error:
        print(error, file=sys.stderr)
        return 2
    except ImapError as error:
        print(f"IMAP error ({error.kind}): {error}", file=sys.stderr)
        return 1
    except OSError as error:
        print(f"Network or file error: {error}", file=sys.stderr)
        return 1

    print(summary)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
