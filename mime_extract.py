"""MIME parsing for newsletter messages fetched over IMAP.

Raw messages are handled as latin-1 text so that every byte maps to exactly
one character; part bodies are turned back into bytes before transfer
decoding and are only decoded with their declared charset at the end.
"""

from __future__ import annotations

import base64
import binascii
import logging
import quopri
import re


logger = logging.getLogger(__name__)

RAW_TEXT_ENCODING = "latin-1"
DEFAULT_CHARSET = "utf-8"
MAX_MULTIPART_DEPTH = 10
TRANSFER_ENCODING_BASE64 = "base64"
TRANSFER_ENCODING_QUOTED_PRINTABLE = "quoted-printable"
HEADER_BODY_SEPARATOR = re.compile(r"\r?\n\r?\n")
FOLDED_LINE_PATTERN = re.compile(r"\r?\n[ \t]+")
LINE_BREAK_PATTERN = re.compile(r"\r?\n")
HEADER_LINE_PATTERN = re.compile(r"^(?P<name>[^:]+):\s*(?P<value>.*)$")
CONTENT_TYPE_PATTERN = re.compile(r"^Content-Type:\s*(?P<value>.+)$", re.IGNORECASE | re.MULTILINE)
TRANSFER_ENCODING_PATTERN = re.compile(
    r"^Content-Transfer-Encoding:\s*(?P<value>\S+)",
    re.IGNORECASE | re.MULTILINE,
)
BOUNDARY_PATTERN = re.compile(r'boundary="?(?P<boundary>[^";\s]+)"?', re.IGNORECASE)
CHARSET_PATTERN = re.compile(r'charset="?(?P<charset>[^";\s]+)"?', re.IGNORECASE)
ENCODED_WORD_PATTERN = re.compile(r"=\?(?P<charset>[^?]+)\?(?P<encoding>[QB])\?(?P<text>[^?]*)\?=", re.IGNORECASE)


def decode_transfer_encoding(body: bytes, encoding: str) -> bytes:
    encoding = (encoding or "").strip().lower()
    if encoding == TRANSFER_ENCODING_BASE64:
        try:
            return base64.b64decode(body)
        except (binascii.Error, ValueError) as error:
            logger.warning("Could not decode base64 body: %s", error)
            return b""
    if encoding == TRANSFER_ENCODING_QUOTED_PRINTABLE:
        try:
            return quopri.decodestring(body)
        except (binascii.Error, ValueError) as error:
            logger.warning("Could not decode quoted-printable body: %s", error)
            return b""
    # 7bit, 8bit, binary and anything unrecognised pass through.
    return body


def unfold_headers(header_block: str) -> str:
    return FOLDED_LINE_PATTERN.sub(" ", header_block)


def parse_headers(header_block: str | bytes) -> dict[str, str]:
    """Parse a raw header block into a lowercase-keyed dict.

    Continuation lines are joined to the previous header with a single
    space. Repeated headers keep the last value.
    """
    if isinstance(header_block, bytes):
        header_block = header_block.decode("utf-8", errors="replace")

    headers: dict[str, str] = {}
    for line in LINE_BREAK_PATTERN.split(unfold_headers(header_block)):
        match = HEADER_LINE_PATTERN.match(line)
        if not match:
            continue
        name = match.group("name").strip().lower()
        if not name:
            continue
        headers[name] = match.group("value").strip()
    return headers


def decode_text(data: bytes, charset: str, errors: str = "replace") -> str:
    try:
        return data.decode(charset or DEFAULT_CHARSET, errors=errors)
    except LookupError:
        logger.debug("Unknown charset %r, falling back to %s", charset, DEFAULT_CHARSET)
        return data.decode(DEFAULT_CHARSET, errors=errors)


def _decode_base64_word(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    try:
        return base64.b64decode(padded)
    except (binascii.Error, ValueError):
        return b""


def _decode_encoded_word(match: re.Match[str]) -> str:
    charset = match.group("charset")
    encoding = match.group("encoding").upper()
    text = match.group("text")
    # RFC 2231 language suffix, e.g. utf-8*en.
    charset = charset.split("*", 1)[0]

    if encoding == "B":
        decoded = _decode_base64_word(text)
    else:
        decoded = quopri.decodestring(text.replace("_", " ").encode("ascii", errors="ignore"))
    return decode_text(decoded, charset, errors="ignore")


def decode_mime_header(text: str) -> str:
    """Decode RFC 2047 encoded-words; surrounding plain text is kept as-is."""
    if not text:
        return ""
    return ENCODED_WORD_PATTERN.sub(_decode_encoded_word, text)


def split_message(raw: str) -> tuple[str, str] | None:
    sections = HEADER_BODY_SEPARATOR.split(raw, maxsplit=1)
    if len(sections) < 2:
        return None
    return sections[0], sections[1]


def header_content_type(header_block: str) -> str:
    match = CONTENT_TYPE_PATTERN.search(header_block)
    return match.group("value").strip() if match else ""


def header_transfer_encoding(header_block: str) -> str:
    match = TRANSFER_ENCODING_PATTERN.search(header_block)
    return match.group("value").strip().lower() if match else ""


def content_type_boundary(content_type: str) -> str:
    match = BOUNDARY_PATTERN.search(content_type)
    return match.group("boundary") if match else ""


def content_type_charset(content_type: str) -> str:
    match = CHARSET_PATTERN.search(content_type)
    return match.group("charset") if match else DEFAULT_CHARSET


def decode_html_part(body: str, header_block: str, content_type: str) -> str:
    payload = decode_transfer_encoding(
        body.encode(RAW_TEXT_ENCODING),
        header_transfer_encoding(header_block),
    )
    return decode_text(payload, content_type_charset(content_type))


def extract_html(raw_message: str | bytes) -> str:
    """Return the decoded ``text/html`` body of a raw message, or ``""``."""
    if isinstance(raw_message, bytes):
        raw_message = raw_message.decode(RAW_TEXT_ENCODING)

    split = split_message(raw_message)
    if split is None:
        return ""
    header_block, body = split
    header_block = unfold_headers(header_block)
    content_type = header_content_type(header_block)

    if "text/html" in content_type.lower():
        return decode_html_part(body, header_block, content_type)

    boundary = content_type_boundary(content_type)
    if boundary:
        return find_html_in_multipart(body, boundary)

    return ""


def find_html_in_multipart(body: str, boundary: str, depth: int = 0) -> str:
    """Search a multipart body for its first ``text/html`` part.

    Nested multiparts are searched recursively up to ``MAX_MULTIPART_DEPTH``
    levels.
    """
    if depth >= MAX_MULTIPART_DEPTH:
        logger.warning("Multipart nesting deeper than %s levels; giving up", MAX_MULTIPART_DEPTH)
        return ""

    delimiter = f"--{boundary}"
    trailing_delimiter = re.compile(r"\r?\n--" + re.escape(boundary) + r"--?\s*$")
    for fragment in body.split(delimiter):
        fragment = fragment.lstrip("\r\n")
        # Preamble-only, empty and closing "--" fragments carry no part.
        if not fragment or fragment.startswith("--"):
            continue

        split = split_message(fragment)
        if split is None:
            continue
        part_headers, part_body = split

        part_body = trailing_delimiter.sub("", part_body)
        # The CRLF before the next delimiter belongs to the delimiter.
        if part_body.endswith("\r\n"):
            part_body = part_body[:-2]
        elif part_body.endswith("\n"):
            part_body = part_body[:-1]

        part_headers = unfold_headers(part_headers)
        part_content_type = header_content_type(part_headers)

        if "text/html" in part_content_type.lower():
            return decode_html_part(part_body, part_headers, part_content_type)

        nested_boundary = content_type_boundary(part_content_type)
        if nested_boundary:
            result = find_html_in_multipart(part_body, nested_boundary, depth + 1)
            if result:
                return result

    return ""
