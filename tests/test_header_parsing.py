from __future__ import annotations

from pathlib import Path

import pytest

from mime_extract import decode_mime_header, parse_headers


FIXTURE_DIR = Path(__file__).parent / "fixtures" / "eml"


def fixture_headers(name: str) -> dict[str, str]:
    raw = (FIXTURE_DIR / name).read_bytes()
    header_block = raw.replace(b"\r\n", b"\n").split(b"\n\n", 1)[0]
    return parse_headers(header_block)


@pytest.mark.parametrize(
    ("encoded", "expected"),
    [
        ("=?UTF-8?B?SGVsbG8gV29ybGQ=?=", "Hello World"),
        ("=?utf-8?b?SGVsbG8gV29ybGQ?=", "Hello World"),
        ("=?ISO-8859-1?Q?Caf=E9_au_lait?=", "Café au lait"),
        ("Re: =?utf-8?q?caf=C3=A9?= news", "Re: café news"),
        ("=?utf-8*en?Q?hello?=", "hello"),
        ("=?x-unknown-charset?Q?abc?=", "abc"),
        ("Plain subject", "Plain subject"),
        ("", ""),
    ],
)
def test_decode_mime_header(encoded: str, expected: str) -> None:
    assert decode_mime_header(encoded) == expected


def test_decode_mime_header_keeps_whitespace_between_encoded_words() -> None:
    assert decode_mime_header("=?utf-8?Q?one?= =?utf-8?Q?two?=") == "one two"


def test_fixture_headers_expose_message_id_and_encoded_subject() -> None:
    headers = fixture_headers("nested_related.eml")

    assert headers["message-id"] == "<nested-1@chapter.example.test>"
    assert decode_mime_header(headers["subject"]) == "Grüße from the chapter"


def test_fixture_headers_unfold_content_type() -> None:
    headers = fixture_headers("multipart_alternative.eml")

    assert headers["content-type"] == 'multipart/alternative; boundary="----=_Part_001"'
    assert headers["date"] == "Tue, 17 Feb 2026 09:30:00 -0500"


def test_latin1_subject_from_fixture() -> None:
    headers = fixture_headers("latin1_html.eml")

    assert decode_mime_header(headers["subject"]) == "Café au lait"


def test_decode_mime_header_base64_non_ascii() -> None:
    assert decode_mime_header("=?UTF-8?B?SMOpbGxv?=") == "Héllo"


def test_parse_headers_unfolds_tab_continuation() -> None:
    headers = parse_headers("Subject: Weekly\r\n\tUpdate\r\nTo: list@example.test\r\n")

    assert headers["subject"] == "Weekly Update"
    assert headers["to"] == "list@example.test"
