# tests/test_imap_parsing.py

from datetime import timedelta

from osprey.core import Message
from osprey.imap.client import (
    decode_header,
    decode_part_content,
    imap_date,
    parse_appenduid,
    parse_body_structure,
    parse_copyuid,
    parse_envelope,
    parse_fetch_response,
    parse_flags,
    parse_internal_date,
    parse_permanent_flags,
    parse_search_response,
    parse_sexp,
    parse_uid_set,
)
from osprey.imap.folder import BodyPart, Flag
from osprey.imap.store import _parse_idle_notifications, build_mime_message

from fakes import NOW


def test_parse_sexp_nested_and_nil():
    assert parse_sexp('(UID 7 FLAGS (\\Seen) X NIL "a \\"b\\"")') == [
        ["UID", "7", "FLAGS", ["\\Seen"], "X", None, 'a "b"'],
    ]


def test_fetch_response_with_literal():
    lines = [
        b"1 FETCH (UID 42 FLAGS (\\Seen) BODY[1] {5}",
        bytearray(b"Hello"),
        b")",
        b"Fetch completed",
    ]

    records = parse_fetch_response(lines)

    assert records == [
        {"SEQ": 1, "UID": "42", "FLAGS": ["\\Seen"], "BODY[1]": b"Hello"},
    ]


def test_fetch_response_several_messages():
    lines = [
        b"1 FETCH (UID 10 FLAGS ())",
        b"2 FETCH (UID 11 FLAGS (\\Flagged \\Answered))",
        b"Fetch completed",
    ]

    records = parse_fetch_response(lines)

    assert [r["UID"] for r in records] == ["10", "11"]
    assert parse_flags(records[1]["FLAGS"]) == {Flag.FLAGGED, Flag.ANSWERED}


def test_parse_flags_ignores_keywords():
    assert parse_flags(["\\Seen", "$Junk", "\\Deleted"]) == {Flag.SEEN, Flag.DELETED}
    assert parse_flags(None) == set()


def test_permanent_flags():
    lines = [b"[PERMANENTFLAGS (\\Seen \\Deleted \\*)] Limited"]

    assert parse_permanent_flags(lines) == {Flag.SEEN, Flag.DELETED}
    assert parse_permanent_flags([b"[UIDVALIDITY 3857529045] UIDs valid"]) == set(Flag)


def test_uid_sets_and_copyuid():
    assert parse_uid_set("304,319:320") == [304, 319, 320]
    assert parse_uid_set("5:3") == [5, 4, 3]
    assert parse_copyuid([b"[COPYUID 38505 304,319:320 3956:3958] Done"]) == {
        "304": "3956", "319": "3957", "320": "3958",
    }
    assert parse_copyuid([b"COPY completed"]) == {}


def test_appenduid():
    assert parse_appenduid([b"[APPENDUID 38505 3955] APPEND completed"]) == "3955"
    assert parse_appenduid([b"APPEND completed"]) is None


def test_search_response():
    assert parse_search_response([b"SEARCH 3 5 8", b"Search completed (0.001 sec)"]) == ["3", "5", "8"]
    assert parse_search_response([b"SEARCH", b"Search completed"]) == []


def test_internal_date():
    parsed = parse_internal_date("17-Jul-1996 02:44:25 -0700")

    assert parsed.year == 1996
    assert parsed.utcoffset() == timedelta(hours=-7)
    assert parse_internal_date("yesterday") is None
    assert parse_internal_date(None) is None


def test_imap_date():
    assert imap_date(0) == "1-Jan-1970"
    assert imap_date(NOW) == "14-Nov-2023"


def test_decode_header():
    assert decode_header("=?utf-8?q?Caf=C3=A9?=") == "Café"
    assert decode_header(b"plain") == "plain"
    assert decode_header(None) == ""


def test_parse_envelope():
    envelope = parse_envelope([
        "Wed, 17 Jul 1996 02:23:25 -0700",
        "Meeting",
        [["Ann Smith", None, "ann", "example.com"]],
        None,
        None,
        [[None, None, "bob", "example.org"], [None, None, "eve", "example.org"]],
        None,
        None,
        None,
        "<1234@example.com>",
    ])

    assert envelope.subject == "Meeting"
    assert envelope.sender == "ann@example.com"
    assert envelope.sender_name == "Ann Smith"
    assert envelope.recipients == ["bob@example.org", "eve@example.org"]
    assert envelope.cc == []
    assert envelope.message_id == "<1234@example.com>"
    assert envelope.date.year == 1996


def test_body_structure_multipart():
    structure = [
        ["text", "plain", ["charset", "utf-8"], None, None, "7bit", "12", "1"],
        ["application", "pdf", ["name", "a.pdf"], None, None, "base64", "3000", None,
         ["attachment", ["filename", "report.pdf"]]],
        "mixed",
    ]

    text, pdf = parse_body_structure(structure)

    assert text.part_id == "1"
    assert text.content_type == "text/plain"
    assert text.charset == "utf-8"
    assert text.is_viewable
    assert pdf.part_id == "2"
    assert pdf.encoding == "base64"
    assert pdf.size == 3000
    assert pdf.disposition == "attachment"
    assert pdf.filename == "report.pdf"
    assert not pdf.is_viewable


def test_body_structure_single_part():
    (part,) = parse_body_structure(["TEXT", "HTML", None, None, None, "quoted-printable", "100"])

    assert part.part_id == "1"
    assert part.content_type == "text/html"
    assert part.encoding == "quoted-printable"


def test_decode_part_content():
    assert decode_part_content(b"SGVsbG8=", BodyPart("1", encoding="base64")) == "Hello"
    qp = BodyPart("1", charset="utf-8", encoding="quoted-printable")
    assert decode_part_content(b"Caf=C3=A9", qp) == "Café"
    assert decode_part_content(None, qp) == ""


def test_idle_notifications():
    need_sync, sequences, uids = _parse_idle_notifications([
        "* 4 EXISTS",
        "* 2 FETCH (FLAGS (\\Seen) UID 17)",
        "* 3 FETCH (FLAGS ())",
    ])

    assert need_sync is True
    assert sequences == ["3"]
    assert uids == ["17"]


def test_flag_changes_alone_need_no_sync():
    need_sync, _, uids = _parse_idle_notifications(["* 2 FETCH (UID 9 FLAGS (\\Flagged))"])

    assert need_sync is False
    assert uids == ["9"]


def test_build_mime_message_mints_message_id():
    message = Message(
        subject="Hi", sender="a@example.com", recipients=["b@example.com"],
        timestamp=NOW, body_text="Body",
    )

    raw = build_mime_message(message)

    assert message.message_id
    assert b"Subject: Hi" in raw
    assert message.message_id.encode() in raw
    assert b"To: b@example.com" in raw
