import json
import os

import pytest

from nukenote.blocked_inviters import InMemoryBlockedInviterStore
from nukenote.errors import ValidationError
from nukenote.invite import (
    DEFAULT_INVITE_TTL,
    build_invite_link,
    check_invite,
    create_invite,
    create_signed_invite,
    encode_invite,
    extract_invite_blob,
    is_expired,
    parse_invite_blob,
    sign_invite,
    validate_invite_payload,
    verify_invite_signature,
)
from nukenote.keywrap import generate_keypair, unwrap_key
from nukenote.wallet import LocalWallet, b64url


@pytest.fixture
def inviter():
    return LocalWallet()


def test_create_invite_defaults(inviter):
    payload = create_invite(inviter=inviter.identity_key(), wrap="w", thread_id="t1", now=1000)

    assert payload == {
        "proto": "NukeNote.Invite",
        "v": 1,
        "t": "invite",
        "threadId": "t1",
        "inviter": inviter.identity_key(),
        "policy": "mutual",
        "wrap": "w",
        "exp": 1000 + DEFAULT_INVITE_TTL,
    }


def test_create_invite_generates_thread_id_and_keeps_name(inviter):
    payload = create_invite(inviter=inviter.identity_key(), wrap="w", inviter_name="Alice", expires_at=5)

    assert payload["threadId"]
    assert payload["inviterName"] == "Alice"
    assert payload["exp"] == 5


@pytest.mark.parametrize(
    "kwargs",
    [
        {"inviter": "", "wrap": "w"},
        {"inviter": "k", "wrap": ""},
        {"inviter": "k", "wrap": "w", "policy": "anyone"},
    ],
)
def test_create_invite_rejects_bad_input(kwargs):
    with pytest.raises(ValidationError):
        create_invite(**kwargs)


def test_signed_invite_round_trips_through_link(inviter):
    invitee = generate_keypair()
    thread_key = os.urandom(32)
    payload = create_signed_invite(
        inviter, thread_key=thread_key, recipient_public_key=invitee.public_key_hex, thread_id="t1"
    )

    link = build_invite_link("https://nukenote.example/", encode_invite(payload))
    assert link.startswith("https://nukenote.example/invite/")

    parsed = parse_invite_blob(extract_invite_blob(link))
    assert parsed.thread_id == "t1"
    assert parsed.inviter == inviter.identity_key()
    assert len(parsed.hash) == 64
    assert verify_invite_signature(parsed.payload)
    assert unwrap_key(parsed.payload["wrap"], invitee.private_key_hex) == thread_key


def test_tampered_or_foreign_signature_fails(inviter):
    payload = sign_invite(create_invite(inviter=inviter.identity_key(), wrap="w", thread_id="t1"), inviter)

    assert not verify_invite_signature({**payload, "policy": "initiator"})
    assert not verify_invite_signature({**payload, "inviter": LocalWallet().identity_key()})
    assert not verify_invite_signature({key: value for key, value in payload.items() if key != "sig"})


def test_resigning_replaces_existing_signature(inviter):
    payload = sign_invite(create_invite(inviter=inviter.identity_key(), wrap="w", thread_id="t1"), inviter)
    again = sign_invite({**payload, "sig": "stale"}, inviter)

    assert verify_invite_signature(again)


@pytest.mark.parametrize(
    "text,expected",
    [
        ("abc", "abc"),
        ("  abc  ", "abc"),
        ("https://host/invite/abc", "abc"),
        ("https://host/app/invite/abc?ref=1#top", "abc"),
        ("/invite/abc", "abc"),
        ("https://host/other/abc", "abc"),
    ],
)
def test_extract_invite_blob(text, expected):
    assert extract_invite_blob(text) == expected


@pytest.mark.parametrize("text", ["", "   ", "https://host/invite/", "https://host/"])
def test_extract_invite_blob_without_blob(text):
    with pytest.raises(ValidationError):
        extract_invite_blob(text)


def test_validate_reports_every_problem():
    errors = validate_invite_payload({"t": "other", "v": 2, "policy": "x", "exp": "soon"})

    assert "threadId missing" in errors
    assert "inviter missing" in errors
    assert "wrap missing" in errors
    assert len(errors) == 7
    assert validate_invite_payload([]) == ["payload must be an object"]


def test_parse_rejects_garbage():
    with pytest.raises(ValidationError):
        parse_invite_blob("")
    with pytest.raises(ValidationError):
        parse_invite_blob(b64url(b"not json"))
    with pytest.raises(ValidationError):
        parse_invite_blob(b64url(json.dumps({"t": "invite"}).encode("utf-8")))


def test_is_expired():
    assert not is_expired({"exp": 100}, now=99)
    assert is_expired({"exp": 100}, now=100)
    assert is_expired({"exp": "100"}, now=0)
    assert is_expired({}, now=0)


def test_check_invite_reports_blocked_inviter(inviter):
    invitee = generate_keypair()
    payload = create_signed_invite(
        inviter, thread_key=os.urandom(32), recipient_public_key=invitee.public_key_hex, thread_id="t1"
    )
    link = build_invite_link("https://nukenote.example", encode_invite(payload))
    blocked = InMemoryBlockedInviterStore()

    check = check_invite(link, blocked=blocked)
    assert check.acceptable
    assert check.invite.thread_id == "t1"

    blocked.save(inviter.identity_key().upper())
    check = check_invite(link, blocked=blocked)
    assert check.blocked
    assert check.signature_valid
    assert not check.acceptable


def test_check_invite_reports_expiry_and_bad_signature(inviter):
    payload = sign_invite(create_invite(inviter=inviter.identity_key(), wrap="w", expires_at=100), inviter)

    expired = check_invite(encode_invite(payload), now=100)
    assert expired.expired and not expired.blocked
    assert not expired.acceptable

    tampered = check_invite(encode_invite({**payload, "policy": "initiator"}), now=0)
    assert not tampered.signature_valid
    assert not tampered.acceptable
