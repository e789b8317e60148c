"""Tests for log redaction and correlation ids."""

from discussionboard.logging import (
    _add_correlation_id,
    correlation_id_var,
    make_redactor,
    mask_email,
    mask_link,
    mask_secret,
    set_correlation_id,
)

LINK = "https://board.example.com/v1/auth/activate?token=Zm9vYmFyYmF6cXV4&x=1"


def test_activation_link_token_masked_by_default():
    redact = make_redactor()
    event = redact(None, "info", {"event": "activation_required", "activation_link": LINK})
    assert event["activation_link"] == "https://board.example.com/v1/auth/activate?token=***&x=1"
    assert "Zm9vYmFy" not in event["activation_link"]


def test_activation_link_revealed_in_dev_mode():
    redact = make_redactor(reveal_links=True)
    event = redact(None, "info", {"event": "activation_required", "activation_link": LINK})
    assert event["activation_link"] == LINK


def test_secrets_and_emails_masked():
    redact = make_redactor()
    event = redact(
        None,
        "info",
        {
            "event": "token_issued",
            "session_token": "abcdefghijkl",
            "authorization": "Bearer abcdefghijkl",
            "password": "pw",
            "email": "jane@example.com",
            "user_id": 7,
        },
    )
    assert event["event"] == "token_issued"
    assert event["session_token"] == "ab***kl"
    assert event["authorization"] == "Bearer ab***kl"
    assert event["password"] == "***"
    assert event["email"] == "ja***@example.com"
    assert event["user_id"] == 7


def test_mask_helpers():
    assert mask_secret("abcd") == "***"
    assert mask_email("not-an-email") == "no***il"
    assert mask_link("https://x/a?b=1") == "https://x/a?b=1"


def test_correlation_id_added_to_events():
    token = correlation_id_var.set(None)
    try:
        assert _add_correlation_id(None, "info", {"event": "x"}) == {"event": "x"}
        cid = set_correlation_id("req-42")
        assert cid == "req-42"
        assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-42"
        assert len(set_correlation_id()) == 36
    finally:
        correlation_id_var.reset(token)
