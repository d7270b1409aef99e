"""Tests for masking, paging and backoff helpers."""

from datetime import datetime

import pytest

from switchyard.errors import InvalidRequest
from switchyard.settings import Settings
from switchyard.utils.backoff import ladder_delay_seconds
from switchyard.utils.paging import clamp_limit, decode_cursor, encode_cursor
from switchyard.utils.pii import MASK, mask_email, mask_pii


def test_mask_pii_masks_known_fields_recursively():
    payload = {
        "from": "15550001111",
        "text": "hello",
        "contact": {"email": "ada@example.com", "name": "Ada"},
        "entries": [{"phone": "+4420700000"}],
    }

    masked = mask_pii(payload)

    assert masked == {
        "from": "***1111",
        "text": "hello",
        "contact": {"email": "a***@example.com", "name": MASK},
        "entries": [{"phone": "***0000"}],
    }
    assert payload["from"] == "15550001111"


def test_mask_pii_matches_field_name_suffixes():
    payload = {
        "customer_email": "jane@example.com",
        "mobile_phone": "+15551234567",
        "contact": {"work_email": "a@b.co", "Home_Tel": "020 7946 0000"},
        "phone_number_id": "PNID-1",
    }

    masked = mask_pii(payload)

    assert masked == {
        "customer_email": "j***@example.com",
        "mobile_phone": "***4567",
        "contact": {"work_email": "a***@b.co", "Home_Tel": "***0000"},
        "phone_number_id": "PNID-1",
    }


def test_mask_pii_leaves_none_and_bools():
    assert mask_pii({"email": None, "phone": True}) == {"email": None, "phone": True}


def test_mask_email_without_local_part():
    assert mask_email("@example.com") == "***.com"


def test_cursor_round_trip_and_invalid():
    ts = datetime(2024, 5, 1, 12, 0, 0)
    assert decode_cursor(encode_cursor(ts, "abc")) == (ts, "abc")
    assert decode_cursor(None) is None
    with pytest.raises(InvalidRequest):
        decode_cursor("not-a-cursor")


def test_clamp_limit():
    assert clamp_limit(None) == 20
    assert clamp_limit(0) == 1
    assert clamp_limit(1000) == 100


def test_ladder_delay_seconds_clamps_to_last_entry():
    ladder = [60, 300, 900]
    assert ladder_delay_seconds(ladder, 1) == 60
    assert ladder_delay_seconds(ladder, 3) == 900
    assert ladder_delay_seconds(ladder, 7) == 900
    with pytest.raises(ValueError):
        ladder_delay_seconds([], 1)


def test_default_max_attempts_reach_last_backoff_rung():
    defaults = Settings(_env_file=None)

    for ladder, max_attempts in (
        (defaults.inbound_backoff_seconds, defaults.inbound_max_attempts),
        (defaults.outbound_backoff_seconds, defaults.outbound_max_attempts),
    ):
        assert max_attempts == len(ladder) + 1
        # The last retriable failure is attempt max_attempts - 1.
        assert ladder_delay_seconds(ladder, max_attempts - 1) == ladder[-1]
