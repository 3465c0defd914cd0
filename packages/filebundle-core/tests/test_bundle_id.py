from __future__ import annotations

import pytest

from filebundle.core.bundle_id import BundleID, BundleTimeFormat, sanitize_device_id
from filebundle.core.exception import SpecError


def test_token_format_and_parse():
    fmt = BundleTimeFormat("UTC")
    bid = fmt.make_id(1_700_000_000_123, "dev-a", "main")

    assert bid.token == "20231114.221320.123+0000_dev-a_main"
    assert str(bid) == bid.token

    parsed = BundleID.parse(bid.token)
    assert parsed == bid
    assert parsed.timestamp == 1_700_000_000_123
    assert parsed.device_id == "dev-a"
    assert parsed.label == "main"


def test_parse_keeps_instant_across_time_zones():
    ts = 1_700_000_000_456
    token = BundleTimeFormat("America/New_York").make_id(ts, "dev", "data").token
    assert BundleID.parse(token).timestamp == ts


def test_unknown_time_zone_falls_back_to_utc():
    fmt = BundleTimeFormat("Not/AZone")
    assert fmt.tz_name == "UTC"


def test_ordering_is_by_timestamp_then_device_then_label():
    fmt = BundleTimeFormat("UTC")
    b1 = fmt.make_id(1_000, "dev-b", "main")
    b2 = fmt.make_id(2_000, "dev-a", "main")
    b3 = fmt.make_id(2_000, "dev-b", "data")
    assert sorted([b3, b2, b1]) == [b1, b2, b3]


def test_labels_and_devices_are_made_filename_safe():
    bid = BundleTimeFormat("UTC").make_id(1_000, "my laptop/1", "a b/c")
    assert bid.device_id == "my-laptop-1"
    assert bid.label == "a-b-c"
    assert "/" not in bid.token and " " not in bid.token
    assert sanitize_device_id("") == "unknown"


def test_label_may_contain_separator():
    bid = BundleTimeFormat("UTC").make_id(1_000, "dev", "team_x,pdash")
    parsed = BundleID.parse(bid.token)
    assert parsed.label == "team_x,pdash"


@pytest.mark.parametrize("token", ["", "garbage", "20231114.221320.123+0000_dev", "2023-11-14_dev_main"])
def test_invalid_tokens_raise_spec_error(token):
    with pytest.raises(SpecError):
        BundleID.parse(token)
