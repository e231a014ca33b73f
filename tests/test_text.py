from datetime import datetime, timezone

from app.text import (
    clip,
    detect_host_tokens,
    extract_campaign_id,
    extract_date_range,
    extract_explicit_device_id,
    extract_natural_date_range,
    extract_poster_token,
    extract_relative_window,
    extract_time_window,
    extract_top_n,
    is_full_host_token,
    mentions_stats,
    normalize_city_selection,
    parse_devices_list,
    parse_selected_days,
    parse_time_slots,
    score_name_match,
)

NOW = datetime(2026, 3, 10, 15, 30, tzinfo=timezone.utc)
CAMPAIGN = "3f2b8c1e-9a7d-4e21-b2c4-0f1e2d3c4b5a"


def test_detect_host_tokens():
    assert detect_host_tokens("show dart2's cpu") == ["dart2"]
    assert detect_host_tokens("details for moco-brt-briggs-001, please") == ["moco-brt-briggs-001"]
    assert detect_host_tokens(f"impressions for {CAMPAIGN}") == []
    assert detect_host_tokens("top posters in brt") == []


def test_full_host_token():
    assert is_full_host_token("moco-brt-briggs-001")
    assert not is_full_host_token("dart2")
    assert not is_full_host_token("moco brt briggs")


def test_extract_top_n_caps():
    assert extract_top_n("top 5 posters") == 5
    assert extract_top_n("top 500 devices") == 200
    assert extract_top_n("top posters") == 0


def test_extract_campaign_id():
    assert extract_campaign_id(f"impressions for ({CAMPAIGN})") == CAMPAIGN
    assert extract_campaign_id("impressions for summer") == ""


def test_extract_poster_token_needs_context_or_vistar_prefix():
    assert extract_poster_token("details of poster_summer-2025") == "poster_summer-2025"
    assert extract_poster_token("what is vistar_fall_promo") == "vistar_fall_promo"
    assert extract_poster_token("show moco-brt-briggs-001 info") == ""


def test_normalize_city_selection_drops_colliding_short_code():
    assert normalize_city_selection("kc", "brt", "top posters in kc brt") == ("", False)
    assert normalize_city_selection("kc", "brt", "city kc in brt") == ("kc", True)
    assert normalize_city_selection("kcmo", "brt", "kcmo brt") == ("kcmo", True)


def test_iso_date_range_is_end_inclusive():
    assert extract_date_range("plays from 2026-01-01 to 2026-01-31") == (
        "2026-01-01T00:00:00Z",
        "2026-02-01T00:00:00Z",
    )
    assert extract_date_range("from 2026-02-01 to 2026-01-01") == ("", "")


def test_natural_date_range():
    assert extract_natural_date_range("plays from january 2 2026 till february 1 2026") == (
        "2026-01-02T00:00:00Z",
        "2026-02-02T00:00:00Z",
    )
    start, end = extract_natural_date_range("from january 2nd, 2026 to today", now=NOW)
    assert (start, end) == ("2026-01-02T00:00:00Z", "2026-03-11T00:00:00Z")


def test_relative_windows():
    assert extract_relative_window("plays yesterday", now=NOW) == ("2026-03-09T00:00:00Z", "2026-03-10T00:00:00Z")
    assert extract_relative_window("plays today", now=NOW) == ("2026-03-10T00:00:00Z", "2026-03-11T00:00:00Z")
    assert extract_relative_window("last 7 days", now=NOW) == ("2026-03-03T00:00:00Z", "2026-03-11T00:00:00Z")
    assert extract_relative_window("since 2026-03-01", now=NOW) == ("2026-03-01T00:00:00Z", "2026-03-11T00:00:00Z")
    assert extract_relative_window("all time", now=NOW) == ("", "")


def test_time_window_prefers_explicit_dates():
    assert extract_time_window("from 2026-01-01 to 2026-01-02 yesterday", now=NOW)[0] == "2026-01-01T00:00:00Z"


def test_score_name_match():
    assert score_name_match("Union Station", "union station") == 200
    assert score_name_match("union", "Union Station KC") == 120
    assert score_name_match("briggs kiosk north", "Briggs") == 100
    assert score_name_match("", "anything") == 0


def test_clip():
    assert clip("abcdef", 3) == "abc"
    assert clip("abc", 0) == ""


def test_mentions_stats_ignores_status():
    assert mentions_stats("pop stats for kcmo")
    assert mentions_stats("show statistics")
    assert not mentions_stats("kiosk status in kcmo")
    assert not mentions_stats("device status moco-brt-briggs-001")


def test_upload_parameters():
    message = "upload creative to campaign x devices: dev1, dev2 dev1 days monday,wed,fri 08:00 - 12:00, 12:00-16:00"
    assert parse_devices_list(message) == ["dev1", "dev2"]
    assert parse_selected_days(message) == ["mon", "wed", "fri"]
    assert parse_time_slots(message) == ["08:00-12:00", "12:00-16:00"]
    assert parse_devices_list("upload creative with no device list") == []
    assert parse_time_slots("from 8 to 12") == []


def test_extract_explicit_device_id():
    assert extract_explicit_device_id("show venues for device id 42") == 42
    assert extract_explicit_device_id("venues of device 7") == 7
    assert extract_explicit_device_id("top 5 devices") == 0
