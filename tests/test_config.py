"""Config loading and validation tests."""

from __future__ import annotations

import pytest

from refscan.config import ScanConfig, load_config, parse_memory_size, save_config
from refscan.types import QueueCategory

from .conftest import make_config


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("256M", 256 * 1024**2),
        ("1G", 1024**3),
        ("512k", 512 * 1024),
        ("-1", 16000 * 1024**2),
        ("0", 16000 * 1024**2),
        ("", 16000 * 1024**2),
        (-1, 16000 * 1024**2),
        (2048, 2048),
    ],
)
def test_parse_memory_size(value, expected):
    assert parse_memory_size(value) == expected


def test_parse_memory_size_rejects_garbage():
    with pytest.raises(ValueError):
        parse_memory_size("lots")


def test_memory_budget_is_a_fraction_of_the_ceiling(tmp_path):
    config = make_config(tmp_path, memory_ceiling="100M", memory_fraction=0.5)

    assert config.memory_limit_bytes == 50 * 1024**2


def test_defaults(tmp_path):
    config = make_config(tmp_path)

    assert config.time_limit_seconds == 20.0
    assert config.lock_ttl_seconds == 60
    assert config.cache_ttl_seconds == 600
    assert config.max_status_attempts == 4
    assert config.group_size_for(QueueCategory.POSTS) == 5
    assert config.group_size_for(QueueCategory.MENUS) == 1
    assert config.current_site.url == "https://example.com"


def test_sites_are_required():
    with pytest.raises(ValueError, match="sites"):
        ScanConfig.from_dict({})


def test_current_site_must_be_configured(tmp_path):
    with pytest.raises(ValueError, match="current_site_id"):
        make_config(tmp_path, current_site_id=5)


def test_lock_ttl_must_exceed_time_budget(tmp_path):
    with pytest.raises(ValueError, match="lock_ttl_seconds"):
        make_config(tmp_path, time_limit_seconds=60, lock_ttl_seconds=30)


@pytest.mark.parametrize("sizes", [{"posts": 0}, {"posts": 51}, {"widgets": 3}])
def test_group_sizes_are_validated(tmp_path, sizes):
    with pytest.raises(ValueError):
        make_config(tmp_path, group_sizes=sizes)


def test_bool_fields_are_strict(tmp_path):
    with pytest.raises(ValueError, match="scan_users"):
        make_config(tmp_path, scan_users="yes")


def test_comma_separated_lists_are_accepted(tmp_path):
    config = make_config(tmp_path, post_types="post, page ,product")

    assert config.post_types == ["post", "page", "product"]


def test_extraction_signature_tracks_scan_settings(tmp_path):
    base = make_config(tmp_path)

    assert base.extraction_signature() == make_config(tmp_path, time_limit_seconds=5).extraction_signature()
    assert base.extraction_signature() != make_config(tmp_path, scan_menus=False).extraction_signature()


@pytest.mark.parametrize("suffix", [".json", ".yaml"])
def test_save_and_load_round_trip(tmp_path, suffix):
    config = make_config(
        tmp_path,
        sites=[
            {"site_id": 1, "url": "https://example.com", "aliases": ["www.example.net"]},
            {"site_id": 2, "url": "https://media.example.org", "shared_media": True},
        ],
        status_refresh={"frequency": "monthly", "day_of_month": 15, "time_of_day": "04:30"},
    )
    path = tmp_path / f"config{suffix}"

    save_config(config, path)
    loaded = load_config(path)

    assert loaded.to_dict() == config.to_dict()
    assert loaded.get_site(2).shared_media
    assert loaded.status_refresh.hour_minute == (4, 30)


def test_unsupported_suffix(tmp_path):
    with pytest.raises(ValueError, match="Unsupported"):
        load_config(tmp_path / "config.toml")
