import json

import pytest

from holepunch.tunconfig import TunConfig, load_json_config


def test_defaults_follow_command_line():
    cfg = TunConfig()
    assert cfg.listen_tcp == ":2022"
    assert cfg.remote_udp == "127.0.0.1:4000"
    assert cfg.mtu == 1350
    assert cfg.sock_buf == 4194304
    assert cfg.mode == "fast"


@pytest.mark.parametrize(
    "mode, expected",
    [
        ("normal", (0, 40, 2, 1)),
        ("fast", (0, 30, 2, 1)),
        ("fast2", (1, 20, 2, 1)),
        ("fast3", (1, 10, 2, 1)),
    ],
)
def test_apply_mode_profiles(mode, expected):
    cfg = TunConfig(mode=mode).apply_mode()
    assert (cfg.no_delay, cfg.interval, cfg.resend, cfg.no_congestion) == expected


def test_manual_mode_keeps_tuning():
    original = TunConfig(mode="manual", no_delay=1, interval=77, resend=3, no_congestion=0)
    assert original.apply_mode() == original


def test_apply_mode_does_not_mutate():
    cfg = TunConfig(mode="fast3")
    cfg.apply_mode()
    assert cfg.interval == TunConfig().interval


def test_load_json_overrides_present_fields(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"listentcp": ":9000", "nc": 1, "quiet": True, "mtu": None}))
    base = TunConfig()
    cfg = load_json_config(base, path)
    assert cfg.listen_tcp == ":9000"
    assert cfg.no_congestion == 1
    assert cfg.quiet is True
    assert cfg.mtu == base.mtu
    assert base.listen_tcp == ":2022"


def test_load_json_keys_are_case_insensitive(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"RemoteUDP": "10.0.0.1:4000", "unknown": 5}))
    cfg = load_json_config(TunConfig(), path)
    assert cfg.remote_udp == "10.0.0.1:4000"


def test_load_json_type_mismatch(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"mtu": "big"}))
    with pytest.raises(ValueError):
        load_json_config(TunConfig(), path)


def test_load_json_rejects_bool_for_int(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"sndwnd": True}))
    with pytest.raises(ValueError):
        load_json_config(TunConfig(), path)


def test_load_json_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_json_config(TunConfig(), tmp_path / "absent.json")


def test_load_json_not_an_object(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("[1, 2, 3]")
    with pytest.raises(ValueError):
        load_json_config(TunConfig(), path)