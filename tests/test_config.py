"""Tests for forwarder configuration and the devices.conf allow-list."""

from __future__ import annotations

import json
import logging

import pytest

from adbforwarder.config import ForwarderConfig, load_allow_list, parse_allow_list


class TestAllowList:
    def test_comments_and_blank_lines(self, tmp_path):
        conf = tmp_path / "devices.conf"
        conf.write_text("foo // comment\n// fullcomment\n\n   \nbar\n")

        assert load_allow_list(conf) == ("foo", "bar")

    def test_indented_comment_line(self):
        assert parse_allow_list(["   // hollywood", "\teureka  "]) == ("eureka",)

    def test_duplicates_collapse_in_order(self):
        assert parse_allow_list(["eureka", "hollywood", "eureka // again"]) == (
            "eureka",
            "hollywood",
        )

    def test_only_first_comment_marker_counts(self):
        assert parse_allow_list(["seacliff // Quest Pro // 2022"]) == ("seacliff",)

    def test_windows_line_endings(self, tmp_path):
        conf = tmp_path / "devices.conf"
        conf.write_bytes(b"hollywood\r\n// Quest 3\r\neureka\r\n")
        assert load_allow_list(conf) == ("hollywood", "eureka")

    def test_missing_file_is_empty_with_warning(self, tmp_path, caplog):
        with caplog.at_level(logging.WARNING):
            result = load_allow_list(tmp_path / "devices.conf")

        assert result == ()
        assert "not found" in caplog.text


class TestForwarderConfig:
    def test_defaults(self):
        config = ForwarderConfig()
        assert config.forward_ports == [9943, 9944]
        assert config.package == "alvr.client"
        assert config.apk_path == "../alvr_client_android.apk"
        assert config.permission == "android.permission.RECORD_AUDIO"
        assert config.devices_file == "devices.conf"
        assert config.launch_delay == 1.0

    def test_load_filters_unknown_keys(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({
            "package": "com.example.client",
            "forward_ports": [8000],
            "colour": "green",
        }))

        config = ForwarderConfig.load(path)

        assert config.package == "com.example.client"
        assert config.forward_ports == [8000]
        assert not hasattr(config, "colour")

    def test_load_missing_uses_defaults(self, tmp_path):
        config = ForwarderConfig.load(tmp_path / "nope.json")
        assert config == ForwarderConfig()

    def test_save_then_load(self, tmp_path):
        path = tmp_path / "conf" / "settings.json"
        ForwarderConfig(launch_delay=2.5, adb_port=5038).save(path)

        loaded = ForwarderConfig.load(path)

        assert loaded.launch_delay == 2.5
        assert loaded.adb_port == 5038

