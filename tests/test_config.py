"""Tests for YAML configuration loading."""

import logging
import textwrap
from unittest.mock import patch

import pytest

from peerwatch.config import ConfigError, PeerwatchConfig, load_config


class TestDefaults:
    """PeerwatchConfig works without a config file."""

    def test_defaults(self):
        cfg = PeerwatchConfig()
        assert cfg.db_path.endswith(".peerwatch/peerwatch.db")
        assert cfg.status_url.endswith("/nodesSummary")
        assert cfg.peer_endpoints == []
        assert cfg.geo_rate_limit == 45
        assert cfg.bootstrapper_min_seen_by == 10
        assert cfg.bottleneck_top_k == 3

    def test_missing_default_file_returns_defaults(self, tmp_path):
        with patch("peerwatch.config.DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml"):
            assert load_config() == PeerwatchConfig()


class TestLoadConfig:
    """load_config with an explicit path."""

    def test_full_config(self, tmp_path):
        cfg_file = tmp_path / "config.yaml"
        cfg_file.write_text(
            textwrap.dedent("""\
                db_path: /data/peerwatch.db
                status_url: https://status.example.com/nodesSummary
                peer_endpoints:
                  - http://gateway-a.example.com/peers
                  - url: http://gateway-b.example.com/peers
                    node_id: 00000000000000bb
                bootstrapper_hosts:
                  - bootstrap.example.com:8888
                source_timeout: 5
                geo_enabled: false
                bootstrapper_degree_factor: 2.5
                bottleneck_cut_vertex_weight: 0.5
            """),
            encoding="utf-8",
        )

        cfg = load_config(cfg_file)

        assert cfg.db_path == "/data/peerwatch.db"
        assert cfg.status_url == "https://status.example.com/nodesSummary"
        assert [e.url for e in cfg.peer_endpoints] == [
            "http://gateway-a.example.com/peers",
            "http://gateway-b.example.com/peers",
        ]
        assert cfg.peer_endpoints[0].node_id is None
        assert cfg.peer_endpoints[1].node_id == "00000000000000bb"
        assert cfg.bootstrapper_hosts == ["bootstrap.example.com:8888"]
        assert cfg.source_timeout == 5.0
        assert cfg.geo_enabled is False
        assert cfg.bootstrapper_degree_factor == 2.5
        assert cfg.bottleneck_cut_vertex_weight == 0.5

    def test_empty_file_returns_defaults(self, tmp_path):
        cfg_file = tmp_path / "config.yaml"
        cfg_file.write_text("", encoding="utf-8")
        assert load_config(cfg_file) == PeerwatchConfig()

    def test_unknown_keys_are_warned_and_ignored(self, tmp_path, caplog):
        cfg_file = tmp_path / "config.yaml"
        cfg_file.write_text("db_path: /tmp/x.db\ncolour: blue\n", encoding="utf-8")

        with caplog.at_level(logging.WARNING, logger="peerwatch.config"):
            cfg = load_config(cfg_file)

        assert cfg.db_path == "/tmp/x.db"
        assert "colour" in caplog.text

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        cfg_file = tmp_path / "config.yaml"
        cfg_file.write_text("db_path: [unclosed\n", encoding="utf-8")

        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(cfg_file)

    def test_top_level_must_be_mapping(self, tmp_path):
        cfg_file = tmp_path / "config.yaml"
        cfg_file.write_text("- a\n- b\n", encoding="utf-8")

        with pytest.raises(ConfigError, match="mapping"):
            load_config(cfg_file)

    def test_invalid_value(self, tmp_path):
        cfg_file = tmp_path / "config.yaml"
        cfg_file.write_text("source_timeout: -1\n", encoding="utf-8")

        with pytest.raises(ConfigError, match="source_timeout"):
            load_config(cfg_file)
