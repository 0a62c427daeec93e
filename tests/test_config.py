import json
import textwrap

import topicfeed.config as cfg


def test_defaults_are_used_without_a_file():
    config = cfg.Config(None)
    assert config.get("feed.page_size") == 10
    assert config.get("remote.timeouts.slow") == 20.0
    assert config.get("feed.missing", "fallback") == "fallback"


def test_yaml_file_is_deep_merged(tmp_path):
    path = tmp_path / "topicfeed.yaml"
    path.write_text(textwrap.dedent(
        """
        feed:
          page_size: 25
        remote:
          timeouts:
            slow: 30
        """
    ))
    config = cfg.Config(str(path))
    assert config.get("feed.page_size") == 25
    assert config.get("feed.debounce_ms") == 500
    assert config.get("remote.timeouts.slow") == 30
    assert config.get("remote.timeouts.fast") == 10.0


def test_json_file_is_supported(tmp_path):
    path = tmp_path / "topicfeed.json"
    path.write_text(json.dumps({"cache": {"max_topics": 2}}))
    assert cfg.Config(str(path)).get("cache.max_topics") == 2


def test_unsupported_or_missing_file_keeps_defaults(tmp_path):
    path = tmp_path / "topicfeed.toml"
    path.write_text("feed = 1")
    assert cfg.Config(str(path)).get("feed.page_size") == 10
    assert cfg.Config(str(tmp_path / "absent.yaml")).get("feed.page_size") == 10


def test_environment_overrides_use_double_underscore(monkeypatch):
    monkeypatch.setenv("TOPICFEED_FEED__PAGE_SIZE", "15")
    monkeypatch.setenv("TOPICFEED_REMOTE__BASE_URL", "https://feeds.example.com")
    monkeypatch.setenv("TOPICFEED_CONFIG_PATH", "ignored.yaml")
    config = cfg.Config(None)
    assert config.get("feed.page_size") == 15
    assert config.get("remote.base_url") == "https://feeds.example.com"
    assert config.get("config_path") is None


def test_load_config_replaces_global(tmp_path, monkeypatch):
    monkeypatch.setattr(cfg, "config", cfg.config)
    path = tmp_path / "topicfeed.yaml"
    path.write_text("feed:\n  page_size: 7\n")
    cfg.load_config(str(path))
    assert cfg.get_config("feed.page_size") == 7
