import pytest

from config import Config, load_feeds_config, parse_feeds_config
from errors import ConfigError


def write(tmp_path, text, name="feeds.yaml"):
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_load_feeds_config(tmp_path):
    path = write(tmp_path, """
articlesPerFeed: 15
fetchFullText: true
categories:
  - name: Tech
    feeds:
      - title: Hacker News
        url: https://news.ycombinator.com/rss
        articlesPerFeed: 30
      - title: Golem
        url: https://rss.golem.de/rss.php?feed=ATOM1.0
  - name: Empty
""")

    feeds_config = load_feeds_config(path)

    assert feeds_config.articles_per_feed == 15
    assert feeds_config.fetch_full_text is True
    assert [c.name for c in feeds_config.categories] == ["Tech", "Empty"]
    hn, golem = feeds_config.all_feeds()
    assert hn.category == "Tech"
    assert hn.item_limit(feeds_config.articles_per_feed) == 30
    assert golem.item_limit(feeds_config.articles_per_feed) == 15


def test_json_configuration_is_accepted(tmp_path):
    path = write(tmp_path, '{"categories": [{"name": "News", "feeds": [{"title": "A", "url": "https://a.example/rss"}]}]}', "feeds.json")

    feeds_config = load_feeds_config(path)

    assert feeds_config.articles_per_feed == 20
    assert feeds_config.fetch_full_text is False
    assert feeds_config.all_feeds()[0].title == "A"


def test_invalid_feeds_are_skipped():
    feeds_config = parse_feeds_config({
        "categories": [
            {"name": "News", "feeds": [
                {"title": "No URL"},
                {"url": "https://untitled.example/rss"},
                {"title": "Good", "url": "https://good.example/rss", "articlesPerFeed": "zero"},
            ]},
            {"feeds": []},
        ]
    })

    assert [f.title for f in feeds_config.all_feeds()] == ["Good"]
    assert feeds_config.all_feeds()[0].articles_per_feed is None
    assert len(feeds_config.categories) == 1


def test_missing_file_is_config_error(tmp_path):
    with pytest.raises(ConfigError):
        load_feeds_config(str(tmp_path / "missing.yaml"))


def test_malformed_yaml_is_config_error(tmp_path):
    path = write(tmp_path, "categories: [unclosed")

    with pytest.raises(ConfigError):
        load_feeds_config(path)


def test_configuration_without_categories_is_config_error(tmp_path):
    with pytest.raises(ConfigError):
        load_feeds_config(write(tmp_path, "articlesPerFeed: 10\n"))
    with pytest.raises(ConfigError):
        parse_feeds_config(["not", "a", "mapping"])


def test_environment_settings(monkeypatch):
    monkeypatch.setenv("HTTP_TIMEOUT", "30")
    monkeypatch.setenv("EXTRACTION_CONCURRENCY", "0")
    monkeypatch.setenv("EXTRACTION_RETRY_DELAY", "not-a-number")
    monkeypatch.setenv("AGGREGATOR_MARKERS", "Google News, Bing News")

    settings = Config()

    assert settings.HTTP_TIMEOUT == 30
    assert settings.EXTRACTION_CONCURRENCY == 10
    assert settings.EXTRACTION_RETRY_DELAY == 0.5
    assert settings.AGGREGATOR_MARKERS == ["google news", "bing news"]
