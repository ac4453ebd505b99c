import logging

from cadetcore.cache import StaleCache
from cadetcore.events import EventBus
from cadetcore.logging_setup import setup_logger
from cadetcore.settings import load_settings
from cadetcore.utils import norm_name, try_parse_date


def test_event_bus_delivers_in_order_and_survives_bad_handlers(caplog):
    bus = EventBus()
    seen = []

    def boom(topic, payload):
        raise RuntimeError("handler bug")

    bus.subscribe("grade.updated", lambda t, p: seen.append(("first", p["cadet_id"])))
    bus.subscribe("grade.updated", boom)
    unsubscribe = bus.subscribe("*", lambda t, p: seen.append(("any", t)))

    with caplog.at_level(logging.ERROR, logger="cadetcore.events"):
        bus.publish("grade.updated", {"cadet_id": "cadet-1"})
    assert seen == [("first", "cadet-1"), ("any", "grade.updated")]
    assert "handler bug" in caplog.text

    unsubscribe()
    bus.publish("ledger.changed", {})
    assert len(seen) == 2


def test_stale_cache_serves_previous_value_while_refreshing():
    cache = StaleCache()
    values = iter([1, 2, 3])
    load = lambda: next(values)  # noqa: E731

    assert cache.get_stale_then_refresh("k", load) == 1
    assert cache.get_stale_then_refresh("k", load) == 1
    assert cache.get("k") == 2
    cache.invalidate("k")
    assert cache.get_stale_then_refresh("k", load) == 3


def test_stale_cache_keeps_last_good_value_when_refresh_fails():
    cache = StaleCache()
    cache.get_stale_then_refresh("k", lambda: "good")

    def broken():
        raise OSError("disk gone")

    assert cache.get_stale_then_refresh("k", broken) == "good"
    assert cache.get("k") == "good"


def test_user_rules_are_merged_over_bundled_rules(tmp_path, monkeypatch):
    data_dir = tmp_path / "user"
    data_dir.mkdir()
    (data_dir / "rules.json").write_text('{"processing_timeout": 5, "max_roster_size": {"cadet": 40}}',
                                         encoding="utf-8")
    monkeypatch.setenv("CADETCORE_DATA_DIR", str(data_dir))
    settings = load_settings()
    assert settings.processing_timeout == 5
    assert settings.max_roster_size == {"cadet": 40, "staff": 500}
    assert "external_id" in settings.header_aliases


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("CADETCORE_PROCESSING_TIMEOUT", "2.5")
    monkeypatch.setenv("CADETCORE_MAX_CADETS", "not-a-number")
    settings = load_settings()
    assert settings.processing_timeout == 2.5
    assert settings.max_roster_size["cadet"] == 5000


def test_setup_logger_writes_to_a_rotating_file(tmp_path):
    logger = setup_logger(level=logging.DEBUG, log_dir=tmp_path, console=False)
    try:
        setup_logger(level=logging.DEBUG, log_dir=tmp_path, console=False)
        own = [h for h in logger.handlers if getattr(h, "_cadetcore", False)]
        assert len(own) == 1
        logging.getLogger("cadetcore.orchestrator").info("Import started")
        for h in own:
            h.flush()
        assert "Import started" in (tmp_path / "cadetcore.log").read_text(encoding="utf-8")
    finally:
        for h in list(logger.handlers):
            if getattr(h, "_cadetcore", False):
                logger.removeHandler(h)
                h.close()
        logger.setLevel(logging.NOTSET)


def test_text_helpers():
    assert norm_name("  Pe\u00f1a\u2013Dela  Cruz ") == "pena-dela cruz"
    assert try_parse_date("08/16/2025") == "2025-08-16"
    assert try_parse_date("") is None
