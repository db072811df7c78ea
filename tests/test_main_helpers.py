from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest
import requests

from pricewatch import main as main_module
from pricewatch.config import load_config
from pricewatch.errors import ConfigError, PreflightError, StoreUnavailable, ValidationError
from pricewatch.main import _drain, _load_seed_file, _ping_healthcheck, parse_args, preflight_check, seed_targets
from pricewatch.scheduler import CycleResult
from pricewatch.sites import SiteRegistry


def test_parse_args_track_flags() -> None:
    args = parse_args(
        ["--once", "--limit", "5", "--track", "https://a.example/1", "--track", "https://a.example/2", "--interval", "15"]
    )
    assert args.once is True
    assert args.limit == 5
    assert args.track == ["https://a.example/1", "https://a.example/2"]
    assert args.interval == 15
    assert args.health is False


@pytest.mark.parametrize("argv", [["--limit", "0"], ["--interval", "0"], ["--interval", "10081"]])
def test_parse_args_rejects_bad_numbers(argv) -> None:
    with pytest.raises(SystemExit):
        parse_args(argv)


def test_seed_file_accepts_strings_and_mappings(tmp_path) -> None:
    seed = tmp_path / "seed.yml"
    seed.write_text(
        "targets:\n"
        "  - https://www.amazon.com/dp/B0TEST\n"
        "  - url: https://shop.example.org/p/1\n"
        "    interval: 30\n"
        "    enabled: false\n",
        encoding="utf-8",
    )
    entries = _load_seed_file(seed)
    assert entries == [
        {"url": "https://www.amazon.com/dp/B0TEST"},
        {"url": "https://shop.example.org/p/1", "interval": 30, "enabled": False},
    ]


def test_seed_file_entry_without_url(tmp_path) -> None:
    seed = tmp_path / "seed.yml"
    seed.write_text("- interval: 30\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        _load_seed_file(seed)


def test_seed_targets_detects_site_and_upserts(store) -> None:
    entries = [
        {"url": "https://www.amazon.com/dp/B0TEST"},
        {"url": "https://shop.example.org/p/1", "interval": 30, "enabled": False, "site": "Example"},
        {"url": "https://www.amazon.com/dp/B0TEST", "interval": 120},
    ]

    assert seed_targets(store, SiteRegistry(), entries, default_interval=60) == 3

    targets = {target.url: target for target in store.list_targets()}
    assert len(targets) == 2
    amazon = targets["https://www.amazon.com/dp/B0TEST"]
    assert amazon.site == "Amazon"
    assert amazon.interval_minutes == 120
    other = targets["https://shop.example.org/p/1"]
    assert other.site == "Example"
    assert other.enabled is False


def test_seed_targets_rejects_bad_interval(store) -> None:
    with pytest.raises(ValidationError):
        seed_targets(store, SiteRegistry(), [{"url": "https://a.example/1", "interval": 0}])


def test_preflight_passes(store, tmp_path) -> None:
    settings = load_config(None, environ={})
    settings.database.sqlite_path = str(tmp_path / "db.sqlite")
    preflight_check(settings, store)


def test_preflight_reports_unreachable_store(store, tmp_path, monkeypatch) -> None:
    def broken_ping() -> bool:
        raise StoreUnavailable("connection refused")

    monkeypatch.setattr(store, "ping", broken_ping)
    settings = load_config(None, environ={})
    settings.database.sqlite_path = str(tmp_path / "db.sqlite")

    with pytest.raises(PreflightError, match="Database unreachable"):
        preflight_check(settings, store)


def test_ping_healthcheck(monkeypatch) -> None:
    calls = []

    def fake_get(url, timeout):
        calls.append((url, timeout))
        return SimpleNamespace(status_code=200)

    monkeypatch.setattr(requests, "get", fake_get)
    _ping_healthcheck("")
    _ping_healthcheck("https://hc-ping.example/abc")
    assert calls == [("https://hc-ping.example/abc", 5)]


def test_ping_healthcheck_swallows_request_errors(monkeypatch) -> None:
    def failing_get(url, timeout):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(requests, "get", failing_get)
    _ping_healthcheck("https://hc-ping.example/abc")


def test_drain_cancels_after_timeout() -> None:
    async def scenario() -> bool:
        task = asyncio.create_task(asyncio.sleep(3600))
        await _drain(task, 0.01)
        return task.cancelled()

    assert asyncio.run(scenario()) is True


def test_drain_lets_quick_task_finish() -> None:
    async def scenario() -> str:
        async def quick() -> str:
            await asyncio.sleep(0)
            return "done"

        task = asyncio.create_task(quick())
        await _drain(task, 1.0)
        return task.result()

    assert asyncio.run(scenario()) == "done"


def test_run_cycle_exports_csv_and_pings(store, tmp_path, monkeypatch) -> None:
    settings = load_config(None, environ={})
    settings.output.csv_path = str(tmp_path / "out" / "products.csv")
    settings.healthcheck_url = "https://hc-ping.example/abc"
    pings = []
    monkeypatch.setattr(main_module, "_ping_healthcheck", pings.append)

    class StubScheduler:
        async def run_cycle(self, limit, max_consecutive_failures):
            self.args = (limit, max_consecutive_failures)
            return CycleResult(total=1, successful=1)

    scheduler = StubScheduler()
    engine = SimpleNamespace(settings=settings, store=store, scheduler=scheduler)

    result = asyncio.run(main_module._run_cycle(engine, None))

    assert result.successful == 1
    assert scheduler.args == (100, 5)
    assert (tmp_path / "out" / "products.csv").exists()
    assert pings == ["https://hc-ping.example/abc"]
