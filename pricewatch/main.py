"""Command-line interface entry point for the pricewatch engine."""

from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable
from urllib.parse import urlparse

import requests
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from pricewatch.browser_pool import BrowserPool
from pricewatch.change_detector import ChangeDetector, ChangeThresholds
from pricewatch.config import Settings, load_config
from pricewatch.errors import ConfigError, PreflightError, PricewatchError, StoreUnavailable
from pricewatch.fetcher import Fetcher
from pricewatch.health_server import EngineState, start_health_server, stop_health_server
from pricewatch.logging_config import configure_logging, get_logger
from pricewatch.rate_limiter import RateLimiter
from pricewatch.scheduler import CycleResult, Scheduler
from pricewatch.sites import SiteRegistry
from pricewatch.storage.migrations import run_migrations
from pricewatch.storage.store import Store
from pricewatch.useragents import UserAgentRotator, load_agents


LOGGER = get_logger(__name__)


@dataclass
class Engine:
    settings: Settings
    store: Store
    pool: BrowserPool
    registry: SiteRegistry
    rate_limiter: RateLimiter
    fetcher: Fetcher
    detector: ChangeDetector
    scheduler: Scheduler


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the engine."""

    parser = argparse.ArgumentParser(description="Run the pricewatch price observation engine.")
    parser.add_argument(
        "--config",
        default=os.getenv("PRICEWATCH_CONFIG", "config.yml"),
        help="Path to the YAML configuration file (default: config.yml).",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single monitoring cycle instead of polling on a schedule.",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum number of due targets to process per cycle.",
    )
    parser.add_argument(
        "--track",
        action="append",
        default=[],
        metavar="URL",
        help="Add (or update) a tracked product URL before starting. Repeatable.",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=60,
        help="Check interval in minutes for --track targets (default: 60).",
    )
    parser.add_argument(
        "--site",
        default=None,
        help="Site name for --track targets; detected from the URL when omitted.",
    )
    parser.add_argument(
        "--seed",
        default=None,
        help="YAML file listing targets to track (url, interval, site, enabled).",
    )
    parser.add_argument(
        "--health",
        action="store_true",
        help="Serve /health and /stats while the engine runs.",
    )
    parser.add_argument(
        "--skip-preflight",
        action="store_true",
        help="Skip environment checks before starting.",
    )

    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.limit is not None and args.limit <= 0:
        parser.error("--limit must be a positive integer")
    if not 1 <= args.interval <= 10080:
        parser.error("--interval must be between 1 and 10080 minutes")
    return args


def preflight_check(settings: Settings, store: Store) -> None:
    """Validate environment prerequisites before the browser pool starts."""

    errors: list[str] = []

    if sys.version_info < (3, 11):
        errors.append(
            "Python 3.11 or newer is required. "
            f"Detected {sys.version_info.major}.{sys.version_info.minor}"
        )

    if not settings.pg.database:
        sqlite_dir = Path(settings.database.sqlite_path).resolve().parent
        if not os.access(sqlite_dir, os.W_OK):
            errors.append(f"SQLite directory not writable: {sqlite_dir}")

    try:
        store.ping()
    except StoreUnavailable as exc:
        errors.append(f"Database unreachable: {exc}")

    if errors:
        raise PreflightError("; ".join(errors))
    LOGGER.info("Preflight checks passed")


def _load_seed_file(path: str | os.PathLike[str]) -> list[dict[str, Any]]:
    with Path(path).open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or []
    if isinstance(data, dict):
        data = data.get("targets", [])
    if not isinstance(data, list):
        raise ConfigError(f"Seed file {path} must contain a list of targets")

    entries: list[dict[str, Any]] = []
    for item in data:
        if isinstance(item, str):
            entries.append({"url": item})
        elif isinstance(item, dict) and item.get("url"):
            entries.append(item)
        else:
            raise ConfigError(f"Seed entry without a url in {path}: {item!r}")
    return entries


def seed_targets(
    store: Store,
    registry: SiteRegistry,
    entries: Iterable[dict[str, Any]],
    *,
    default_interval: int = 60,
) -> int:
    """Upsert each seed entry as a URL-mode target; return how many were written."""

    count = 0
    for entry in entries:
        url = str(entry["url"]).strip()
        site = entry.get("site") or registry.detect(url).name
        target = store.add_tracked_target(
            url,
            site,
            interval_minutes=entry.get("interval", default_interval),
            enabled=bool(entry.get("enabled", True)),
        )
        LOGGER.info(
            "Tracking target | id=%s | site=%s | interval=%d | url=%s",
            target.id,
            target.site,
            target.interval_minutes,
            url,
        )
        count += 1
    return count


def _ping_healthcheck(url: str) -> None:
    if not url:
        LOGGER.debug("healthcheck: disabled")
        return
    host = urlparse(url).netloc or urlparse(url).path
    try:
        response = requests.get(url, timeout=5)
    except requests.RequestException as exc:
        LOGGER.warning("Healthcheck ping failed for host=%s: %s", host, exc)
        return
    if response.status_code >= 400:
        LOGGER.warning("Healthcheck returned status %s for host=%s", response.status_code, host)
    else:
        LOGGER.info("healthcheck ok | host=%s status=%s", host, response.status_code)


def build_engine(settings: Settings, store: Store, registry: SiteRegistry) -> Engine:
    scraper = settings.scraper
    pool = BrowserPool(
        settings.pool_size,
        headless=scraper.headless,
        acquire_timeout=settings.pool_acquire_timeout_s,
    )
    rate_limiter = RateLimiter(registry)
    fetcher = Fetcher(
        pool,
        registry,
        user_agents=UserAgentRotator(load_agents(scraper.user_agents_file)),
        timeout_ms=scraper.timeout_ms,
        ready_timeout_ms=scraper.ready_timeout_ms,
        acquire_timeout=settings.pool_acquire_timeout_s,
    )
    detector = ChangeDetector(store, ChangeThresholds.from_settings(settings.price_change))
    scheduler = Scheduler(
        store,
        fetcher,
        rate_limiter,
        detector,
        retries=scraper.retries,
        min_delay_ms=scraper.min_delay_ms,
        max_delay_ms=scraper.max_delay_ms,
        rate_limit_timeout_s=settings.scheduler.rate_limit_timeout_s,
    )
    return Engine(settings, store, pool, registry, rate_limiter, fetcher, detector, scheduler)


async def _run_cycle(engine: Engine, limit: int | None = None) -> CycleResult:
    settings = engine.settings
    result = await engine.scheduler.run_cycle(
        limit or settings.scheduler.batch_limit,
        settings.scheduler.max_consecutive_failures,
    )

    csv_path = settings.output.csv_path
    if csv_path:
        try:
            await asyncio.to_thread(engine.store.export_csv, csv_path)
        except (OSError, PricewatchError) as exc:
            LOGGER.warning("CSV export failed | path=%s | error=%s", csv_path, exc)

    if result.successful:
        await asyncio.to_thread(_ping_healthcheck, settings.healthcheck_url)
    return result


async def _drain(task: asyncio.Task[Any] | None, timeout: float) -> None:
    """Give the in-flight cycle *timeout* seconds to finish, then cancel it."""

    if task is None or task.done():
        return
    LOGGER.info("Draining in-flight target | timeout_s=%.1f", timeout)
    done, _pending = await asyncio.wait({task}, timeout=timeout)
    if not done:
        LOGGER.warning("Drain timeout reached; cancelling current cycle")
        task.cancel()
    await asyncio.gather(task, return_exceptions=True)


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except (NotImplementedError, RuntimeError):
            LOGGER.debug("Signal handlers unavailable for %s", signum)


async def _run_engine(engine: Engine, args: argparse.Namespace) -> None:
    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)
    drain_timeout = engine.settings.scheduler.drain_timeout_s
    current: dict[str, asyncio.Task[Any] | None] = {"task": None}

    async def scheduled_cycle() -> None:
        if engine.scheduler.stop_requested:
            return
        current["task"] = asyncio.current_task()
        try:
            await _run_cycle(engine, args.limit)
        except PricewatchError as exc:
            LOGGER.error("Scheduled cycle failed: %s", exc)
        except Exception:
            LOGGER.exception("Scheduled cycle failed")
        finally:
            current["task"] = None

    if args.once:
        cycle_task = asyncio.create_task(_run_cycle(engine, args.limit))
        stop_task = asyncio.create_task(stop_event.wait())
        try:
            await asyncio.wait({cycle_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_task.cancel()
        if not cycle_task.done():
            LOGGER.info("Shutdown signal received; stopping after current target")
            engine.scheduler.request_stop()
            await _drain(cycle_task, drain_timeout)
        elif cycle_task.exception() is not None:
            raise cycle_task.exception()
        return

    poll_seconds = engine.settings.scheduler.poll_seconds
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        scheduled_cycle,
        "interval",
        seconds=poll_seconds,
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now(timezone.utc),
    )
    scheduler.start()
    LOGGER.info("Scheduler started with poll interval=%s seconds", poll_seconds)

    try:
        await stop_event.wait()
        LOGGER.info("Shutdown signal received; stopping scheduler")
    finally:
        engine.scheduler.request_stop()
        scheduler.shutdown(wait=False)
        await _drain(current["task"], drain_timeout)


async def _async_main(argv: Iterable[str] | None = None) -> None:
    args = parse_args(argv)
    settings = load_config(args.config)
    configure_logging(settings.log.level, settings.log.dir)
    LOGGER.info(
        "Parsed arguments: once=%s limit=%s track=%d seed=%s health=%s",
        args.once,
        args.limit,
        len(args.track),
        args.seed,
        args.health,
    )

    store = Store.from_url(
        settings.database_url(),
        pool_max=settings.pg.pool_max,
        connect_timeout_ms=settings.pg.connection_timeout_ms,
    )
    try:
        if not args.skip_preflight:
            preflight_check(settings, store)
        run_migrations(store.engine)

        registry = SiteRegistry.from_config(settings.sites)
        entries: list[dict[str, Any]] = []
        if args.seed:
            entries.extend(_load_seed_file(args.seed))
        for url in args.track:
            entry: dict[str, Any] = {"url": url, "interval": args.interval}
            if args.site:
                entry["site"] = args.site
            entries.append(entry)
        if entries:
            seeded = seed_targets(store, registry, entries, default_interval=args.interval)
            LOGGER.info("Seeded tracked targets | count=%d", seeded)

        engine = build_engine(settings, store, registry)
        health_server = health_thread = None
        try:
            await engine.pool.initialize()
            if args.health or settings.health_server.enabled:
                state = EngineState(engine.pool, store, engine.rate_limiter, engine.scheduler)
                health_server, health_thread = start_health_server(
                    state, settings.health_server.host, settings.health_server.port
                )
            await _run_engine(engine, args)
        finally:
            stop_health_server(health_server, health_thread)
            await engine.pool.close_all()
    finally:
        store.close()
        LOGGER.info("Store closed; shutdown complete")


def main() -> None:
    try:
        asyncio.run(_async_main())
    except PricewatchError as exc:
        LOGGER.error("Startup failed: %s", exc)
        raise SystemExit(1) from exc
    except KeyboardInterrupt:  # pragma: no cover - interactive safety
        LOGGER.info("Interrupted by user")


if __name__ == "__main__":
    main()
