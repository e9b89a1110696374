# calwatch/app.py
from __future__ import annotations

import sys
from pathlib import Path
import asyncio
import logging
from typing import Any, Dict, List

# --------------------------------------------------------------------------------------
# Ensure project root is in sys.path so "import calwatch.*" always works
# --------------------------------------------------------------------------------------
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # noqa: E402

from calwatch import config as cfg  # noqa: E402
from calwatch.adapters.ics_feed import FeedFetcher, parse_feed  # noqa: E402
from calwatch.adapters.telegram_adapter import TelegramAdapter  # noqa: E402
from calwatch.core.calendar_sync import CalendarSyncService  # noqa: E402
from calwatch.core.config_validation import load_sources_file, validate_config  # noqa: E402
from calwatch.core.host import CalendarHost  # noqa: E402
from calwatch.core.i18n import MESSAGES  # noqa: E402
from calwatch.core.logging_utils import setup_logging, kv  # noqa: E402
from calwatch.core.models import CalendarSource  # noqa: E402
from calwatch.core.reminder_state import Clock  # noqa: E402
from calwatch.core.store import MemoryStore  # noqa: E402


def schedule_jobs(host: CalendarHost, timezone) -> AsyncIOScheduler:
    """
    Host housekeeping: periodic working-set push and the heartbeat watchdog.

    Note: The scheduler is created and configured here, but NOT started.
    """
    sched = AsyncIOScheduler(timezone=timezone)
    sched.add_job(
        host.push_events,
        trigger="interval",
        seconds=cfg.EVENT_PUSH_INTERVAL_S,
        id="host:push_events",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    sched.add_job(
        host.check_heartbeats,
        trigger="interval",
        seconds=cfg.HEARTBEAT_CHECK_INTERVAL_S,
        id="host:heartbeat",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    return sched


def seed_sources(store: MemoryStore, sources: List[Dict[str, Any]]) -> None:
    for s in sources:
        store.create_source(
            CalendarSource(
                name=s["name"], url=s["url"], is_active=bool(s.get("is_active", True))
            )
        )


async def main() -> None:
    if cfg.SOURCES_FILE:
        cfg.CALENDAR_SOURCES = load_sources_file(cfg.SOURCES_FILE)
    validate_config(cfg)
    setup_logging(cfg)
    log = logging.getLogger("calwatch.app")

    token = cfg.get_bot_token()
    chat_id = cfg.get_chat_id()

    store = MemoryStore()
    seed_sources(store, cfg.CALENDAR_SOURCES)

    clock = Clock(cfg.TZ)
    fetcher = FeedFetcher(timeout=cfg.FEED_TIMEOUT_S)
    sync_service = CalendarSyncService(
        store, fetch=fetcher.fetch, parse=parse_feed, clock=clock
    )

    # Break constructor cycle: adapter needs host, host needs adapter
    adapter = TelegramAdapter(bot_token=token, host=None, chat_id=chat_id)
    host = CalendarHost(cfg, store, adapter, sync_service, clock=clock)
    adapter.attach_host(host)

    sched = schedule_jobs(host, timezone=cfg.TZ)

    # --- IMPORTANT ORDER ---
    # 1) Greeting before any reminder can be published
    await adapter.send_message(MESSAGES["startup_greeting"])

    # 2) Engines up, working sets pushed
    await host.start()

    # 3) Only now start the housekeeping jobs
    sched.start()

    log.info("startup.ready " + kv(sources=len(store.all_sources())))

    try:
        await adapter.run_polling()
    finally:
        sched.shutdown(wait=False)
        await host.stop()
        await fetcher.aclose()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    asyncio.run(main())
