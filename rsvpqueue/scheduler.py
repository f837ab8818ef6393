"""APScheduler integration."""

from __future__ import annotations

from apscheduler.schedulers.background import BackgroundScheduler

from .config import settings
from .sweep import run_auto_promote_sweep

_scheduler: BackgroundScheduler | None = None


def start_scheduler() -> BackgroundScheduler | None:
    global _scheduler
    if not settings.enable_scheduler:
        return None
    if _scheduler and _scheduler.running:
        return _scheduler
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        run_auto_promote_sweep,
        "interval",
        minutes=settings.sweep_interval_minutes,
        id="auto-promote-sweep",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.start()
    _scheduler = scheduler
    return scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        _scheduler = None
