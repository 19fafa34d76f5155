"""Celery configuration for scheduled catalog syncs."""

from __future__ import annotations

import os

from celery import Celery
from celery.schedules import crontab

from catalog_sync.jobs.sync import configured_channels
from catalog_sync.utils.dates import timezone_name

broker_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")
backend_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")
sync_interval_hours = int(os.environ.get("SYNC_INTERVAL_HOURS", "6"))

celery_app = Celery("catalog_sync", broker=broker_url, backend=backend_url)
celery_app.conf.timezone = timezone_name()
celery_app.conf.task_acks_late = True
celery_app.conf.worker_prefetch_multiplier = 1


def build_beat_schedule(channels: list[str], interval_hours: int) -> dict[str, dict]:
    schedule: dict[str, dict] = {
        "category-tree": {
            "task": "catalog_sync.jobs.sync.run_category_sync",
            "schedule": crontab(minute=0, hour=f"*/{interval_hours}"),
        },
        "brand-list": {
            "task": "catalog_sync.jobs.sync.run_brand_sync",
            "schedule": crontab(minute=5, hour=f"*/{interval_hours}"),
        },
    }
    for offset, channel in enumerate(channels):
        minute = (10 + offset * 5) % 60
        schedule[f"products-{channel.lower()}"] = {
            "task": "catalog_sync.jobs.sync.run_sync",
            "schedule": crontab(minute=minute, hour=f"*/{interval_hours}"),
            "args": (channel,),
        }
        schedule[f"safety-stock-{channel.lower()}"] = {
            "task": "catalog_sync.jobs.sync.run_safety_stock_sync",
            "schedule": crontab(minute=minute),
            "args": (channel,),
        }
    return schedule


celery_app.conf.beat_schedule = build_beat_schedule(configured_channels(), sync_interval_hours)


@celery_app.task(name="catalog_sync.jobs.sync.run_sync")
def run_sync_task(channel: str) -> dict:  # pragma: no cover - executed by worker
    import asyncio

    from catalog_sync.jobs.sync import run_sync

    return asyncio.run(run_sync(channel)).to_dict()


@celery_app.task(name="catalog_sync.jobs.sync.run_category_sync")
def run_category_sync_task() -> dict:  # pragma: no cover - executed by worker
    import asyncio

    from catalog_sync.jobs.sync import run_category_sync

    return asyncio.run(run_category_sync())


@celery_app.task(name="catalog_sync.jobs.sync.run_brand_sync")
def run_brand_sync_task() -> dict:  # pragma: no cover - executed by worker
    import asyncio

    from catalog_sync.jobs.sync import run_brand_sync

    return asyncio.run(run_brand_sync())


@celery_app.task(name="catalog_sync.jobs.sync.run_safety_stock_sync")
def run_safety_stock_sync_task(channel: str) -> dict:  # pragma: no cover - executed by worker
    import asyncio

    from catalog_sync.jobs.sync import run_safety_stock_sync

    return asyncio.run(run_safety_stock_sync(channel))
