# rentcollect/worker/scheduler_worker.py
"""
APScheduler worker для RentCollect:
- фоновая сверка зависших STK push запросов (каждые STK_RECONCILE_INTERVAL_MINUTES)
- пометка просроченных счетов overdue (каждые OVERDUE_REFRESH_INTERVAL_MINUTES)
- сервисные функции: start/stop/get_status

Планировщик асинхронный (AsyncIOScheduler) и живёт в event loop приложения;
включается настройкой ENABLE_SCHEDULER (см. rentcollect/main.py).
"""

from __future__ import annotations

from typing import Dict, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MAX_INSTANCES, EVENT_JOB_MISSED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from rentcollect.core.config import settings
from rentcollect.core.db import session_scope
from rentcollect.core.logging import bound_context, get_logger, new_correlation_id
from rentcollect.services.late_fees import refresh_overdue_invoices
from rentcollect.services.stk_reconciliation import run_stk_reconciliation

logger = get_logger(__name__)

JOB_ID_STK_RECONCILE = "stk_reconcile"
JOB_ID_OVERDUE_REFRESH = "overdue_refresh"

_scheduler: Optional[AsyncIOScheduler] = None


# -------- События планировщика -------- #

def _on_scheduler_event(event) -> None:
    job_id = getattr(event, "job_id", "?")
    if event.code == EVENT_JOB_MISSED:
        logger.warning("APScheduler: пропущен запуск", job_id=job_id)
    elif event.code == EVENT_JOB_MAX_INSTANCES:
        logger.error("APScheduler: достигнут максимум инстансов", job_id=job_id)
    elif event.code == EVENT_JOB_ERROR:
        logger.error("APScheduler: ошибка в задаче", job_id=job_id, error=repr(getattr(event, "exception", None)))


# -------- Задачи -------- #

async def stk_reconcile_job() -> None:
    report = await run_stk_reconciliation()
    logger.debug("stk_reconcile_job done", **report.as_dict())


async def overdue_refresh_job() -> None:
    with bound_context(correlation_id=new_correlation_id()):
        async with session_scope() as session:
            count = await refresh_overdue_invoices(session)
    logger.debug("overdue_refresh_job done", marked=count)


def _add_jobs(scheduler: AsyncIOScheduler) -> None:
    scheduler.add_job(
        stk_reconcile_job,
        trigger=IntervalTrigger(minutes=settings.STK_RECONCILE_INTERVAL_MINUTES),
        id=JOB_ID_STK_RECONCILE,
        replace_existing=True,
        max_instances=1,
        coalesce=True,  # слить пропущенные запуски в один
        misfire_grace_time=60,
    )
    scheduler.add_job(
        overdue_refresh_job,
        trigger=IntervalTrigger(minutes=settings.OVERDUE_REFRESH_INTERVAL_MINUTES),
        id=JOB_ID_OVERDUE_REFRESH,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=300,
    )


def build_scheduler() -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone=settings.SCHEDULER_TIMEZONE or "UTC")
    scheduler.add_listener(_on_scheduler_event, EVENT_JOB_MISSED | EVENT_JOB_MAX_INSTANCES | EVENT_JOB_ERROR)
    _add_jobs(scheduler)
    return scheduler


# -------- Публичные сервисные функции воркера -------- #

def start() -> AsyncIOScheduler:
    """Запуск планировщика; вызывать из работающего event loop."""
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        return _scheduler
    logger.info("Запуск APScheduler worker")
    _scheduler = build_scheduler()
    _scheduler.start()
    logger.info("APScheduler запущен", timezone=settings.SCHEDULER_TIMEZONE, jobs=[j.id for j in _scheduler.get_jobs()])
    return _scheduler


def stop() -> None:
    """Остановка планировщика (graceful)."""
    global _scheduler
    if _scheduler is None:
        return
    if _scheduler.running:
        logger.info("Остановка APScheduler worker")
        _scheduler.shutdown(wait=False)
        logger.info("APScheduler остановлен")
    _scheduler = None


def get_status() -> Dict[str, str]:
    """Короткий статус воркера: запущен/нет, кол-во задач."""
    if _scheduler is None:
        return {"running": "False", "jobs_count": "0", "jobs": ""}
    jobs = _scheduler.get_jobs()
    return {
        "running": str(_scheduler.running),
        "jobs_count": str(len(jobs)),
        "jobs": ", ".join(j.id for j in jobs),
    }


__all__ = [
    "JOB_ID_STK_RECONCILE",
    "JOB_ID_OVERDUE_REFRESH",
    "stk_reconcile_job",
    "overdue_refresh_job",
    "build_scheduler",
    "start",
    "stop",
    "get_status",
]
