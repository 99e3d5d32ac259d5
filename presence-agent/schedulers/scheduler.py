# schedulers/scheduler.py
import logging
from datetime import datetime
from typing import Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


class AttendanceScheduler:
    """APSchedulerによるタイマー管理（単発ジョブ・定期ジョブ）

    単発ジョブは発火時に自分で次回分を登録し直すことで周期実行にする。
    """

    def __init__(self):
        self._scheduler = AsyncIOScheduler()

    def schedule_once(self, job_id: str, run_at: datetime, job_func: Callable):
        """run_at に1回だけ実行するジョブを登録（同IDは置き換え）"""
        self._scheduler.add_job(
            job_func,
            trigger=DateTrigger(run_date=run_at),
            id=job_id,
            replace_existing=True,
            misfire_grace_time=None,
        )
        logger.debug("ジョブ予約: %s @ %s", job_id, run_at)

    def schedule_interval(self, job_id: str, minutes: float, job_func: Callable):
        """minutes 間隔で繰り返し実行するジョブを登録（同IDは置き換え）"""
        self._scheduler.add_job(
            job_func,
            trigger=IntervalTrigger(minutes=minutes),
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def cancel(self, job_id: str) -> bool:
        """ジョブを取り消す。存在しなければ False"""
        try:
            self._scheduler.remove_job(job_id)
            return True
        except JobLookupError:
            return False

    def has_job(self, job_id: str) -> bool:
        return self._scheduler.get_job(job_id) is not None

    def start(self):
        """スケジューラ開始（実行中のイベントループ上で呼ぶこと）"""
        self._scheduler.start()

    def stop(self):
        """スケジューラ停止"""
        self._scheduler.shutdown(wait=False)
