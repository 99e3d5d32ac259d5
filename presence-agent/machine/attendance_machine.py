import asyncio
import logging
from datetime import datetime, time, timedelta
from typing import Optional

from machine.state import WorkDayState
from services.signal_strength import describe_signal
from services.stamper_interface import (
    Action,
    ActionFailure,
    ActionOutcome,
    OutcomeStatus,
    UNREGISTERED,
)

logger = logging.getLogger(__name__)

ABSENCE_MONITOR_JOB = "absence_monitor"
MIDNIGHT_RESET_JOB = "midnight_reset"
NEVER_DETECTED = "none"

MESSAGES = {
    (Action.CHECK_IN, OutcomeStatus.SUCCESS): "✅ 出勤打刻しました（{time}）",
    (Action.CHECK_IN, OutcomeStatus.ALREADY_DONE): "✅ 既に出勤打刻済みです",
    (Action.CHECK_OUT, OutcomeStatus.SUCCESS): "🕐 退勤打刻しました（{time}）",
    (Action.CHECK_OUT, OutcomeStatus.ALREADY_DONE): "🕐 既に退勤打刻済みです",
}


def _now() -> datetime:
    """テスト時にモック可能な現在時刻取得"""
    return datetime.now()


def next_midnight(moment: datetime) -> datetime:
    return datetime.combine(moment.date() + timedelta(days=1), time.min)


class AttendanceStateMachine:
    """近接検知から出勤・退勤を判断し、打刻を実行する

    状態:
      Idle     出勤前（is_work_started=False）
      Working  出勤済み・不在監視中
      Idle     強制退勤後 or 深夜リセット後

    tick の記録は同期的に行い、打刻はタスクとして切り離すため、
    打刻中も tick の処理は止まらない。退勤だけは is_checkout_in_progress で
    多重実行を拒否する（不在監視・強制退勤・手動の3経路があるため）。
    """

    def __init__(self, state: WorkDayState, stamper, retry, scheduler, notifier, config: dict):
        rules = config["time_rules"]
        self._state = state
        self._stamper = stamper
        self._retry = retry
        self._scheduler = scheduler
        self._notifier = notifier
        self._work_start_hour = rules["work_start_hour"]
        self._work_start_end_hour = rules["work_start_end_hour"]
        self._work_start_end_minute = rules["work_start_end_minute"]
        self._work_end_hour = rules["work_end_hour"]
        self._forced_checkout_hour = rules["forced_checkout_hour"]
        self._absence_threshold = rules["absence_threshold_minutes"]
        self._check_interval = rules["check_interval_minutes"]
        self._tasks = set()

    @property
    def state(self) -> WorkDayState:
        return self._state

    def start(self) -> None:
        logger.info(
            "⏰ 出勤時間: %d:00〜%d:%02d / 退勤検知: %d時以降 %s分不在 / 強制退勤: %d時以降",
            self._work_start_hour,
            self._work_start_end_hour,
            self._work_start_end_minute,
            self._work_end_hour,
            self._absence_threshold,
            self._forced_checkout_hour,
        )
        self.arm_midnight_reset()

    async def run(self, observer) -> None:
        """観測器の tick を発行順に処理し続ける"""
        async for tick in observer.ticks():
            self.handle_tick(tick)

    # ── 近接検知 ──────────────────────────────────────────────

    def is_work_time(self, moment: datetime) -> bool:
        return moment.hour == self._work_start_hour or (
            moment.hour == self._work_start_end_hour
            and moment.minute <= self._work_start_end_minute
        )

    def handle_tick(self, tick) -> Optional[asyncio.Task]:
        """tick を記録し、出勤条件を満たせば出勤処理タスクを起動して返す"""
        state = self._state
        state.last_observed_at = tick.observed_at
        quality_changed = tick.signal_quality != state.last_observed_quality
        state.last_observed_quality = tick.signal_quality

        if state.is_work_started or not quality_changed:
            return None
        if not self.is_work_time(tick.observed_at):
            return None

        state.is_work_started = True
        signal = describe_signal(tick.signal_quality)
        logger.info("✅ 対象デバイス検知 (%s, RSSI: %s) - 出勤処理開始", tick.device_id, signal)
        self._notify(f"📡 デバイス検知 - 出勤記録（RSSI: {signal}）")
        return self._spawn(self._start_work(), "check_in")

    async def _start_work(self) -> ActionOutcome:
        outcome = await self.perform_check_in()
        if outcome.success:
            self.start_absence_monitor()
        return outcome

    # ── 打刻 ──────────────────────────────────────────────────

    async def perform_check_in(self) -> ActionOutcome:
        outcome = await self._run_action(Action.CHECK_IN)
        if outcome.success and outcome.timestamp != UNREGISTERED:
            self._state.check_in_time = outcome.timestamp
        return outcome

    async def perform_check_out(self) -> ActionOutcome:
        state = self._state
        if state.is_checkout_in_progress:
            logger.info("⚠️ 退勤処理が既に進行中です")
            return ActionOutcome.in_progress(Action.CHECK_OUT)

        state.is_checkout_in_progress = True
        try:
            outcome = await self._run_action(Action.CHECK_OUT)
        finally:
            state.is_checkout_in_progress = False

        if outcome.success and outcome.timestamp != UNREGISTERED:
            state.check_out_time = outcome.timestamp
        return outcome

    async def _run_action(self, action: Action) -> ActionOutcome:
        try:
            outcome = await self._retry.run(lambda: self._stamper.perform(action))
        except Exception as e:
            reason = e.reason if isinstance(e, ActionFailure) else str(e)
            logger.error("❌ %s 自動化失敗: %s", action.value, reason)
            self._notify_error(f"{action.value}: {reason}")
            return ActionOutcome.failed(action, reason)

        message = MESSAGES.get((action, outcome.status))
        if message:
            self._notify(message.format(time=outcome.timestamp))
        return outcome

    async def get_actual_times(self) -> dict:
        """勤怠システムから実際の打刻時刻を取得する（キャッシュしない）"""
        times = await self._stamper.read_times()
        logger.info("🎯 実際の打刻時刻 - 出勤: %s, 退勤: %s", times.check_in_time, times.check_out_time)
        return times.as_dict()

    def get_today_status(self) -> dict:
        state = self._state
        return {
            "is_work_started": state.is_work_started,
            "check_in_time": state.check_in_time,
            "check_out_time": state.check_out_time,
            "last_detected": (
                state.last_observed_at.strftime("%Y-%m-%d %H:%M:%S")
                if state.last_observed_at
                else NEVER_DETECTED
            ),
            "last_signal_quality": state.last_observed_quality,
        }

    # ── 退勤検知 ──────────────────────────────────────────────

    def start_absence_monitor(self) -> None:
        logger.info("🕐 退勤検知モニタリング開始 (%s分間隔)", self._check_interval)
        self._scheduler.schedule_interval(
            ABSENCE_MONITOR_JOB, self._check_interval, self._absence_job
        )

    def stop_absence_monitor(self) -> None:
        self._scheduler.cancel(ABSENCE_MONITOR_JOB)

    async def _absence_job(self) -> None:
        self.check_work_end()

    def minutes_since_last_observation(self, now: datetime) -> float:
        if self._state.last_observed_at is None:
            return float("inf")
        return (now - self._state.last_observed_at).total_seconds() / 60

    def check_work_end(self) -> Optional[asyncio.Task]:
        """退勤判定。強制退勤が不在判定より優先。起動した退勤タスクを返す"""
        now = _now()
        if now.hour < self._work_end_hour:
            return None

        state = self._state
        minutes = self.minutes_since_last_observation(now)
        logger.info("🕐 退勤チェック - 現在: %s, 最終検知: %.1f分前", now.strftime("%H:%M"), minutes)

        if now.hour >= self._forced_checkout_hour:
            if state.forced_checkout_done:
                return None
            logger.info("🕘 %d時経過 - 強制退勤を実行", self._forced_checkout_hour)
            state.forced_checkout_done = True
            return self._spawn(self.perform_check_out(), "forced_check_out")

        if minutes < self._absence_threshold:
            return None
        if state.last_absence_checkout_at is not None and (
            state.last_observed_at is None
            or state.last_observed_at <= state.last_absence_checkout_at
        ):
            # 同じ不在期間ではもう退勤済み
            return None

        logger.info("📱 %.1f分間未検知 - 自動退勤を実行", minutes)
        return self._spawn(self._absence_check_out(now), "absence_check_out")

    async def _absence_check_out(self, triggered_at: datetime) -> ActionOutcome:
        """不在による退勤。成功した時だけ記録し、失敗なら次の監視で再試行される"""
        outcome = await self.perform_check_out()
        if outcome.success:
            self._state.last_absence_checkout_at = triggered_at
        return outcome

    # ── 深夜リセット ──────────────────────────────────────────

    def arm_midnight_reset(self) -> None:
        run_at = next_midnight(_now())
        self._scheduler.schedule_once(MIDNIGHT_RESET_JOB, run_at, self._midnight_job)
        logger.info("⏰ 次回の深夜リセット予約: %s", run_at)

    async def _midnight_job(self) -> None:
        self.reset_day()

    def reset_day(self) -> None:
        logger.info("🌅 深夜リセット - 状態初期化")
        self._state.reset()
        self.stop_absence_monitor()
        self.arm_midnight_reset()

    # ── 内部 ──────────────────────────────────────────────────

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("タスク %s が異常終了: %s", task.get_name(), task.exception())

    async def wait_idle(self) -> None:
        """起動済みの打刻タスクがすべて終わるまで待つ"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self._stamper.close()

    def _notify(self, message: str) -> None:
        try:
            self._notifier.send(message)
        except Exception as e:
            logger.debug("通知失敗: %s", e)

    def _notify_error(self, error: str) -> None:
        try:
            self._notifier.send_error(error)
        except Exception as e:
            logger.debug("通知失敗: %s", e)
