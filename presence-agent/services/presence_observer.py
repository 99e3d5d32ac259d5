import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, Awaitable, Callable, Optional, Sequence

from services.signal_strength import classify_signal

logger = logging.getLogger(__name__)

RSSI_PATTERN = re.compile(r"RSSI (-?\d+)")

# macOS の nearbyd ログを購読する（要 sudo）
DEFAULT_COMMAND = ["log", "stream", "--predicate", 'process == "nearbyd"', "--info"]

SOURCE_RESTART_JOB = "presence_source_restart"

_UNSET = object()


def _now() -> datetime:
    """テスト時にモック可能な現在時刻取得"""
    return datetime.now()


@dataclass(frozen=True)
class ProximityTick:
    observed_at: datetime
    device_id: str
    signal_quality: Optional[int]

    @property
    def tier(self) -> int:
        return classify_signal(self.signal_quality)


def extract_quality(line: str) -> Optional[int]:
    """ログ行から RSSI 値を取り出す。見つからなければ None"""
    match = RSSI_PATTERN.search(line)
    return int(match.group(1)) if match else None


class LogStreamSource:
    """システムログを非同期サブプロセスで購読し、1行ずつ返すソース"""

    def __init__(self, command: Sequence[str] = DEFAULT_COMMAND):
        self._command = list(command)
        self._process: Optional[asyncio.subprocess.Process] = None

    async def lines(self) -> AsyncIterator[str]:
        self._process = await asyncio.create_subprocess_exec(
            *self._command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stderr_task = asyncio.get_running_loop().create_task(
            self._log_stderr(self._process.stderr)
        )
        try:
            async for raw in self._process.stdout:
                yield raw.decode("utf-8", errors="replace")
        finally:
            await self._terminate()
            await stderr_task
            logger.info("log stream 終了 (コード: %s)", self._process.returncode)

    @staticmethod
    async def _log_stderr(stream: asyncio.StreamReader) -> None:
        # sudo なしで起動した場合のエラーはここにしか出ない
        async for raw in stream:
            message = raw.decode("utf-8", errors="replace").rstrip()
            if message:
                logger.warning("❌ Bluetooth 検知エラー: %s", message)

    def stop(self) -> None:
        """プロセスを終了させる。出力済みの行は lines() 側で読み切られる"""
        if self._process is not None and self._process.returncode is None:
            try:
                self._process.terminate()
            except ProcessLookupError:
                pass

    async def _terminate(self) -> None:
        self.stop()
        if self._process.returncode is None:
            await self._process.wait()


class PresenceObserver:
    """対象デバイスの近接ログを監視し、RSSIが変化した時だけ tick を発行する

    ソースが終了しても一定時間後に自動で再起動し、監視を止めない。
    長時間稼働によるリソース肥大を避けるため、ソースは定期的に強制再起動する。
    """

    def __init__(
        self,
        target_device: str,
        source_factory: Callable[[], LogStreamSource],
        scheduler=None,
        restart_delay_seconds: float = 2.0,
        restart_interval_minutes: float = 60,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._device_id = target_device
        self._needle = target_device.lower()
        self._source_factory = source_factory
        self._scheduler = scheduler
        self._restart_delay = restart_delay_seconds
        self._restart_interval = restart_interval_minutes
        self._sleep = sleep
        self._source = None
        self._running = False
        self._last_quality = _UNSET

    @property
    def is_running(self) -> bool:
        return self._running

    def accept(self, line: str) -> Optional[ProximityTick]:
        """1行を評価し、発行すべき tick があれば返す（同じRSSIの連続は抑制）"""
        if self._needle not in line.lower():
            return None

        quality = extract_quality(line)
        if self._last_quality is not _UNSET and quality == self._last_quality:
            return None

        self._last_quality = quality
        return ProximityTick(
            observed_at=_now(), device_id=self._device_id, signal_quality=quality
        )

    async def ticks(self) -> AsyncIterator[ProximityTick]:
        """tick を無限に発行する。ソースの終了・失敗は再起動で吸収する"""
        self._running = True
        while self._running:
            self._source = self._source_factory()
            self._arm_restart_timer()
            logger.info("Bluetooth 検知開始 (対象: %s)", self._device_id)
            lines = self._source.lines()
            try:
                async for line in lines:
                    tick = self.accept(line)
                    if tick is not None:
                        yield tick
            except Exception as e:
                logger.error("近接ログの読み取りに失敗: %s", e)
            finally:
                # 利用側が途中で抜けてもソースの後始末をここで済ませる
                await lines.aclose()
                self._source = None

            if not self._running:
                break
            logger.warning("Bluetooth 検知が終了 - %.0f秒後に再起動", self._restart_delay)
            await self._sleep(self._restart_delay)

    def request_restart(self) -> None:
        """現在のソースを停止する（ticks() 側で再起動される）"""
        if self._source is not None:
            logger.info("♻️ Bluetooth 検知を定期再起動")
            self._source.stop()

    def stop(self) -> None:
        self._running = False
        if self._scheduler is not None:
            self._scheduler.cancel(SOURCE_RESTART_JOB)
        self.request_restart()

    async def _restart_job(self) -> None:
        self.request_restart()

    def _arm_restart_timer(self) -> None:
        """ソース起動ごとに単発タイマーを張り直す"""
        if self._scheduler is None:
            return
        run_at = _now() + timedelta(minutes=self._restart_interval)
        self._scheduler.schedule_once(SOURCE_RESTART_JOB, run_at, self._restart_job)
