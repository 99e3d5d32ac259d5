import logging
from datetime import datetime

from services.stamper_interface import (
    Action,
    ActionOutcome,
    AttendanceTimes,
    StamperInterface,
    UNREGISTERED,
)

logger = logging.getLogger(__name__)


class DummyStamper(StamperInterface):
    """ダミー打刻（ログ出力のみ）。ブラウザを使わずに動作確認するための実装。"""

    def __init__(self):
        self._times = {Action.CHECK_IN: UNREGISTERED, Action.CHECK_OUT: UNREGISTERED}

    async def perform(self, action: Action) -> ActionOutcome:
        if action is Action.CHECK_IN and self._times[action] != UNREGISTERED:
            logger.info("[DummyStamper] 出勤済み（シミュレーション）")
            return ActionOutcome.already_done(action)

        timestamp = datetime.now().strftime("%H:%M:%S")
        self._times[action] = timestamp
        logger.info("[DummyStamper] %s（シミュレーション）: %s", action.value, timestamp)
        return ActionOutcome.succeeded(action, timestamp=timestamp)

    async def read_times(self) -> AttendanceTimes:
        return AttendanceTimes(
            check_in_time=self._times[Action.CHECK_IN],
            check_out_time=self._times[Action.CHECK_OUT],
        )

    async def close(self) -> None:
        pass
