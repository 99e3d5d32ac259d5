from dataclasses import dataclass, fields
from datetime import datetime
from typing import Optional

from services.stamper_interface import UNREGISTERED


@dataclass
class WorkDayState:
    """1日分の勤務状態。状態機械だけが変更する"""

    is_work_started: bool = False               # 出勤処理を開始済み
    forced_checkout_done: bool = False          # 強制退勤を実行済み（1日1回）
    is_checkout_in_progress: bool = False       # 退勤処理の実行中フラグ（多重実行防止）
    last_observed_quality: Optional[int] = None  # 最後に受け取ったRSSI
    last_observed_at: Optional[datetime] = None  # 最後に検知した時刻
    check_in_time: str = UNREGISTERED
    check_out_time: str = UNREGISTERED
    last_absence_checkout_at: Optional[datetime] = None  # 不在による退勤を起動した時刻

    def reset(self) -> None:
        """初期状態に戻す。実行中の退勤処理のフラグはその処理自身が下ろす"""
        in_progress = self.is_checkout_in_progress
        for f in fields(self):
            setattr(self, f.name, f.default)
        self.is_checkout_in_progress = in_progress
