from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

UNREGISTERED = "unregistered"


class Action(str, Enum):
    CHECK_IN = "check_in"
    CHECK_OUT = "check_out"


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    ALREADY_DONE = "already_done"
    FAILED = "failed"
    IN_PROGRESS = "in_progress"  # 退勤処理の多重実行拒否（状態機械のみが返す）


@dataclass(frozen=True)
class ActionOutcome:
    """打刻結果。成功・打刻済み・失敗を明示的に区別する"""

    action: Action
    status: OutcomeStatus
    timestamp: str = UNREGISTERED
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        """その日の遷移が完了した（成功 or 打刻済み）か"""
        return self.status in (OutcomeStatus.SUCCESS, OutcomeStatus.ALREADY_DONE)

    @classmethod
    def succeeded(cls, action: Action, timestamp: str = UNREGISTERED) -> "ActionOutcome":
        return cls(action=action, status=OutcomeStatus.SUCCESS, timestamp=timestamp)

    @classmethod
    def already_done(cls, action: Action) -> "ActionOutcome":
        return cls(action=action, status=OutcomeStatus.ALREADY_DONE)

    @classmethod
    def failed(cls, action: Action, reason: str) -> "ActionOutcome":
        return cls(action=action, status=OutcomeStatus.FAILED, error=reason)

    @classmethod
    def in_progress(cls, action: Action) -> "ActionOutcome":
        return cls(
            action=action,
            status=OutcomeStatus.IN_PROGRESS,
            error="check-out already in progress",
        )

    def as_dict(self) -> dict:
        return {
            "action": self.action.value,
            "status": self.status.value,
            "timestamp": self.timestamp,
            "error": self.error,
        }


@dataclass(frozen=True)
class AttendanceTimes:
    check_in_time: str = UNREGISTERED
    check_out_time: str = UNREGISTERED

    def for_action(self, action: Action) -> str:
        if action is Action.CHECK_IN:
            return self.check_in_time
        return self.check_out_time

    def as_dict(self) -> dict:
        return {
            "check_in_time": self.check_in_time,
            "check_out_time": self.check_out_time,
        }


class ActionFailure(Exception):
    """一時的な打刻失敗（ボタン未検出・操作不可・クリック失敗）。リトライ対象"""

    def __init__(self, action: Action, reason: str):
        super().__init__(f"{action.value}: {reason}")
        self.action = action
        self.reason = reason


class StamperInterface(ABC):
    """打刻サービスの抽象インターフェース"""

    @abstractmethod
    async def perform(self, action: Action) -> ActionOutcome:
        """1回分の打刻を実行する。ボタン探索〜クリックの失敗は ActionFailure を送出する"""
        ...

    @abstractmethod
    async def read_times(self) -> AttendanceTimes:
        """勤怠システム上の実際の出勤・退勤時刻を取得"""
        ...

    @abstractmethod
    async def close(self) -> None:
        """リソース解放"""
        ...
