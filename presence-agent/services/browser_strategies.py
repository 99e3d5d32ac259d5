"""打刻ボタンの探索・クリック・時刻読み取りの戦略群

勤怠システムの画面構造は保証されないため、各工程は独立した戦略を
優先順に並べ、最初に成功したものを採用する。戦略は Playwright の
page / Locator を受け取り、失敗時は None を返すか例外を送出する。
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

from services.stamper_interface import Action

DISABLED_JS = (
    "el => !!(el.disabled || el.classList.contains('disabled')"
    " || el.getAttribute('aria-disabled') === 'true')"
)

# ラベル文字列を直接含むもっとも内側の要素から、時刻欄を探す
CONTEXT_TIME_JS = """
({ label, containers, timeField }) => {
  const owns = (el) => Array.from(el.childNodes).some(
    (n) => n.nodeType === Node.TEXT_NODE && n.textContent.includes(label)
  );
  const anchor = Array.from(document.querySelectorAll('body *')).find(owns);
  if (!anchor) return null;
  let scope = null;
  for (const selector of containers) {
    scope = anchor.closest(selector);
    if (scope) break;
  }
  scope = scope || anchor.parentElement;
  if (!scope) return null;
  const field = scope.querySelector(timeField);
  return field ? field.textContent.trim() : null;
}
"""


@dataclass(frozen=True)
class ActionTarget:
    """打刻種別ごとの画面上の手がかり"""

    action: Action
    label: str
    exact_label: str
    position: int
    legacy_selector: str

    @classmethod
    def from_config(cls, action: Action, config: dict) -> "ActionTarget":
        return cls(
            action=action,
            label=config["label"],
            exact_label=config["exact_label"],
            position=int(config["position"]),
            legacy_selector=config["legacy_selector"],
        )


async def is_disabled(control) -> bool:
    return bool(await control.evaluate(DISABLED_JS))


async def first_usable(locator):
    """表示中かつ有効な最初の要素を返す"""
    for i in range(await locator.count()):
        candidate = locator.nth(i)
        if await candidate.is_visible() and not await is_disabled(candidate):
            return candidate
    return None


# ── ボタン探索 ────────────────────────────────────────────────


class LocationStrategy(ABC):
    name = "location"

    def __init__(self, selectors: dict):
        self._selectors = selectors

    @abstractmethod
    async def try_locate(self, page, target: ActionTarget):
        """見つかった操作可能な要素、なければ None"""
        ...


class StructuralLocation(LocationStrategy):
    """check-button クラスのボタンのうちラベルを含むもの"""

    name = "structural"

    async def try_locate(self, page, target):
        return await first_usable(
            page.locator(self._selectors["check_button"], has_text=target.label)
        )


class ExactLabelLocation(LocationStrategy):
    """「출근하기」等の正確なボタン名"""

    name = "exact_label"

    async def try_locate(self, page, target):
        return await first_usable(
            page.locator(self._selectors["clickable"], has_text=target.exact_label)
        )


class PositionalLocation(LocationStrategy):
    """同じクラスのボタンを並び順で選ぶ（文字列で念のため確認）"""

    name = "positional"

    async def try_locate(self, page, target):
        buttons = page.locator(self._selectors["check_button"])
        if await buttons.count() <= target.position:
            return None
        candidate = buttons.nth(target.position)
        text = await candidate.inner_text()
        if target.label not in text:
            return None
        if await candidate.is_visible() and not await is_disabled(candidate):
            return candidate
        return None


class LegacyAttributeLocation(LocationStrategy):
    """旧画面の check-in-button / check-out-button クラス"""

    name = "legacy_attribute"

    async def try_locate(self, page, target):
        return await first_usable(page.locator(f"{target.legacy_selector}:not(.disabled)"))


class PermissiveLocation(LocationStrategy):
    """ラベルを含むクリック可能そうな要素なら何でも"""

    name = "permissive"

    async def try_locate(self, page, target):
        xpath = (
            f"xpath=//*[contains(normalize-space(.), '{target.label}')"
            " and (self::button or @onclick or @role='button' or contains(@class, 'btn'))"
            " and not(@disabled)]"
        )
        return await first_usable(page.locator(xpath))


def default_location_strategies(selectors: dict) -> List[LocationStrategy]:
    return [
        StructuralLocation(selectors),
        ExactLabelLocation(selectors),
        PositionalLocation(selectors),
        LegacyAttributeLocation(selectors),
        PermissiveLocation(selectors),
    ]


# ── クリック ──────────────────────────────────────────────────


class ActivationStrategy(ABC):
    name = "activation"

    @abstractmethod
    async def try_activate(self, control) -> None:
        """クリックを試みる。失敗時は例外"""
        ...


class DirectClick(ActivationStrategy):
    name = "direct_click"

    def __init__(self, timeout_ms: int = 8000):
        self._timeout = timeout_ms

    async def try_activate(self, control):
        await control.click(timeout=self._timeout)


class ScriptClick(ActivationStrategy):
    name = "script_click"

    async def try_activate(self, control):
        await control.evaluate("el => el.click()")


class HoverClick(ActivationStrategy):
    name = "hover_click"

    def __init__(self, timeout_ms: int = 8000, settle_seconds: float = 0.5, sleep=asyncio.sleep):
        self._timeout = timeout_ms
        self._settle = settle_seconds
        self._sleep = sleep

    async def try_activate(self, control):
        await control.hover(timeout=self._timeout)
        await self._sleep(self._settle)
        await control.click(timeout=self._timeout)


def default_activation_strategies(timeout_ms: int, hover_settle_seconds: float) -> List[ActivationStrategy]:
    return [
        DirectClick(timeout_ms),
        ScriptClick(),
        HoverClick(timeout_ms, hover_settle_seconds),
    ]


# ── 時刻読み取り ──────────────────────────────────────────────


class ExtractionStrategy(ABC):
    name = "extraction"

    def __init__(self, selectors: dict):
        self._selectors = selectors

    @abstractmethod
    async def try_extract(self, page, target: ActionTarget) -> Optional[str]:
        ...


class ContextExtraction(ExtractionStrategy):
    """ラベル周辺（同じ項目ブロック内）の時刻欄を読む"""

    name = "context"

    async def try_extract(self, page, target):
        value = await page.evaluate(
            CONTEXT_TIME_JS,
            {
                "label": target.label,
                "containers": list(self._selectors["time_containers"]),
                "timeField": self._selectors["time_field"],
            },
        )
        return value or None


class PositionalExtraction(ExtractionStrategy):
    """時刻欄を並び順で読む（出勤=1番目、退勤=2番目）"""

    name = "positional"

    async def try_extract(self, page, target):
        fields = page.locator(self._selectors["time_field"])
        if await fields.count() <= target.position:
            return None
        text = (await fields.nth(target.position).inner_text()).strip()
        return text or None


def default_extraction_strategies(selectors: dict) -> List[ExtractionStrategy]:
    return [ContextExtraction(selectors), PositionalExtraction(selectors)]


def build_targets(actions_config: Dict[str, dict]) -> Dict[Action, ActionTarget]:
    return {
        action: ActionTarget.from_config(action, actions_config[action.value])
        for action in Action
    }
