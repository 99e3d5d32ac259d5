import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from services.browser_strategies import (
    ActionTarget,
    ActivationStrategy,
    ExtractionStrategy,
    LocationStrategy,
    build_targets,
    default_activation_strategies,
    default_extraction_strategies,
    default_location_strategies,
    is_disabled,
)
from services.form_login import FormLogin
from services.stamper_interface import (
    Action,
    ActionFailure,
    ActionOutcome,
    AttendanceTimes,
    StamperInterface,
    UNREGISTERED,
)

logger = logging.getLogger(__name__)


class AttendanceBrowser(StamperInterface):
    """Playwrightで勤怠システムにアクセスし打刻する

    打刻1回ごとに独立したブラウザコンテキストを開き、毎回ログインし直す。
    ボタン探索・クリック・時刻読み取りはそれぞれ戦略リストを優先順に試す。
    """

    def __init__(
        self,
        url: str,
        user: str,
        password: str,
        config: dict,
        login=None,
        locators: Optional[List[LocationStrategy]] = None,
        activators: Optional[List[ActivationStrategy]] = None,
        extractors: Optional[List[ExtractionStrategy]] = None,
        sleep=asyncio.sleep,
    ):
        self._config = config["browser"]
        selectors = self._config["selectors"]
        timeout_ms = self._config["timeout_ms"]

        self._targets = build_targets(self._config["actions"])
        self._login = login or FormLogin(url, user, password, selectors, timeout_ms)
        self._locators = locators or default_location_strategies(selectors)
        self._activators = activators or default_activation_strategies(
            timeout_ms, self._config["hover_settle_seconds"]
        )
        self._extractors = extractors or default_extraction_strategies(selectors)
        self._sleep = sleep
        self._playwright = None
        self._browser = None

    async def _get_browser(self):
        """ブラウザを取得（プロセスは使い回し、セッションは毎回分離）"""
        if self._browser is None:
            from playwright.async_api import async_playwright

            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self._config["headless"],
                args=self._config["launch_args"],
            )
        return self._browser

    @asynccontextmanager
    async def _session(self):
        browser = await self._get_browser()
        context = await browser.new_context()
        try:
            page = await context.new_page()
            page.set_default_timeout(self._config["timeout_ms"])
            yield page
        finally:
            await context.close()

    async def _open_logged_in(self, page) -> None:
        await self._login.login(page)
        await self._sleep(self._config["page_settle_seconds"])

    async def perform(self, action: Action) -> ActionOutcome:
        """1回分の打刻（新規セッション＋ログインから）"""
        logger.info("🚀 %s 自動化開始", action.value)
        async with self._session() as page:
            await self._open_logged_in(page)
            return await self.perform_on_page(page, action)

    async def read_times(self) -> AttendanceTimes:
        """勤怠システム上の実際の打刻時刻を取得（キャッシュなし）"""
        async with self._session() as page:
            await self._open_logged_in(page)
            return await self.extract_times(page)

    async def perform_on_page(self, page, action: Action) -> ActionOutcome:
        target = self._targets[action]

        control = await self._locate(page, target)
        if control is None:
            if await self._has_disabled_match(page, target):
                logger.info("✅ %s ボタンが無効状態 - 打刻済み", target.label)
                return ActionOutcome.already_done(action)
            raise ActionFailure(action, "control not found")

        try:
            disabled = await is_disabled(control)
            visible = await control.is_visible()
        except Exception as e:
            raise ActionFailure(action, f"not interactable: {e}") from e
        if disabled:
            logger.info("✅ %s ボタンが無効状態 - 打刻済み", target.label)
            return ActionOutcome.already_done(action)
        if not visible:
            raise ActionFailure(action, "not interactable")

        if not await self._activate(control):
            raise ActionFailure(action, "all activation methods failed")

        await self._sleep(self._config["action_settle_seconds"])
        times = await self.extract_times(page)
        timestamp = times.for_action(action)
        logger.info("🎉 %s 完了 (%s)", action.value, timestamp)
        return ActionOutcome.succeeded(action, timestamp=timestamp)

    async def _locate(self, page, target: ActionTarget):
        for strategy in self._locators:
            try:
                control = await strategy.try_locate(page, target)
            except Exception as e:
                logger.debug("探索 %s 失敗: %s", strategy.name, e)
                continue
            if control is not None:
                logger.info("🔍 %s ボタン発見 (方法: %s)", target.label, strategy.name)
                return control
        return None

    async def _has_disabled_match(self, page, target: ActionTarget) -> bool:
        """ラベルを含む表示中のボタンに無効なものがあるか"""
        try:
            matches = page.locator(self._config["selectors"]["clickable"], has_text=target.label)
            for i in range(await matches.count()):
                candidate = matches.nth(i)
                if await candidate.is_visible() and await is_disabled(candidate):
                    return True
        except Exception as e:
            logger.warning("ボタン状態の分析に失敗: %s", e)
        return False

    async def _activate(self, control) -> bool:
        for strategy in self._activators:
            try:
                await strategy.try_activate(control)
            except Exception as e:
                logger.debug("クリック %s 失敗: %s", strategy.name, e)
                continue
            logger.info("🖱️ クリック成功 (方法: %s)", strategy.name)
            return True
        return False

    async def extract_times(self, page) -> AttendanceTimes:
        """出勤・退勤時刻を読む。読めない項目は unregistered（例外は出さない）"""
        found = {}
        for action, target in self._targets.items():
            for strategy in self._extractors:
                try:
                    value = await strategy.try_extract(page, target)
                except Exception as e:
                    logger.debug("時刻読み取り %s 失敗: %s", strategy.name, e)
                    continue
                if value:
                    found[action] = value
                    break
            if action not in found:
                logger.info("⚠️ %s 時刻を読み取れませんでした", target.label)

        return AttendanceTimes(
            check_in_time=found.get(Action.CHECK_IN, UNREGISTERED),
            check_out_time=found.get(Action.CHECK_OUT, UNREGISTERED),
        )

    async def close(self):
        """ブラウザを閉じる"""
        if self._browser:
            await self._browser.close()
            self._browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None
