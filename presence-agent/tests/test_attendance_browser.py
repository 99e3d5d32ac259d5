import copy
import pytest
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch
from services.attendance_browser import AttendanceBrowser
from services.browser_strategies import (
    DISABLED_JS,
    ActionTarget,
    ExtractionStrategy,
    LegacyAttributeLocation,
    LocationStrategy,
    PositionalExtraction,
    PositionalLocation,
    StructuralLocation,
    build_targets,
)
from services.config_loader import DEFAULT_CONFIG
from services.stamper_interface import (
    Action,
    ActionFailure,
    OutcomeStatus,
    UNREGISTERED,
)


def _config():
    config = copy.deepcopy(DEFAULT_CONFIG)
    config["browser"]["page_settle_seconds"] = 0
    config["browser"]["action_settle_seconds"] = 0
    config["browser"]["hover_settle_seconds"] = 0
    return config


class FakeControl:
    def __init__(self, text="출근하기", disabled=False, visible=True,
                 click_error=None, script_error=None):
        self.text = text
        self.disabled = disabled
        self.visible = visible
        self.click_error = click_error
        self.script_error = script_error
        self.clicks = []

    async def evaluate(self, script):
        if script == DISABLED_JS:
            return self.disabled
        if self.script_error:
            raise self.script_error
        self.clicks.append("script")

    async def is_visible(self):
        return self.visible

    async def inner_text(self):
        return self.text

    async def hover(self, timeout=None):
        self.clicks.append("hover")

    async def click(self, timeout=None):
        if self.click_error:
            raise self.click_error
        self.clicks.append("click")


class FakeLocator:
    def __init__(self, controls):
        self._controls = controls

    async def count(self):
        return len(self._controls)

    def nth(self, index):
        return self._controls[index]


class FakePage:
    """selector → 要素リストの対応で page.locator を再現する"""

    def __init__(self, elements=None):
        self._elements = elements or {}
        self.queries = []

    def locator(self, selector, has_text=None):
        self.queries.append((selector, has_text))
        controls = self._elements.get(selector, [])
        if has_text is not None:
            controls = [c for c in controls if has_text in c.text]
        return FakeLocator(controls)


class FixedLocation(LocationStrategy):
    def __init__(self, control=None, error=None, name="fixed"):
        super().__init__({})
        self._control = control
        self._error = error
        self.name = name
        self.calls = 0

    async def try_locate(self, page, target):
        self.calls += 1
        if self._error:
            raise self._error
        return self._control


class FixedExtraction(ExtractionStrategy):
    def __init__(self, values=None, error=None):
        super().__init__({})
        self._values = values or {}
        self._error = error

    async def try_extract(self, page, target):
        if self._error:
            raise self._error
        return self._values.get(target.action)


def _browser(locators, extractors=None, login=None):
    return AttendanceBrowser(
        url="https://example.com/work-schedule",
        user="user",
        password="pass",
        config=_config(),
        login=login or MagicMock(login=AsyncMock()),
        locators=locators,
        extractors=extractors or [FixedExtraction({Action.CHECK_IN: "08:15:02"})],
    )


@pytest.mark.asyncio
async def test_check_in_success():
    """ボタンを見つけてクリックし、打刻時刻を読み取ること"""
    control = FakeControl()
    browser = _browser([FixedLocation(control)])

    outcome = await browser.perform_on_page(FakePage(), Action.CHECK_IN)

    assert outcome.status is OutcomeStatus.SUCCESS
    assert outcome.timestamp == "08:15:02"
    assert control.clicks == ["click"]


@pytest.mark.asyncio
async def test_location_strategies_first_success_wins():
    """失敗した探索方法は飛ばし、最初に見つかった方法で止まること"""
    control = FakeControl()
    broken = FixedLocation(error=RuntimeError("selector timeout"), name="broken")
    empty = FixedLocation(None, name="empty")
    found = FixedLocation(control, name="found")
    unused = FixedLocation(FakeControl(), name="unused")
    browser = _browser([broken, empty, found, unused])

    await browser.perform_on_page(FakePage(), Action.CHECK_IN)

    assert (broken.calls, empty.calls, found.calls, unused.calls) == (1, 1, 1, 0)


@pytest.mark.asyncio
async def test_disabled_control_is_already_done():
    """存在するが無効なボタンは打刻済み扱い（失敗ではない）"""
    page = FakePage({
        'button, .btn, [role="button"]': [FakeControl(text="출근하기", disabled=True)],
    })
    browser = _browser([FixedLocation(None)])

    outcome = await browser.perform_on_page(page, Action.CHECK_IN)

    assert outcome.status is OutcomeStatus.ALREADY_DONE
    assert outcome.success is True


@pytest.mark.asyncio
async def test_located_control_disabled_on_verify():
    """クリック直前の確認で無効なら打刻済み扱いにしクリックしないこと"""
    control = FakeControl(disabled=True)
    browser = _browser([FixedLocation(control)])

    outcome = await browser.perform_on_page(FakePage(), Action.CHECK_OUT)

    assert outcome.status is OutcomeStatus.ALREADY_DONE
    assert control.clicks == []


@pytest.mark.asyncio
async def test_control_not_found():
    """ボタンが全く無ければ ActionFailure"""
    browser = _browser([FixedLocation(None)])

    with pytest.raises(ActionFailure) as excinfo:
        await browser.perform_on_page(FakePage(), Action.CHECK_OUT)
    assert excinfo.value.reason == "control not found"


@pytest.mark.asyncio
async def test_control_not_visible():
    browser = _browser([FixedLocation(FakeControl(visible=False))])

    with pytest.raises(ActionFailure) as excinfo:
        await browser.perform_on_page(FakePage(), Action.CHECK_IN)
    assert excinfo.value.reason == "not interactable"


@pytest.mark.asyncio
async def test_falls_back_to_script_click():
    """通常クリックが失敗したらJavaScriptクリックを試すこと"""
    control = FakeControl(click_error=RuntimeError("intercepted"))
    browser = _browser([FixedLocation(control)])

    outcome = await browser.perform_on_page(FakePage(), Action.CHECK_IN)

    assert outcome.status is OutcomeStatus.SUCCESS
    assert control.clicks == ["script"]


@pytest.mark.asyncio
async def test_all_activation_methods_failed():
    control = FakeControl(
        click_error=RuntimeError("intercepted"),
        script_error=RuntimeError("detached"),
    )
    browser = _browser([FixedLocation(control)])

    with pytest.raises(ActionFailure) as excinfo:
        await browser.perform_on_page(FakePage(), Action.CHECK_IN)
    assert excinfo.value.reason == "all activation methods failed"
    assert control.clicks == ["hover"]


@pytest.mark.asyncio
async def test_extraction_failure_keeps_success():
    """時刻が読めなくても打刻は成功扱いで unregistered になること"""
    browser = _browser(
        [FixedLocation(FakeControl())],
        extractors=[FixedExtraction(error=RuntimeError("no field")), FixedExtraction()],
    )

    outcome = await browser.perform_on_page(FakePage(), Action.CHECK_IN)

    assert outcome.status is OutcomeStatus.SUCCESS
    assert outcome.timestamp == UNREGISTERED


@pytest.mark.asyncio
async def test_extract_times_falls_back_per_field():
    """1つ目の方法で読めない項目だけ2つ目の方法で補うこと"""
    browser = _browser(
        [],
        extractors=[
            FixedExtraction({Action.CHECK_IN: "08:10:00"}),
            FixedExtraction({Action.CHECK_IN: "x", Action.CHECK_OUT: "18:40:00"}),
        ],
    )
    times = await browser.extract_times(FakePage())
    assert times.check_in_time == "08:10:00"
    assert times.check_out_time == "18:40:00"


@pytest.mark.asyncio
async def test_perform_logs_in_with_fresh_session():
    """perform はセッションを開いてログインしてから打刻すること"""
    login = MagicMock(login=AsyncMock())
    browser = _browser([FixedLocation(FakeControl())], login=login)
    page = FakePage()

    @asynccontextmanager
    async def fake_session():
        yield page

    with patch.object(browser, "_session", fake_session):
        outcome = await browser.perform(Action.CHECK_IN)

    login.login.assert_awaited_once_with(page)
    assert outcome.status is OutcomeStatus.SUCCESS


@pytest.mark.asyncio
async def test_login_failure_propagates():
    """ログイン失敗は内部で握りつぶさないこと"""
    login = MagicMock(login=AsyncMock(side_effect=RuntimeError("bad credentials")))
    browser = _browser([FixedLocation(FakeControl())], login=login)

    @asynccontextmanager
    async def fake_session():
        yield FakePage()

    with patch.object(browser, "_session", fake_session):
        with pytest.raises(RuntimeError):
            await browser.perform(Action.CHECK_IN)


# ── 個別の戦略 ──────────────────────────────────────────────

SELECTORS = DEFAULT_CONFIG["browser"]["selectors"]
TARGETS = build_targets(DEFAULT_CONFIG["browser"]["actions"])


@pytest.mark.asyncio
async def test_structural_location_skips_disabled():
    disabled = FakeControl(text="출근하기", disabled=True)
    page = FakePage({"button.check-button": [disabled, FakeControl(text="퇴근하기")]})
    strategy = StructuralLocation(SELECTORS)

    assert await strategy.try_locate(page, TARGETS[Action.CHECK_IN]) is None
    found = await strategy.try_locate(page, TARGETS[Action.CHECK_OUT])
    assert found.text == "퇴근하기"


@pytest.mark.asyncio
async def test_positional_location_checks_label():
    """2番目のボタンが退勤ボタンのときだけ採用すること"""
    strategy = PositionalLocation(SELECTORS)
    target = TARGETS[Action.CHECK_OUT]

    page = FakePage({"button.check-button": [FakeControl("출근하기"), FakeControl("퇴근하기")]})
    assert (await strategy.try_locate(page, target)).text == "퇴근하기"

    page = FakePage({"button.check-button": [FakeControl("출근하기"), FakeControl("휴가")]})
    assert await strategy.try_locate(page, target) is None

    page = FakePage({"button.check-button": [FakeControl("출근하기")]})
    assert await strategy.try_locate(page, target) is None


@pytest.mark.asyncio
async def test_legacy_location_selector():
    page = FakePage({".check-in-button:not(.disabled)": [FakeControl()]})
    strategy = LegacyAttributeLocation(SELECTORS)
    assert await strategy.try_locate(page, TARGETS[Action.CHECK_IN]) is not None
    assert await strategy.try_locate(page, TARGETS[Action.CHECK_OUT]) is None


@pytest.mark.asyncio
async def test_positional_extraction():
    page = FakePage({".check-time": [FakeControl(" 08:55:10 ")]})
    strategy = PositionalExtraction(SELECTORS)
    assert await strategy.try_extract(page, TARGETS[Action.CHECK_IN]) == "08:55:10"
    assert await strategy.try_extract(page, TARGETS[Action.CHECK_OUT]) is None


def test_action_target_from_config():
    target = ActionTarget.from_config(
        Action.CHECK_OUT,
        {"label": "퇴근", "exact_label": "퇴근하기", "position": "1", "legacy_selector": ".out"},
    )
    assert target.position == 1
    assert target.action is Action.CHECK_OUT
