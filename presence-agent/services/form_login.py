import logging

logger = logging.getLogger(__name__)


class LoginError(Exception):
    """勤怠システムへのログイン失敗"""


class FormLogin:
    """ID/パスワードのログインフォームを入力して認証する"""

    def __init__(self, url: str, user: str, password: str, selectors: dict, timeout_ms: int = 8000):
        self._url = url
        self._user = user
        self._password = password
        self._selectors = selectors
        self._timeout = timeout_ms

    async def login(self, page) -> None:
        """ログインページを開いて認証する。失敗時は LoginError（内部で再試行しない）"""
        if not self._url:
            raise LoginError("ATTENDANCE_URL is not configured")

        try:
            logger.info("🌐 ログインページへ移動中: %s", self._url)
            await page.goto(self._url, wait_until="networkidle")
            await page.wait_for_selector(self._selectors["username_field"], timeout=self._timeout)
            await page.wait_for_selector(self._selectors["password_field"], timeout=self._timeout)

            await page.fill(self._selectors["username_input"], self._user)
            await page.fill(self._selectors["password_input"], self._password)
            await page.click(self._selectors["login_button"])
            await page.wait_for_load_state("networkidle", timeout=self._timeout)
        except Exception as e:
            raise LoginError(f"login failed: {e}") from e

        logger.info("✅ ログイン成功")
