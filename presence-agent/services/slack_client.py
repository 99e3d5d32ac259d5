import logging
import subprocess
import sys

logger = logging.getLogger(__name__)


class ConsoleNotifier:
    """コンソール出力による通知（フォールバック用）"""

    def send(self, message: str) -> bool:
        print(f"[勤怠通知] {message}", file=sys.stdout)
        return True

    def send_error(self, error: str) -> bool:
        print(f"[勤怠エラー] {error}", file=sys.stderr)
        return True


class SlackNotifier:
    """Slack APIによる通知サービス"""

    def __init__(self, token: str, channel: str):
        self._channel = channel
        self._client = None
        self._fallback = ConsoleNotifier()

        if token:
            try:
                from slack_sdk import WebClient
                self._client = WebClient(token=token)
            except Exception as e:
                logger.warning("Slackクライアント初期化失敗: %s", e)

    def send(self, message: str) -> bool:
        """メッセージ送信（失敗時はフォールバック）"""
        if self._client is None:
            return self._fallback.send(message)

        try:
            self._client.chat_postMessage(channel=self._channel, text=message)
            return True
        except Exception as e:
            logger.warning("Slack通知失敗: %s", e)
            return False

    def send_error(self, error: str) -> bool:
        """エラー通知"""
        message = f"❌ 打刻に失敗しました。手動確認をお願いします（エラー: {error}）"
        return self.send(message)


def _escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


class DesktopNotifier:
    """macOS の通知センターに表示する（osascript、結果は待たない）"""

    def __init__(self, title: str = "Auto Attendance", runner=subprocess.Popen):
        self._title = title
        self._runner = runner

    def _display(self, message: str, subtitle: str) -> bool:
        script = (
            f'display notification "{_escape(message)}" '
            f'with title "{_escape(self._title)}" subtitle "{_escape(subtitle)}"'
        )
        try:
            self._runner(
                ["osascript", "-e", script],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
            return True
        except OSError as e:
            logger.debug("デスクトップ通知失敗: %s", e)
            return False

    def send(self, message: str) -> bool:
        return self._display(message, "")

    def send_error(self, error: str) -> bool:
        return self._display(f"手動確認をお願いします: {error}", "❌ 打刻失敗")
