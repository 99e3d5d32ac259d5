"""自動出退勤エージェント - エントリーポイント"""
import argparse
import asyncio
import json
import logging
import os
import signal
import sys

from dotenv import load_dotenv

from machine.attendance_machine import AttendanceStateMachine
from machine.state import WorkDayState
from schedulers.scheduler import AttendanceScheduler
from services.config_loader import ConfigError, load_config, validate_config
from services.presence_observer import LogStreamSource, PresenceObserver
from services.retry import RetryScheduler
from services.slack_client import ConsoleNotifier, DesktopNotifier, SlackNotifier

logger = logging.getLogger("presence_agent")

COMMANDS = ("run", "check-in", "check-out", "actual-times")


def setup_logging(config: dict) -> None:
    log_config = config["logging"]
    logging.basicConfig(
        level=getattr(logging, str(log_config["level"]).upper(), logging.INFO),
        format=log_config["format"],
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_notifier(config: dict):
    """設定に基づいて通知先を選ぶ（Slack → デスクトップ → コンソール）"""
    slack_config = config["slack"]
    slack_token = os.getenv("SLACK_BOT_TOKEN", "")
    slack_channel = os.getenv("SLACK_NOTIFY_CHANNEL", slack_config.get("notify_channel", ""))
    if slack_config["enabled"] and slack_token:
        return SlackNotifier(token=slack_token, channel=slack_channel)

    desktop_config = config["desktop_notify"]
    if desktop_config["enabled"] and sys.platform == "darwin":
        return DesktopNotifier(title=desktop_config["title"])
    return ConsoleNotifier()


def create_stamper(config: dict):
    stamper_type = config["browser"].get("stamper", "dummy")
    if stamper_type == "playwright":
        from services.attendance_browser import AttendanceBrowser
        return AttendanceBrowser(
            url=os.getenv("ATTENDANCE_URL", ""),
            user=os.getenv("ATTENDANCE_USER", ""),
            password=os.getenv("ATTENDANCE_PASS", ""),
            config=config,
        )

    from services.dummy_stamper import DummyStamper
    return DummyStamper()


def create_machine(config: dict, scheduler: AttendanceScheduler):
    """状態機械とその依存を生成"""
    retry_config = config["retry"]
    retry = RetryScheduler(
        max_attempts=retry_config["count"],
        delay_seconds=retry_config["delay_seconds"],
    )
    return AttendanceStateMachine(
        state=WorkDayState(),
        stamper=create_stamper(config),
        retry=retry,
        scheduler=scheduler,
        notifier=create_notifier(config),
        config=config,
    )


def create_observer(config: dict, scheduler: AttendanceScheduler) -> PresenceObserver:
    presence = config["presence"]
    command = presence["command"]
    return PresenceObserver(
        target_device=presence["target_device"],
        source_factory=lambda: LogStreamSource(command),
        scheduler=scheduler,
        restart_delay_seconds=presence["restart_delay_seconds"],
        restart_interval_minutes=presence["restart_interval_minutes"],
    )


async def run_agent(config: dict) -> None:
    """監視ループを開始し、SIGINT/SIGTERMまで動かし続ける"""
    scheduler = AttendanceScheduler()
    machine = create_machine(config, scheduler)
    observer = create_observer(config, scheduler)

    if hasattr(os, "geteuid") and os.geteuid() != 0:
        logger.warning("⚠️ root権限がないため近接ログを読めない可能性があります（sudo で実行してください）")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except NotImplementedError:
            pass

    scheduler.start()
    machine.start()
    monitor_task = loop.create_task(machine.run(observer), name="presence_monitor")
    logger.info("🤖 自動出退勤システム開始 (対象デバイス: %s)", config["presence"]["target_device"])

    try:
        await stop_event.wait()
    finally:
        logger.info("停止中...")
        observer.stop()
        monitor_task.cancel()
        await asyncio.gather(monitor_task, return_exceptions=True)
        await machine.wait_idle()
        scheduler.stop()
        await machine.close()
        logger.info("停止しました")


async def run_command(config: dict, command: str) -> dict:
    """手動操作を1回実行して結果を返す"""
    scheduler = AttendanceScheduler()
    machine = create_machine(config, scheduler)
    try:
        if command == "check-in":
            return (await machine.perform_check_in()).as_dict()
        if command == "check-out":
            return (await machine.perform_check_out()).as_dict()
        return await machine.get_actual_times()
    finally:
        await machine.close()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Bluetooth検知による自動出退勤エージェント")
    parser.add_argument("command", nargs="?", default="run", choices=COMMANDS)
    parser.add_argument("--config", default="config.yaml", help="設定ファイルのパス")
    return parser.parse_args(argv)


def main(argv=None):
    """メイン起動処理"""
    args = parse_args(argv)
    load_dotenv()
    config = load_config(args.config)
    setup_logging(config)

    try:
        validate_config(config, require_device=args.command == "run")
    except ConfigError as e:
        logger.error("設定エラー: %s", e)
        sys.exit(2)

    if args.command == "run":
        asyncio.run(run_agent(config))
        return

    result = asyncio.run(run_command(config, args.command))
    print(json.dumps(result, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    main()
