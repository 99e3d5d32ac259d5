import copy
import os
from pathlib import Path

import yaml

from services.presence_observer import DEFAULT_COMMAND

DEFAULT_CONFIG = {
    "logging": {
        "level": "INFO",
        "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    },
    "presence": {
        "target_device": "",
        "command": DEFAULT_COMMAND,
        "restart_delay_seconds": 2,
        "restart_interval_minutes": 60,
    },
    "time_rules": {
        "work_start_hour": 8,
        "work_start_end_hour": 9,
        "work_start_end_minute": 30,
        "work_end_hour": 18,
        "forced_checkout_hour": 21,
        "absence_threshold_minutes": 15,
        "check_interval_minutes": 15,
    },
    "retry": {
        "count": 3,
        "delay_seconds": 2,
    },
    "browser": {
        "stamper": "dummy",
        "headless": True,
        "launch_args": ["--no-sandbox", "--disable-setuid-sandbox"],
        "timeout_ms": 8000,
        "page_settle_seconds": 3,
        "action_settle_seconds": 3,
        "hover_settle_seconds": 0.5,
        "selectors": {
            "username_field": 'input[title="아이디"]',
            "password_field": 'input[title="비밀번호"]',
            "username_input": '.input-box input[type="text"]',
            "password_input": '.input-box input[type="password"]',
            "login_button": ".submit-button.blue",
            "check_button": "button.check-button",
            "clickable": 'button, .btn, [role="button"]',
            "time_field": ".check-time",
            "time_containers": [".attendance-check__item", ".check-item"],
        },
        "actions": {
            "check_in": {
                "label": "출근",
                "exact_label": "출근하기",
                "position": 0,
                "legacy_selector": ".check-in-button",
            },
            "check_out": {
                "label": "퇴근",
                "exact_label": "퇴근하기",
                "position": 1,
                "legacy_selector": ".check-out-button",
            },
        },
    },
    "slack": {
        "enabled": False,
        "notify_channel": "",
    },
    "desktop_notify": {
        "enabled": True,
        "title": "Auto Attendance",
    },
}


class ConfigError(ValueError):
    """起動時に検出される設定不備"""


def _deep_merge(base: dict, override: dict) -> dict:
    """ベース設定にオーバーライドをマージする"""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _apply_env(config: dict) -> dict:
    """環境変数（.env含む）で端末ごとの値を上書きする"""
    target = os.getenv("TARGET_DEVICE")
    if target:
        config["presence"]["target_device"] = target
    return config


def load_config(path: str = "config.yaml") -> dict:
    """YAML設定ファイルをロードし、デフォルト設定とマージして返す"""
    config_path = Path(path)
    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            user_config = yaml.safe_load(f) or {}
        config = _deep_merge(copy.deepcopy(DEFAULT_CONFIG), user_config)
    else:
        config = copy.deepcopy(DEFAULT_CONFIG)
    return _apply_env(config)


def _check_range(section: dict, key: str, low: int, high: int):
    value = section.get(key)
    if not isinstance(value, int) or not low <= value <= high:
        raise ConfigError(f"{key} must be an integer in [{low}, {high}] (got {value!r})")


def _check_positive(section: dict, key: str):
    value = section.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{key} must be a positive number (got {value!r})")


def validate_config(config: dict, require_device: bool = True) -> dict:
    """起動時の設定検証。不備があれば ConfigError"""
    rules = config["time_rules"]
    for key in ("work_start_hour", "work_start_end_hour", "work_end_hour", "forced_checkout_hour"):
        _check_range(rules, key, 0, 23)
    _check_range(rules, "work_start_end_minute", 0, 59)
    _check_positive(rules, "absence_threshold_minutes")
    _check_positive(rules, "check_interval_minutes")

    retry = config["retry"]
    _check_range(retry, "count", 1, 100)
    if retry.get("delay_seconds", 0) < 0:
        raise ConfigError("retry.delay_seconds must not be negative")

    presence = config["presence"]
    _check_positive(presence, "restart_interval_minutes")
    if require_device and not presence.get("target_device"):
        raise ConfigError("presence.target_device (or TARGET_DEVICE) is required")

    stamper = config["browser"].get("stamper")
    if stamper not in ("dummy", "playwright"):
        raise ConfigError(f"browser.stamper must be 'dummy' or 'playwright' (got {stamper!r})")
    return config
