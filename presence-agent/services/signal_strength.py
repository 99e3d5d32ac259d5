from typing import Optional

# (下限RSSI, 段階) の順序付き閾値
_THRESHOLDS = ((-50, 1), (-60, 2), (-70, 3))
WEAKEST_TIER = 4

TIER_LABELS = {
    1: "非常に強い",
    2: "強い",
    3: "普通",
    4: "弱い",
}


def classify_signal(quality) -> int:
    """RSSI値を4段階（1=最強〜4=最弱）に分類する。不正値・None は4"""
    try:
        value = int(quality)
    except (TypeError, ValueError):
        return WEAKEST_TIER

    for lower_bound, tier in _THRESHOLDS:
        if value >= lower_bound:
            return tier
    return WEAKEST_TIER


def describe_tier(tier: int) -> str:
    return TIER_LABELS.get(tier, TIER_LABELS[WEAKEST_TIER])


def describe_signal(quality: Optional[int]) -> str:
    """ログ・通知用の表示文字列"""
    return f"{quality} ({describe_tier(classify_signal(quality))})"
