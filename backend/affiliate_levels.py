"""
Affiliate Level Resolver

Commission tiers are stored in one of two shapes: a flat ``sales_thresholds``
map ({"2": 10, ...}) or, on older settings rows, a ``requiredSales`` field
inside each ``commission_levels`` entry. ``normalize_level_config`` reads
both into one ``LevelConfig``; everything else works on that.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

MIN_LEVEL = 1
MAX_LEVEL = 5
LEVELS = tuple(range(MIN_LEVEL, MAX_LEVEL + 1))


@dataclass(frozen=True)
class LevelConfig:
    thresholds: Dict[int, int] = field(default_factory=dict)  # level -> delivered sales needed
    percentages: Dict[int, float] = field(default_factory=dict)  # enabled levels only


def _level_key(key: Any) -> Optional[int]:
    try:
        level = int(key)
    except (TypeError, ValueError):
        return None
    return level if MIN_LEVEL <= level <= MAX_LEVEL else None


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def normalize_level_config(
    commission_levels: Optional[Mapping[Any, Any]],
    sales_thresholds: Optional[Mapping[Any, Any]] = None
) -> LevelConfig:
    """
    Build the canonical level config from a settings row.

    The flat threshold map wins when present; otherwise thresholds come from
    ``requiredSales`` of each enabled commission level. Level 1 always has a
    threshold of 0.
    """
    percentages: Dict[int, float] = {}
    legacy_thresholds: Dict[int, int] = {}

    for key, entry in (commission_levels or {}).items():
        level = _level_key(key)
        if level is None or not isinstance(entry, Mapping):
            continue
        if not entry.get("enabled", False):
            continue
        percentage = _number(entry.get("percentage"))
        if percentage is not None:
            percentages[level] = percentage
        required = _number(entry.get("requiredSales", entry.get("required_sales")))
        if required is not None:
            legacy_thresholds[level] = int(required)

    if sales_thresholds:
        thresholds = {}
        for key, value in sales_thresholds.items():
            level = _level_key(key)
            required = _number(value)
            if level is not None and required is not None:
                thresholds[level] = int(required)
    else:
        thresholds = legacy_thresholds

    thresholds.setdefault(MIN_LEVEL, 0)
    return LevelConfig(thresholds=thresholds, percentages=percentages)


def calculate_affiliate_level(delivered_sales: int, thresholds: Mapping[int, int]) -> int:
    """Highest level whose threshold is met; level 1 when none is."""
    for level in reversed(LEVELS):
        threshold = thresholds.get(level)
        if threshold is not None and delivered_sales >= threshold:
            return level
    return MIN_LEVEL


def get_next_level_progress(current_level: int, delivered_sales: int, thresholds: Mapping[int, int]) -> Dict[str, Any]:
    """
    Next achievable level and percentage progress towards it.

    Returns {"next_level": None, "required_sales": 0, "progress": 100} at the top.
    """
    for level in LEVELS:
        if level <= current_level or level not in thresholds:
            continue
        required_sales = thresholds[level]
        if required_sales <= 0:
            progress = 100.0
        else:
            progress = min(100.0, delivered_sales / required_sales * 100)
        return {"next_level": level, "required_sales": required_sales, "progress": progress}

    return {"next_level": None, "required_sales": 0, "progress": 100.0}


def commission_percentage_for(level: int, config: LevelConfig) -> Optional[float]:
    """Percentage for ``level``; None when that level is missing or disabled."""
    return config.percentages.get(level)
