"""Injection limits for the context document.

Limits are persisted as a small JSON document:

```json
{
  "limits": {
    "user": 10,
    "goals": 10,
    "projects": 10,
    "people": 5,
    "facts": 10,
    "preferences": 5,
    "timeline_days": 14,
    "relation_depth": 2
  }
}
```

Out-of-range values are clamped and unparseable values fall back to the
default; a bad settings file never prevents the context from being built.
"""

import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# (min, max) per field; fields not listed use DEFAULT_RANGE
DEFAULT_RANGE = (1, 50)
LIMIT_RANGES: dict[str, tuple[int, int]] = {
    "relation_depth": (0, 5),
}


@dataclass
class InjectionLimits:
    """Per-category caps, timeline window and relation depth.

    Attributes:
        user: Max entries of the user profile.
        goals: Max active goals.
        projects: Max active projects.
        people: Max people.
        facts: Max facts.
        preferences: Max preferences.
        timeline_days: Timeline window, in days on each side of now.
        relation_depth: Levels of related entries expanded under each entry.
    """

    user: int = 10
    goals: int = 10
    projects: int = 10
    people: int = 5
    facts: int = 10
    preferences: int = 5
    timeline_days: int = 14
    relation_depth: int = 2

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def limit_range(name: str) -> tuple[int, int]:
    """Allowed [min, max] for a limit field."""
    return LIMIT_RANGES.get(name, DEFAULT_RANGE)


def clamp_limits(values: dict[str, Any], base: InjectionLimits | None = None) -> InjectionLimits:
    """Merge values over base, clamping each field into its range.

    Unknown keys are ignored. Values that are not integers (or integer
    strings) keep the base value.
    """
    base = base or InjectionLimits()
    merged = base.to_dict()
    for f in fields(InjectionLimits):
        if f.name not in values:
            continue
        raw = values[f.name]
        try:
            if isinstance(raw, bool):
                raise TypeError("booleans are not limits")
            value = int(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid limit %s=%r", f.name, raw)
            continue
        low, high = limit_range(f.name)
        if not low <= value <= high:
            logger.info("Clamping limit %s=%d into [%d, %d]", f.name, value, low, high)
        merged[f.name] = min(max(value, low), high)
    return InjectionLimits(**merged)


def load_limits(path: Path) -> InjectionLimits:
    """Load limits from a settings file, falling back to defaults.

    Args:
        path: Path to settings.json.

    Returns:
        InjectionLimits with stored values clamped into range.
    """
    if not path.exists():
        return InjectionLimits()
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        logger.warning("Invalid JSON in %s: %s. Using defaults.", path, e)
        return InjectionLimits()
    except OSError as e:
        logger.warning("Cannot read %s: %s. Using defaults.", path, e)
        return InjectionLimits()

    limits = data.get("limits", {}) if isinstance(data, dict) else {}
    if not isinstance(limits, dict):
        limits = {}
    return clamp_limits(limits)


def save_limits(path: Path, **partial: Any) -> InjectionLimits:
    """Merge partial values into the stored limits and persist them.

    Args:
        path: Path to settings.json.
        **partial: Limit fields to change.

    Returns:
        The resulting (clamped) limits.
    """
    limits = clamp_limits(partial, load_limits(path))
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump({"limits": limits.to_dict()}, f, indent=2)
    except OSError as e:
        logger.error("Failed to save limits to %s: %s", path, e)
        raise
    return limits
