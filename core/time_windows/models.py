"""
Calculation Window Models

Handles the look-back windows that bound which events enter a pass:
- Per-operator windows in days (from operator settings)
- Per-pass overrides (a fixed number of days for everyone)
- Bypass for full-history recalculation
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional
import pytz


DEFAULT_WINDOW_DAYS = 30


def _validate_days(days, label: str) -> int:
    if isinstance(days, bool) or not isinstance(days, (int, float)):
        raise ValueError(f"{label} must be a number of days, got {days!r}")
    if days <= 0:
        raise ValueError(f"{label} must be positive, got {days}")
    return int(days)


@dataclass
class CalculationWindow:
    """
    Window options for one calculation pass.

    window_days overrides every operator's own setting.
    bypass disables date filtering entirely (full history).
    """
    window_days: Optional[int] = None
    bypass: bool = False

    def __post_init__(self):
        """Validate window override"""
        if self.window_days is not None:
            self.window_days = _validate_days(self.window_days, "window_days")

    @classmethod
    def full_history(cls) -> 'CalculationWindow':
        return cls(bypass=True)

    def __repr__(self) -> str:
        if self.bypass:
            return "CalculationWindow(full history)"
        if self.window_days is not None:
            return f"CalculationWindow(window_days={self.window_days})"
        return "CalculationWindow(per-operator)"


@dataclass
class OperatorWindowSettings:
    """
    Per-operator look-back windows.

    Operators without an entry (or with an invalid one) use default_days.
    """
    windows: Dict[str, int] = field(default_factory=dict)
    default_days: int = DEFAULT_WINDOW_DAYS
    timezone: str = "UTC"

    def __post_init__(self):
        """Validate default window and drop unusable operator entries"""
        self.default_days = _validate_days(self.default_days, "default_days")

        cleaned = {}
        for operator_name, days in (self.windows or {}).items():
            if operator_name is None:
                continue
            try:
                cleaned[str(operator_name).strip()] = _validate_days(days, f"window for {operator_name}")
            except ValueError:
                continue
        self.windows = cleaned

    def window_for(self, operator_name: Optional[str], override: Optional[int] = None) -> int:
        """
        Get the window in days for an operator.

        Args:
            operator_name: Operator to look up
            override: Per-pass window that replaces every operator setting

        Returns:
            Window length in days
        """
        if override is not None:
            return _validate_days(override, "window_days")
        if operator_name is None:
            return self.default_days
        return self.windows.get(operator_name.strip(), self.default_days)

    def cutoff_for(
        self,
        operator_name: Optional[str],
        now: Optional[datetime] = None,
        override: Optional[int] = None
    ) -> datetime:
        """
        Get the earliest reference date included for an operator.

        Args:
            operator_name: Operator to look up
            now: Reference time (defaults to current time in self.timezone)
            override: Per-pass window override in days

        Returns:
            Timezone-aware cutoff datetime (now - window days)
        """
        now = self.localize(now)
        return now - timedelta(days=self.window_for(operator_name, override))

    def localize(self, now: Optional[datetime] = None) -> datetime:
        """Return `now` (or the current time) as an aware datetime"""
        tz = pytz.timezone(self.timezone)
        if now is None:
            return datetime.now(tz)
        if now.tzinfo is None:
            return tz.localize(now)
        return now

    def __repr__(self) -> str:
        return (
            f"OperatorWindowSettings(operators={len(self.windows)}, "
            f"default_days={self.default_days}, timezone={self.timezone})"
        )
