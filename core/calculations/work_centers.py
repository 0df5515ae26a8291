"""
Work Center Normalization

Maps free-text work center labels from the time-tracking feed onto the
canonical categories used for rate calculation (Cutting, Assembly, Packaging).
"""

import logging
from enum import Enum
from typing import List, Optional, Tuple, Union

import pandas as pd

logger = logging.getLogger(__name__)


class WorkCenter(str, Enum):
    """Canonical work center categories"""
    CUTTING = "Cutting"
    ASSEMBLY = "Assembly"
    PACKAGING = "Packaging"


# Evaluated in order, first match wins.
# Assembly stations go first: "Rope Cutting" or "Zipper Pack" are Assembly work.
WORK_CENTER_RULES: List[Tuple[WorkCenter, Tuple[str, ...]]] = [
    (WorkCenter.ASSEMBLY, ("sewing", "assembly", "rope", "embroidery", "grommet", "zipper")),
    (WorkCenter.CUTTING, ("cutting", "cut", "laser", "webbing")),
    (WorkCenter.PACKAGING, ("packaging", "pack")),
]


def normalize_work_center(raw_label: Optional[str]) -> Optional[WorkCenter]:
    """
    Normalize a raw work center label into a canonical category.

    Uses case-insensitive keyword matching:
    - Assembly: labels containing "sewing", "assembly", "rope", "embroidery",
      "grommet" or "zipper"
    - Cutting: labels containing "cutting", "cut", "laser" or "webbing"
    - Packaging: labels containing "packaging" or "pack"
    - None: everything else. Unmatched labels are always excluded from
      rate calculation, never assigned a default category.

    Args:
        raw_label: Work center label as recorded by the time-tracking feed

    Returns:
        WorkCenter category, or None if the label matches no rule
    """
    if not raw_label or not isinstance(raw_label, str):
        return None

    label_lower = raw_label.lower().strip()

    for category, keywords in WORK_CENTER_RULES:
        if any(keyword in label_lower for keyword in keywords):
            return category

    return None


def normalize_work_center_series(labels: pd.Series) -> pd.Series:
    """
    Normalize a Series of raw labels.

    Returns:
        Series of canonical category names (str), None where unmatched
    """
    def _to_name(label):
        category = normalize_work_center(label)
        return category.value if category is not None else None

    return labels.map(_to_name).astype(object)


def parse_work_center(value: Union[str, WorkCenter]) -> WorkCenter:
    """
    Parse a canonical work center name given by a caller (filters, lookups).

    Unlike normalize_work_center, this accepts only the canonical names
    (case-insensitive) and raises on anything else.

    Raises:
        ValueError: If value is not a canonical work center name
    """
    if isinstance(value, WorkCenter):
        return value

    if isinstance(value, str):
        for category in WorkCenter:
            if category.value.lower() == value.strip().lower():
                return category

    raise ValueError(
        f"Unknown work center: '{value}'. "
        f"Valid options: {[c.value for c in WorkCenter]}"
    )


def all_work_centers() -> List[str]:
    """Get all canonical work center names"""
    return [category.value for category in WorkCenter]
