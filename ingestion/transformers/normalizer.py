"""
Tolerant field parsers shared by every fetch strategy.

Every parser returns ``None`` for input it cannot understand instead of
raising, so one malformed field never rejects a whole record.
"""

from typing import Any, Optional
from datetime import date, datetime
import html
import math
import re
import pandas as pd
from models.base import ProjectStatus
import logging

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")
_NON_NUMERIC_RE = re.compile(r"[^0-9.\-]")

STATUS_ALIASES = {
    "ongoing": ProjectStatus.ACTIVE,
    "on-going": ProjectStatus.ACTIVE,
    "in_progress": ProjectStatus.ACTIVE,
    "in progress": ProjectStatus.ACTIVE,
    "active": ProjectStatus.ACTIVE,
    "completed": ProjectStatus.COMPLETED,
    "complete": ProjectStatus.COMPLETED,
    "finished": ProjectStatus.COMPLETED,
    "pending": ProjectStatus.PENDING,
    "planned": ProjectStatus.PENDING,
    "for implementation": ProjectStatus.PENDING,
    "suspended": ProjectStatus.ON_HOLD,
    "on_hold": ProjectStatus.ON_HOLD,
    "on hold": ProjectStatus.ON_HOLD,
    "halted": ProjectStatus.ON_HOLD,
    "cancelled": ProjectStatus.CANCELLED,
    "canceled": ProjectStatus.CANCELLED,
    "terminated": ProjectStatus.CANCELLED,
    "abandoned": ProjectStatus.CANCELLED,
}


class ValueNormalizer:
    """
    Parse heterogeneous upstream values into canonical Python values.

    Handles:
    - Markup stripping and entity decoding
    - Currency strings (peso sign, PHP prefix, thousands separators)
    - Dates in any common layout (ISO, MM/DD/YYYY, long month names)
    - Coordinate range checks
    - Percentages given as fractions, numbers or "%" strings
    """

    @staticmethod
    def clean_text(value: Any) -> Optional[str]:
        """Strip tags, decode entities and collapse whitespace"""
        if value is None:
            return None
        text = _TAG_RE.sub(" ", str(value))
        text = html.unescape(text)
        text = _WS_RE.sub(" ", text).strip()
        return text or None

    @staticmethod
    def parse_amount(value: Any) -> Optional[float]:
        """Parse a monetary amount such as ₱1,234,567.89 or PHP 2,500,000"""
        if value is None or value == "" or isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return None if math.isnan(value) else float(value)
        text = str(value).replace("₱", "").replace("PHP", "").replace("Php", "")
        text = _NON_NUMERIC_RE.sub("", text.replace(",", ""))
        if not text:
            return None
        try:
            return float(text)
        except ValueError:
            return None

    @staticmethod
    def parse_int(value: Any) -> Optional[int]:
        """Safely parse int value"""
        if value is None or value == "" or isinstance(value, bool):
            return None
        try:
            return int(float(value))
        except (ValueError, TypeError):
            digits = re.sub(r"[^0-9]", "", str(value))
            return int(digits) if digits else None

    @staticmethod
    def parse_date(value: Any) -> Optional[date]:
        """Parse a date leniently, returning None when it is not a date"""
        if value is None or value == "":
            return None
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if not isinstance(value, str):
            return None
        parsed = pd.to_datetime(value.strip(), errors="coerce")
        if parsed is None or pd.isna(parsed):
            return None
        return parsed.date()

    @staticmethod
    def _parse_coordinate(value: Any, limit: float) -> Optional[float]:
        if value is None or value == "" or isinstance(value, bool):
            return None
        try:
            coord = float(value)
        except (ValueError, TypeError):
            return None
        if math.isnan(coord) or coord < -limit or coord > limit:
            return None
        return coord

    @classmethod
    def parse_latitude(cls, value: Any) -> Optional[float]:
        return cls._parse_coordinate(value, 90.0)

    @classmethod
    def parse_longitude(cls, value: Any) -> Optional[float]:
        return cls._parse_coordinate(value, 180.0)

    @staticmethod
    def parse_percentage(value: Any) -> Optional[float]:
        """Return a 0-100 percentage; fractions in [0, 1] are scaled up"""
        if value is None or value == "" or isinstance(value, bool):
            return None
        if isinstance(value, str):
            is_percent = value.strip().endswith("%")
            try:
                percent = float(value.strip().rstrip("%").strip())
            except ValueError:
                return None
            if is_percent:
                return percent if 0 <= percent <= 100 else None
        else:
            try:
                percent = float(value)
            except (ValueError, TypeError):
                return None
        if 0 <= percent <= 1:
            return round(percent * 100, 2)
        if 1 < percent <= 100:
            return percent
        return None

    @staticmethod
    def map_status(value: Any) -> ProjectStatus:
        """Map upstream status vocabulary onto ProjectStatus"""
        if value is None:
            return ProjectStatus.DRAFT
        return STATUS_ALIASES.get(str(value).strip().lower(), ProjectStatus.DRAFT)
