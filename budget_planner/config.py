"""Configuration management for the budget planner.

This module centralizes paths, detection thresholds and averaging
breakpoints.  Paths come from environment variables; tunables come from
``settings/detection.json`` and can be overridden per value through the
environment or keyword arguments.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .models import Periodicity, SpendingClassification

# Base project root - assumes this file is in budget_planner/
_PROJECT_ROOT = Path(__file__).parent.parent.resolve()

# Data directories
DATA_DIR = Path(os.getenv("BUDGET_PLANNER_DATA_DIR", _PROJECT_ROOT / "data"))

# Database
DB_PATH = Path(
    os.getenv("BUDGET_PLANNER_DB_PATH", DATA_DIR / "budget_planner.db")
).resolve()

# Tunables file
SETTINGS_PATH = Path(
    os.getenv("BUDGET_PLANNER_SETTINGS", Path(__file__).parent / "settings" / "detection.json")
).resolve()

# Seconds a connection waits on a locked database
SQLITE_TIMEOUT = float(os.getenv("BUDGET_PLANNER_SQLITE_TIMEOUT", "5.0"))

# Environment overrides for single detection values: env name -> (field, type)
_DETECTION_ENV_OVERRIDES = {
    "BUDGET_PLANNER_MIN_OCCURRENCES": ("min_occurrences", int),
    "BUDGET_PLANNER_DEFAULT_LOOKBACK": ("default_lookback_months", int),
    "BUDGET_PLANNER_MAX_LOOKBACK": ("max_lookback_months", int),
    "BUDGET_PLANNER_CV_THRESHOLD": ("cv_threshold", float),
}


def _default_floors() -> Dict[Periodicity, float]:
    return {
        Periodicity.BI_MONTHLY: 0.8,
        Periodicity.QUARTERLY: 0.8,
        Periodicity.YEARLY: 0.7,
    }


def _default_confidences() -> Dict[SpendingClassification, float]:
    return {
        SpendingClassification.REGULAR: 0.95,
        SpendingClassification.MOSTLY_REGULAR: 0.80,
        SpendingClassification.SEMI_REGULAR: 0.60,
        SpendingClassification.IRREGULAR: 0.40,
    }


@dataclass(frozen=True)
class DetectionConfig:
    """Thresholds used by the grouper and the pattern classifier."""

    min_occurrences: int = 3
    default_lookback_months: int = 6
    max_lookback_months: int = 36
    cv_threshold: float = 0.15
    amount_bucket_tolerance: float = 0.75
    base_confidence: float = 0.7
    coverage_weight: float = 0.15
    consistency_weight: float = 0.15
    confidence_floors: Mapping[Periodicity, float] = field(default_factory=_default_floors)

    def __post_init__(self) -> None:
        if self.min_occurrences < 2:
            raise ValueError("min_occurrences must be at least 2")
        if not 1 <= self.default_lookback_months <= self.max_lookback_months:
            raise ValueError("default_lookback_months must be between 1 and max_lookback_months")
        if self.cv_threshold <= 0:
            raise ValueError("cv_threshold must be positive")
        if self.amount_bucket_tolerance <= 0:
            raise ValueError("amount_bucket_tolerance must be positive")
        floors = {Periodicity.from_label(k) if isinstance(k, str) else Periodicity(k): float(v)
                  for k, v in dict(self.confidence_floors).items()}
        missing = set(Periodicity) - set(floors)
        if missing:
            raise ValueError(f"Missing confidence floors for: {sorted(p.label for p in missing)}")
        if any(not 0.0 <= v <= 1.0 for v in floors.values()):
            raise ValueError("confidence floors must be within [0, 1]")
        object.__setattr__(self, "confidence_floors", floors)

    def floor_for(self, periodicity: Periodicity) -> float:
        return self.confidence_floors[periodicity]

    def clamp_lookback(self, months: Optional[int]) -> int:
        if months is None:
            return self.default_lookback_months
        if months < 1:
            raise ValueError(f"Lookback window must be at least 1 month, got {months}")
        return min(int(months), self.max_lookback_months)


@dataclass(frozen=True)
class AveragingConfig:
    """Coverage breakpoints (percent) and confidences for the averaging analyzer."""

    regular_threshold: float = 100.0
    mostly_regular_threshold: float = 80.0
    semi_regular_threshold: float = 50.0
    confidences: Mapping[SpendingClassification, float] = field(default_factory=_default_confidences)

    def __post_init__(self) -> None:
        if not 0 < self.semi_regular_threshold < self.mostly_regular_threshold <= self.regular_threshold <= 100:
            raise ValueError("Coverage breakpoints must satisfy 0 < semi < mostly <= regular <= 100")
        confidences = {SpendingClassification(k): float(v) for k, v in dict(self.confidences).items()}
        missing = set(SpendingClassification) - set(confidences)
        if missing:
            raise ValueError(f"Missing confidences for: {sorted(c.value for c in missing)}")
        object.__setattr__(self, "confidences", confidences)


def ensure_data_directories() -> None:
    """Create the data directory and the database parent if they don't exist."""
    for directory in [DATA_DIR, DB_PATH.parent]:
        directory.mkdir(parents=True, exist_ok=True)


def load_settings(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load the JSON tunables file.

    Args:
        path: Optional settings file; defaults to ``SETTINGS_PATH``

    Returns:
        Dictionary with ``detection`` and ``averaging`` sections

    Raises:
        FileNotFoundError: If the settings file doesn't exist
        json.JSONDecodeError: If the settings file is invalid JSON
    """
    settings_path = Path(path) if path is not None else SETTINGS_PATH
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")
    with open(settings_path, 'r', encoding='utf-8') as f:
        return json.load(f)


def _known(cls, values: Mapping[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in values.items() if k in names}


def load_detection_config(path: Optional[Path] = None, **overrides: Any) -> DetectionConfig:
    """Build a :class:`DetectionConfig` from file, environment and keyword overrides.

    Precedence (lowest to highest): dataclass defaults, settings file,
    ``BUDGET_PLANNER_*`` environment variables, keyword ``overrides``.
    """
    settings = load_settings(path)
    values: Dict[str, Any] = _known(DetectionConfig, settings.get("detection", {}))
    for env_name, (field_name, caster) in _DETECTION_ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw:
            values[field_name] = caster(raw)
    values.update(_known(DetectionConfig, overrides))
    return DetectionConfig(**values)


def load_averaging_config(path: Optional[Path] = None, **overrides: Any) -> AveragingConfig:
    settings = load_settings(path)
    values: Dict[str, Any] = _known(AveragingConfig, settings.get("averaging", {}))
    values.update(_known(AveragingConfig, overrides))
    return AveragingConfig(**values)
