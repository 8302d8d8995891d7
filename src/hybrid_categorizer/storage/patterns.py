import json
import os
import threading
from collections.abc import Callable
from datetime import datetime

from pydantic import ValidationError

from hybrid_categorizer.logger import get_logger
from hybrid_categorizer.models import LearningPattern
from hybrid_categorizer.storage.records import utcnow

logger = get_logger(__name__)


def _pattern_id(pattern_type: str, pattern_key: str, category: str) -> str:
    return f"{pattern_type}|{pattern_key}|{category}"


class PatternStore:
    """Frequency-weighted learning patterns, persisted as a JSON file."""

    def __init__(
        self,
        data_path: str | None = "patterns.json",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.data_path = data_path
        self._clock = clock
        self._lock = threading.Lock()
        self.patterns: dict[str, LearningPattern] = {}
        self.load()

    def load(self) -> None:
        if not self.data_path or not os.path.exists(self.data_path):
            return
        try:
            with open(self.data_path, encoding="utf-8") as f:
                raw = json.load(f)
            self.patterns = {
                key: LearningPattern.model_validate(value) for key, value in raw.items()
            }
        except (json.JSONDecodeError, ValidationError, AttributeError):
            logger.warning("[FEEDBACK] Could not read %s, starting empty.", self.data_path)
            self.patterns = {}

    def save(self) -> None:
        """Must be called while holding _lock."""
        if not self.data_path:
            return
        with open(self.data_path, "w", encoding="utf-8") as f:
            json.dump(
                {key: pattern.model_dump(mode="json") for key, pattern in self.patterns.items()},
                f,
                indent=2,
            )

    def record_correction(self, pattern_type: str, pattern_key: str, category: str) -> LearningPattern:
        """Count one correction event for (type, key, category) and recompute its confidence."""
        key = _pattern_id(pattern_type, pattern_key, category)
        with self._lock:
            existing = self.patterns.get(key)
            occurrence_count = (existing.occurrence_count if existing else 0) + 1
            success_count = (existing.success_count if existing else 0) + 1
            pattern = LearningPattern(
                pattern_type=pattern_type,
                pattern_key=pattern_key,
                category=category,
                occurrence_count=occurrence_count,
                success_count=success_count,
                confidence_score=success_count / occurrence_count,
                last_seen_at=self._clock(),
            )
            self.patterns[key] = pattern
            self.save()
        return pattern

    def get(self, pattern_type: str, pattern_key: str, category: str) -> LearningPattern | None:
        with self._lock:
            return self.patterns.get(_pattern_id(pattern_type, pattern_key, category))

    def for_key(self, pattern_type: str, pattern_key: str) -> list[LearningPattern]:
        with self._lock:
            matches = [
                p for p in self.patterns.values()
                if p.pattern_type == pattern_type and p.pattern_key == pattern_key
            ]
        return sorted(matches, key=lambda p: (-p.occurrence_count, p.category))
