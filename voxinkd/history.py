"""Transcription history and usage statistics."""

import logging
from datetime import date, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .models import TranscriptionOutcome

logger = logging.getLogger(__name__)

HISTORY_FILE = "history.jsonl"
STATS_FILE = "stats.json"


class DailyStats(BaseModel):
    """Aggregated usage for one calendar day."""

    day: date
    transcription_count: int = 0
    total_duration: float = 0.0
    character_count: int = 0


class UsageTotals(BaseModel):
    """Usage across all recorded days."""

    transcription_count: int = 0
    total_duration: float = 0.0
    character_count: int = 0
    today: DailyStats = Field(default_factory=lambda: DailyStats(day=date.today()))


_stats_adapter = TypeAdapter(List[DailyStats])


class HistoryStore:
    """Stores outcomes as JSON lines and keeps per-day statistics.

    Writes never raise into the caller; failures are logged.
    """

    def __init__(self, directory: Path):
        self.directory = directory
        self.history_path = directory / HISTORY_FILE
        self.stats_path = directory / STATS_FILE

    def _load_stats(self) -> Dict[date, DailyStats]:
        if not self.stats_path.exists():
            return {}
        try:
            stats = _stats_adapter.validate_json(self.stats_path.read_bytes())
        except (OSError, ValidationError) as e:
            logger.error(f"Could not read statistics file {self.stats_path}: {e}")
            return {}
        return {entry.day: entry for entry in stats}

    def _save_stats(self, stats: Dict[date, DailyStats]) -> None:
        ordered = sorted(stats.values(), key=lambda s: s.day)
        self.stats_path.write_bytes(_stats_adapter.dump_json(ordered, indent=2))

    def record_outcome(self, outcome: TranscriptionOutcome) -> None:
        """Append an outcome and update the statistics for its day."""
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            with open(self.history_path, "a", encoding="utf-8") as f:
                f.write(outcome.model_dump_json() + "\n")

            stats = self._load_stats()
            day = outcome.created_at.date()
            entry = stats.get(day) or DailyStats(day=day)
            entry.transcription_count += 1
            entry.total_duration += outcome.duration_seconds
            entry.character_count += len(outcome.display_text)
            stats[day] = entry
            self._save_stats(stats)

            logger.info("Saved transcription record and statistics")
        except Exception as e:
            logger.error(f"Failed to save transcription record: {e}")

    def fetch_records(self, limit: int = 50) -> List[TranscriptionOutcome]:
        """Return up to ``limit`` records, newest first."""
        if not self.history_path.exists():
            return []

        records: List[TranscriptionOutcome] = []
        with open(self.history_path, encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    records.append(TranscriptionOutcome.model_validate_json(line))
                except ValidationError as e:
                    logger.warning(f"Skipping corrupt history line {line_no}: {e}")

        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit]

    def delete_record(self, record_id: str) -> bool:
        """Remove one record from the history. Statistics are left unchanged."""
        if not self.history_path.exists():
            return False

        kept: List[str] = []
        removed = False
        with open(self.history_path, encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    record = TranscriptionOutcome.model_validate_json(line)
                except ValidationError:
                    kept.append(line)
                    continue
                if record.id == record_id:
                    removed = True
                else:
                    kept.append(line)

        if removed:
            self.history_path.write_text("".join(kept), encoding="utf-8")
        return removed

    def daily_stats(self, day: Optional[date] = None) -> DailyStats:
        day = day or date.today()
        return self._load_stats().get(day) or DailyStats(day=day)

    def weekly_stats(self, today: Optional[date] = None) -> List[DailyStats]:
        """Statistics of the last seven days (today included), oldest first."""
        today = today or date.today()
        first_day = today - timedelta(days=6)
        return sorted(
            (s for s in self._load_stats().values() if first_day <= s.day <= today),
            key=lambda s: s.day,
        )

    def totals(self, today: Optional[date] = None) -> UsageTotals:
        today = today or date.today()
        stats = self._load_stats()
        return UsageTotals(
            transcription_count=sum(s.transcription_count for s in stats.values()),
            total_duration=sum(s.total_duration for s in stats.values()),
            character_count=sum(s.character_count for s in stats.values()),
            today=self.daily_stats(today),
        )
