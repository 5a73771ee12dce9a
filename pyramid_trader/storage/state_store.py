"""Crash-safe persistence.

- Engine snapshot and signal log: whole-file JSON, written to a temp file in
  the same directory and atomically renamed over the target.
- Trade ledger and daily-stats archive: append-only NDJSON, one record per line.
"""
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import structlog
from pydantic import ValidationError

from pyramid_trader.core.config import StorageConfig
from pyramid_trader.core.models import DailyStats, EngineSnapshot, SignalRecord, SignalStats, TradeRecord

logger = structlog.get_logger(__name__)


def write_atomic(target: Path, payload: str) -> None:
    """Replace ``target`` with ``payload`` so readers never see a partial file."""
    target.parent.mkdir(parents=True, exist_ok=True)
    handle = tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", delete=False, dir=target.parent, suffix=".tmp"
    )
    temp_path = Path(handle.name)
    try:
        with handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        temp_path.replace(target)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


class StateStore:
    """File-backed store rooted at ``StorageConfig.data_dir``."""

    def __init__(self, config: Optional[StorageConfig] = None):
        self.config = config or StorageConfig()
        self.data_dir = Path(self.config.data_dir)
        self.state_path = self.data_dir / self.config.state_file
        self.trades_path = self.data_dir / self.config.trades_file
        self.daily_archive_path = self.data_dir / self.config.daily_archive_file
        self.signal_log_path = self.data_dir / self.config.signal_log_file

    # =========================================================================
    # Engine Snapshot
    # =========================================================================

    def save_snapshot(self, snapshot: EngineSnapshot) -> None:
        write_atomic(self.state_path, snapshot.model_dump_json(indent=2))
        logger.debug("state_store.snapshot_saved", path=str(self.state_path))

    def load_snapshot(self) -> Optional[EngineSnapshot]:
        """Load the last snapshot. A missing or corrupt file yields None."""
        if not self.state_path.exists():
            return None
        try:
            snapshot = EngineSnapshot.model_validate_json(self.state_path.read_text(encoding="utf-8"))
        except (ValidationError, ValueError, OSError) as e:
            logger.error("state_store.snapshot_corrupt", path=str(self.state_path), error=str(e))
            return None
        logger.info(
            "state_store.snapshot_loaded",
            path=str(self.state_path),
            saved_at=snapshot.last_save_time.isoformat(),
            tripped=snapshot.risk.tripped,
            pyramid_level=snapshot.pyramid.level,
        )
        return snapshot

    # =========================================================================
    # Append-only Ledgers
    # =========================================================================

    def _append_line(self, path: Path, line: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
            handle.flush()
            os.fsync(handle.fileno())

    def _read_lines(self, path: Path) -> List[str]:
        if not path.exists():
            return []
        with path.open("r", encoding="utf-8") as handle:
            return [line for line in (raw.strip() for raw in handle) if line]

    def append_trade(self, trade: TradeRecord) -> None:
        self._append_line(self.trades_path, trade.model_dump_json())

    def read_trades(self, limit: Optional[int] = None) -> List[TradeRecord]:
        """Trade history, newest first, capped at ``limit``."""
        limit = limit or self.config.trade_history_limit
        trades = []
        for line in reversed(self._read_lines(self.trades_path)):
            try:
                trades.append(TradeRecord.model_validate_json(line))
            except ValidationError as e:
                logger.warning("state_store.trade_line_skipped", error=str(e))
                continue
            if len(trades) >= limit:
                break
        return trades

    def archive_daily_stats(self, stats: DailyStats) -> None:
        if not stats.frozen:
            raise ValueError("Only frozen daily stats can be archived")
        self._append_line(self.daily_archive_path, stats.model_dump_json())
        logger.info("state_store.daily_stats_archived", date=stats.date)

    def read_daily_archive(self) -> List[DailyStats]:
        return [DailyStats.model_validate_json(line) for line in self._read_lines(self.daily_archive_path)]

    # =========================================================================
    # Signal Log
    # =========================================================================

    def save_signal_log(self, records: List[SignalRecord], stats: SignalStats) -> None:
        kept = records[-self.config.signal_log_size:]
        payload: Dict[str, Any] = {
            "stats": stats.model_dump(mode="json"),
            "signals": [r.model_dump(mode="json") for r in kept],
        }
        write_atomic(self.signal_log_path, json.dumps(payload, indent=2))
        logger.debug("state_store.signal_log_saved", count=len(kept))

    def load_signal_log(self) -> Tuple[List[SignalRecord], SignalStats]:
        if not self.signal_log_path.exists():
            return [], SignalStats()
        try:
            payload = json.loads(self.signal_log_path.read_text(encoding="utf-8"))
            records = [SignalRecord.model_validate(r) for r in payload.get("signals", [])]
            stats = SignalStats.model_validate(payload.get("stats", {}))
        except (ValidationError, ValueError, OSError) as e:
            logger.error("state_store.signal_log_corrupt", error=str(e))
            return [], SignalStats()
        return records[-self.config.signal_log_size:], stats
