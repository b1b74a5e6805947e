"""
File-backed collaborators for offline replay.

FileSnapshotSource serves a snapshot JSON file
({"positions": [...], "subscriptions": [...]}). OfflineGateway refuses
every mutation. read_event_log() parses a JSONL event log whose lines are
either generic envelopes ({"entityKind", "changeType", "payload"}) or
socket messages ({"event": "paper_position:update", "data": {...}}).
"""
import json
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple

from tradestate.domain.models import TradeMode
from tradestate.domain.protocols import MutationResult, Snapshot, snapshot_from_dict
from tradestate.exceptions import TransportFailure
from tradestate.monitoring.logger import get_logger

logger = get_logger(__name__)


class FileSnapshotSource:
    """SnapshotSource reading a JSON file on every fetch."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    async def fetch_snapshot(self) -> Snapshot:
        try:
            raw = json.loads(self.path.read_text())
        except (OSError, ValueError) as e:
            raise TransportFailure(f"cannot read snapshot {self.path}: {e}") from e
        if not isinstance(raw, dict):
            raise TransportFailure(f"snapshot {self.path} must hold a JSON object")
        return snapshot_from_dict(raw)


class OfflineGateway:
    """MutationGateway with no server behind it."""

    def _refuse(self, action: str) -> MutationResult:
        return MutationResult(success=False, error=f"{action} unavailable offline")

    async def modify_position(self, position_id: str, stop_loss: Optional[Any] = None, take_profit: Optional[Any] = None) -> MutationResult:
        return self._refuse("modify_position")

    async def close_position(self, position_id: str) -> MutationResult:
        return self._refuse("close_position")

    async def update_strategy(self, subscription_id: str, is_active: Optional[bool] = None, is_paused: Optional[bool] = None) -> MutationResult:
        return self._refuse("update_strategy")

    async def set_trade_mode(self, subscription_id: str, mode: TradeMode) -> MutationResult:
        return self._refuse("set_trade_mode")


def read_event_log(path: str | Path) -> Iterator[Tuple[Optional[str], Dict[str, Any]]]:
    """
    Yield (socket event name or None, record) per non-blank line.

    Lines that are not JSON objects are logged and skipped.
    """
    with open(path, "r") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except ValueError as e:
                logger.warning("EVENT_LOG_LINE_SKIPPED", path=str(path), line=line_no, error=str(e))
                continue
            if not isinstance(record, dict):
                logger.warning("EVENT_LOG_LINE_SKIPPED", path=str(path), line=line_no, error="not an object")
                continue
            if "event" in record and "data" in record:
                yield str(record["event"]), record["data"]
            else:
                yield None, record
