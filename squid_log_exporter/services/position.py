"""
PositionTracker Class - Persists the read position in the access log

The position file is a small JSON document replaced atomically on every
save, so a crash never leaves a half-written position behind.
"""

import json
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Optional, Tuple

from squid_log_exporter.models.data_models import Position
from squid_log_exporter.models.errors import PositionError
from squid_log_exporter.utils.helpers import atomic_write, parse_ts, safe_int

logger = logging.getLogger("squid_log_exporter.position")

RESET_ROTATED = "rotation"
RESET_TRUNCATED = "truncation"


class PositionTracker:
    """
    Loads and saves the (filename, offset, inode) triple.
    Responsibilities:
    - Read the persisted position (missing file means first run)
    - Write it back atomically
    - Remember the last loaded/saved position in memory
    """

    def __init__(self, position_file: str):
        self.position_file = position_file
        self._position: Optional[Position] = None
        self._lock = threading.Lock()

    def load(self) -> Optional[Position]:
        """Read the position from disk; None when no position was saved yet"""
        try:
            with open(self.position_file, "r", encoding="utf-8") as f:
                raw = f.read()
        except FileNotFoundError:
            with self._lock:
                self._position = None
            return None

        position = self._decode(raw)
        with self._lock:
            self._position = position
        return position

    def save(self, filename: str, offset: int, inode: int) -> Position:
        """Persist a new position, replacing the old file atomically"""
        position = Position(
            filename=filename,
            offset=offset,
            inode=inode,
            updated_at=datetime.now(timezone.utc),
        )
        payload = {
            "filename": position.filename,
            "position": position.offset,
            "inode": position.inode,
            "last_updated": position.updated_at.isoformat(),
        }
        atomic_write(self.position_file, json.dumps(payload, indent=2) + "\n")
        with self._lock:
            self._position = position
        return position

    def restore(self, position: Optional[Position]) -> None:
        """Put back an earlier position; None removes the file (first run again)"""
        if position is None:
            try:
                os.remove(self.position_file)
            except FileNotFoundError:
                pass
            with self._lock:
                self._position = None
            return
        self.save(position.filename, position.offset, position.inode)

    def current_offset(self) -> int:
        with self._lock:
            return self._position.offset if self._position else 0

    def current_inode(self) -> int:
        with self._lock:
            return self._position.inode if self._position else 0

    def current(self) -> Optional[Position]:
        with self._lock:
            return self._position

    def _decode(self, raw: str) -> Position:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise PositionError(f"corrupt position file {self.position_file}: {e}") from e
        if not isinstance(data, dict):
            raise PositionError(f"corrupt position file {self.position_file}: not an object")

        offset = safe_int(data.get("position"))
        inode = safe_int(data.get("inode"))
        if offset is None or inode is None or offset < 0 or inode < 0:
            raise PositionError(
                f"corrupt position file {self.position_file}: invalid position/inode"
            )

        updated_at = parse_ts(data.get("last_updated")) or datetime.fromtimestamp(0, timezone.utc)
        return Position(
            filename=str(data.get("filename") or ""),
            offset=offset,
            inode=inode,
            updated_at=updated_at,
        )


def resolve_start_offset(
    position: Optional[Position], inode: int, size: int
) -> Tuple[int, Optional[str]]:
    """
    Decide where to resume reading a file with the given inode and size.

    Returns (offset, reset_reason). A different inode means the file was
    rotated; an offset past the end means it was truncated in place. Both
    restart from byte zero.
    """
    if position is None:
        return 0, None
    if position.inode and position.inode != inode:
        return 0, RESET_ROTATED
    if position.offset > size:
        return 0, RESET_TRUNCATED
    return position.offset, None
