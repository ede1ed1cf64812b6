"""Append-only participation log written after a vote is confirmed.

The log records who voted (for audit), never how. It plays no part in
duplicate detection, so write failures are logged and swallowed.

One JSON object per line; appending never reads the existing file.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List
import json
import logging
import threading


logger = logging.getLogger(__name__)


class ParticipationLog:
    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def read(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        records = []
        with open(self.path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except ValueError:
                    record = None
                if not isinstance(record, dict):
                    logger.warning("skipping malformed participation record at %s:%d", self.path, lineno)
                    continue
                records.append(record)
        return records

    def append(self, identity_key: str, tx_ref: str) -> bool:
        entry = {
            "identityKey": identity_key,
            "txRef": tx_ref,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            line = json.dumps(entry) + "\n"
            with self._lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                if not self._ends_with_newline():
                    line = "\n" + line
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line)
        except (OSError, TypeError, ValueError):
            logger.exception("could not record participation for tx %s", tx_ref)
            return False
        return True

    def _ends_with_newline(self) -> bool:
        if not self.path.exists() or self.path.stat().st_size == 0:
            return True
        with open(self.path, "rb") as f:
            f.seek(-1, 2)
            return f.read(1) == b"\n"
