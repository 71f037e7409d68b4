"""
epochsettle/protocol/audit.py

Append-only settlement history.

Every ledger write attempt (commit, approve, distribute) is recorded as
one JSON line: range, author, tx hash, outcome and reason. With no path
the log is kept in memory only.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import List, Optional, Union

logger = logging.getLogger("epochsettle.protocol.audit")


@dataclass
class AuditEntry:
    """One write attempt."""
    timestamp: float
    action: str                         # commit | approve | distribute
    epoch_id: str
    author: str
    success: bool
    tx_hash: Optional[str] = None
    reason: Optional[str] = None
    batch_index: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "AuditEntry":
        return cls(**data)


class AuditLog:
    """JSON-lines audit log; entries are only ever appended."""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self._entries: List[AuditEntry] = []

        if self.path and self.path.exists():
            with self.path.open("r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        self._entries.append(AuditEntry.from_dict(json.loads(line)))
            logger.info(f"Loaded {len(self._entries)} audit entries from {self.path}")

    def record(
        self,
        action: str,
        epoch_id: str,
        author: str,
        success: bool,
        tx_hash: Optional[str] = None,
        reason: Optional[str] = None,
        batch_index: Optional[int] = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            timestamp=time.time(),
            action=action,
            epoch_id=epoch_id,
            author=author,
            success=success,
            tx_hash=tx_hash,
            reason=reason,
            batch_index=batch_index,
        )
        with self._lock:
            self._entries.append(entry)
            if self.path:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as f:
                    f.write(json.dumps(entry.to_dict()) + "\n")
        logger.debug(f"Audit: {action} {epoch_id} success={success} tx={tx_hash} reason={reason}")
        return entry

    def entries(self, epoch_id: Optional[str] = None) -> List[AuditEntry]:
        with self._lock:
            return [e for e in self._entries if epoch_id is None or e.epoch_id == epoch_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
