"""
Longshot - Session State Store
Persists capture status records so status can be polled after the fact.

Records are keyed by session id, with an index of the latest session per tab.
Only the orchestrator writes. Sessions are never resumed after a restart:
records that were still running are reported as interrupted.
"""

import json
import logging
import os
import time
from pathlib import Path
from typing import Dict, Optional

from pydantic import ValidationError

from capture_models import CaptureStatus, StatusRecord

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Capture interrupted"


class SessionStateStore:
    """Status records with JSON file persistence and time-based retention"""

    FILE_NAME = "capture_state.json"

    def __init__(self, data_dir: str = "data", retention_seconds: int = 300):
        self.storage_dir = Path(data_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.storage_file = self.storage_dir / self.FILE_NAME
        self.retention_seconds = retention_seconds

        # In-memory cache: session_id -> StatusRecord
        self._records: Dict[str, StatusRecord] = {}
        self._latest_by_tab: Dict[str, str] = {}

        self._load()
        logger.info(f"[SessionStateStore] Initialized with storage: {self.storage_file}")

    def _load(self):
        """Load records from disk, converting unfinished sessions to errors"""
        if not self.storage_file.exists():
            return

        try:
            with open(self.storage_file, "r") as f:
                data = json.load(f)
            records = [StatusRecord(**item) for item in data.get("records", [])]
        except (OSError, ValueError, ValidationError) as e:
            logger.error(f"[SessionStateStore] Failed to load {self.storage_file}: {e}")
            return

        interrupted = 0
        for record in records:
            if not record.status.is_terminal:
                record.status = CaptureStatus.ERROR
                record.message = INTERRUPTED_MESSAGE
                record.error_code = "CAPTURE_INTERRUPTED"
                record.timestamp = time.time()
                interrupted += 1
            self._records[record.session_id] = record
            self._index(record)

        if interrupted:
            logger.warning(f"[SessionStateStore] {interrupted} sessions were interrupted by a restart")
        self.purge_expired()
        self._save()

    def _index(self, record: StatusRecord):
        current_id = self._latest_by_tab.get(record.tab_id)
        current = self._records.get(current_id) if current_id else None
        if current is None or current.session_id == record.session_id or current.timestamp <= record.timestamp:
            self._latest_by_tab[record.tab_id] = record.session_id

    def _save(self):
        """Save records to disk (write-then-rename)"""
        tmp_file = self.storage_file.with_suffix(".json.tmp")
        payload = {"records": [record.model_dump(mode="json") for record in self._records.values()]}
        try:
            with open(tmp_file, "w") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_file, self.storage_file)
            logger.debug(f"[SessionStateStore] Saved {len(self._records)} records")
        except OSError as e:
            logger.error(f"[SessionStateStore] Failed to save records: {e}")

    def put(self, record: StatusRecord):
        """
        Insert or replace a session's record.

        Only status changes are written to disk. Progress updates within a
        status stay in memory, since an unfinished record is reported as
        interrupted after a restart anyway.
        """
        previous = self._records.get(record.session_id)
        self._records[record.session_id] = record
        self._latest_by_tab[record.tab_id] = record.session_id
        if previous is None or previous.status != record.status:
            self._save()

    def get(self, session_id: str) -> Optional[StatusRecord]:
        return self._records.get(session_id)

    def latest_for_tab(self, tab_id: str) -> Optional[StatusRecord]:
        session_id = self._latest_by_tab.get(tab_id)
        return self._records.get(session_id) if session_id else None

    def purge_expired(self, now: Optional[float] = None) -> int:
        """Drop terminal records older than the retention window"""
        now = time.time() if now is None else now
        expired = [
            session_id
            for session_id, record in self._records.items()
            if record.status.is_terminal and now - record.timestamp > self.retention_seconds
        ]
        for session_id in expired:
            record = self._records.pop(session_id)
            if self._latest_by_tab.get(record.tab_id) == session_id:
                del self._latest_by_tab[record.tab_id]

        if expired:
            logger.debug(f"[SessionStateStore] Purged {len(expired)} expired records")
            self._save()
        return len(expired)
