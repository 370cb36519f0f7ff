"""
Heartbeat Store - Off-Chain Liveness Cache

One record per user, keyed by lowercased address:
    last_seen (ms), signature, inactivity_period (s), created_at, updated_at

The ledger stays authoritative; this cache only decides who is worth
re-checking on chain. Records live in memory and are persisted to a JSON
file with an atomic write (temp file + os.replace) after every mutation.

The handle is created at process startup and closed at shutdown. It is
passed explicitly to the relay and the scanner, never looked up globally.
"""

import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

from .protocol import normalize_address

logger = logging.getLogger("lazarus.store")


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class HeartbeatRecord:
    user_address: str
    last_seen: int              # ms
    signature: str
    inactivity_period: int      # s
    created_at: int             # ms
    updated_at: int             # ms

    @property
    def deadline_ms(self) -> int:
        return self.last_seen + self.inactivity_period * 1000

    def is_inactive(self, at_ms: int) -> bool:
        return at_ms - self.last_seen > self.inactivity_period * 1000


class HeartbeatStore:
    def __init__(self, path: Optional[str] = None):
        self._path = Path(path) if path else None
        self._records: dict[str, HeartbeatRecord] = {}
        self._lock = threading.RLock()
        self._closed = False
        if self._path:
            self._load()

    # ============================================================
    # WRITES
    # ============================================================

    def record_heartbeat(
        self,
        user_address: str,
        signature: str,
        inactivity_period: int,
        at_ms: Optional[int] = None,
    ) -> HeartbeatRecord:
        """
        Upsert on a verified heartbeat. Last writer by wall clock wins: a write
        carrying an older timestamp than the stored one does not move last_seen back.
        """
        address = normalize_address(user_address)
        ts = at_ms if at_ms is not None else now_ms()
        with self._lock:
            self._check_open()
            existing = self._records.get(address)
            if existing is None:
                record = HeartbeatRecord(address, ts, signature, inactivity_period, ts, ts)
                self._records[address] = record
            else:
                record = existing
                if ts >= existing.last_seen:
                    record.last_seen = ts
                    record.signature = signature
                record.inactivity_period = inactivity_period
                record.updated_at = max(existing.updated_at, ts)
            self._save()
            return HeartbeatRecord(**asdict(record))

    def record_registration(self, user_address: str, inactivity_period: int,
                            at_ms: Optional[int] = None) -> HeartbeatRecord:
        """Registration signal: start monitoring from now unless already tracked."""
        address = normalize_address(user_address)
        ts = at_ms if at_ms is not None else now_ms()
        with self._lock:
            self._check_open()
            record = self._records.get(address)
            if record is None:
                record = HeartbeatRecord(address, ts, "", inactivity_period, ts, ts)
                self._records[address] = record
            else:
                record.inactivity_period = inactivity_period
                record.updated_at = max(record.updated_at, ts)
            self._save()
            return HeartbeatRecord(**asdict(record))

    def update_inactivity_period(self, user_address: str, inactivity_period: int) -> bool:
        address = normalize_address(user_address)
        with self._lock:
            self._check_open()
            record = self._records.get(address)
            if record is None:
                return False
            record.inactivity_period = inactivity_period
            record.updated_at = max(record.updated_at, now_ms())
            self._save()
            return True

    def remove_user(self, user_address: str) -> bool:
        address = normalize_address(user_address)
        with self._lock:
            self._check_open()
            removed = self._records.pop(address, None) is not None
            if removed:
                self._save()
            return removed

    # ============================================================
    # READS
    # ============================================================

    def get_heartbeat(self, user_address: str) -> Optional[HeartbeatRecord]:
        address = normalize_address(user_address)
        with self._lock:
            record = self._records.get(address)
            return HeartbeatRecord(**asdict(record)) if record else None

    def get_inactive_users(self, at_ms: Optional[int] = None) -> list[HeartbeatRecord]:
        """Users whose cached deadline has passed: now - last_seen > period * 1000."""
        ts = at_ms if at_ms is not None else now_ms()
        with self._lock:
            return [HeartbeatRecord(**asdict(r)) for r in self._records.values() if r.is_inactive(ts)]

    def get_all_users(self) -> list[HeartbeatRecord]:
        with self._lock:
            return [HeartbeatRecord(**asdict(r)) for r in self._records.values()]

    def __len__(self) -> int:
        return len(self._records)

    # ============================================================
    # LIFECYCLE / PERSISTENCE
    # ============================================================

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._save()
            self._closed = True
        logger.info(f"Heartbeat store closed ({len(self._records)} records)")

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self):
        if self._closed:
            raise RuntimeError("heartbeat store is closed")

    def _load(self):
        if not self._path.exists():
            logger.info(f"No heartbeat store at {self._path}, starting fresh")
            return
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
            for row in data.get("heartbeats", []):
                record = HeartbeatRecord(**row)
                self._records[record.user_address] = record
            logger.info(f"Heartbeat store loaded: {len(self._records)} records")
        except Exception as e:
            logger.error(f"Failed to load heartbeat store {self._path}: {e}")

    def _save(self):
        if not self._path:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            state = {
                "heartbeats": [asdict(r) for r in self._records.values()],
                "saved_at": now_ms(),
            }
            # ATOMIC WRITE: temp file in the same dir, then rename
            tmp_fd, tmp_path = tempfile.mkstemp(
                dir=str(self._path.parent), suffix=".tmp", prefix="heartbeats_"
            )
            try:
                with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                    json.dump(state, f, indent=2)
                os.replace(tmp_path, str(self._path))
            except Exception:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                raise
        except Exception as e:
            logger.error(f"Failed to save heartbeat store: {e}")
