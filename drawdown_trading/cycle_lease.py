# drawdown_trading/cycle_lease.py
"""
Cycle lease: at most one trading cycle (or admin order action) at a time.

A non-blocking flock on the lease file decides ownership. Next to it a JSON
record names the holder and when it took the lease. If the flock is held but
the record is older than the TTL, the holder is assumed hung and the lease is
taken over.
"""

import os
import fcntl
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from .utils import load_json_file, log_audit_event, parse_datetime, save_json_file, utc_now

logger = logging.getLogger(__name__)


class CycleLease:
    """Context manager around the cycle lock; check `acquired` after entering."""

    def __init__(
        self,
        lease_file: str,
        ttl_seconds: float = 540,
        holder_id: Optional[str] = None,
        audit_file: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.lease_file = lease_file
        self.record_file = f"{lease_file}.json"
        self.ttl_seconds = ttl_seconds
        self.holder_id = holder_id or f"{os.getpid()}-{uuid.uuid4().hex[:8]}"
        self.audit_file = audit_file
        self.clock = clock
        self.acquired = False
        self._fd = None

    def _read_record(self) -> Optional[Dict[str, Any]]:
        return load_json_file(self.record_file, default=None)

    def _is_stale(self, record: Optional[Dict[str, Any]]) -> bool:
        if not record or not record.get('acquired_at'):
            return False
        acquired_at = parse_datetime(record['acquired_at'])
        ttl = record.get('ttl_seconds', self.ttl_seconds)
        return self.clock() - acquired_at > timedelta(seconds=ttl)

    def _write_record(self) -> None:
        save_json_file(self.record_file, {
            'holder_id': self.holder_id,
            'pid': os.getpid(),
            'acquired_at': self.clock().isoformat(),
            'ttl_seconds': self.ttl_seconds
        })

    def acquire(self) -> bool:
        """Try to take the lease without blocking. Returns True on success."""
        os.makedirs(os.path.dirname(self.lease_file) or '.', exist_ok=True)
        self._fd = open(self.lease_file, 'w')

        try:
            fcntl.flock(self._fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            record = self._read_record()
            if not self._is_stale(record):
                holder = (record or {}).get('holder_id', 'unknown')
                logger.warning(f"⏸️ Cycle already running (lease held by {holder})")
                self._fd.close()
                self._fd = None
                return False

            logger.warning(
                f"⚠️ Taking over stale cycle lease held by {record.get('holder_id')} "
                f"since {record.get('acquired_at')} (ttl {record.get('ttl_seconds')}s)"
            )
            if self.audit_file:
                log_audit_event(self.audit_file, 'CYCLE_LEASE_TAKEOVER', {
                    'previous_holder': record.get('holder_id'),
                    'previous_acquired_at': record.get('acquired_at'),
                    'holder_id': self.holder_id
                }, outcome='WARNING')
            # The hung holder keeps its flock; this lease runs without one
            self._fd.close()
            self._fd = None
        else:
            previous = self._read_record()
            if previous:
                logger.info(
                    f"Previous lease holder {previous.get('holder_id')} did not release cleanly"
                )

        self._write_record()
        self.acquired = True
        logger.debug(f"Cycle lease acquired by {self.holder_id}")
        return True

    def release(self) -> None:
        if not self.acquired:
            return

        record = self._read_record()
        if record and record.get('holder_id') == self.holder_id:
            try:
                os.remove(self.record_file)
            except OSError as e:
                logger.error(f"Failed to remove lease record: {e}")

        if self._fd is not None:
            fcntl.flock(self._fd.fileno(), fcntl.LOCK_UN)
            self._fd.close()
            self._fd = None

        self.acquired = False
        logger.debug(f"Cycle lease released by {self.holder_id}")

    def __enter__(self) -> 'CycleLease':
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
