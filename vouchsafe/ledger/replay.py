"""
vouchsafe/ledger/replay.py

Replay Ledger - at-most-once settlement per unique_id.

Contract - a unique_id moves through:
    absent  → pending   mark_settled()   atomic test-and-set, CLAIMED record
    pending → absent    release()        rollback only, RELEASED record
    pending → settled   commit()         permanent, SETTLED record

Every transition is written before the in-memory state moves, so the file
always knows at least as much as memory. is_settled() is true for pending
AND settled ids, so a redemption that re-enters while another one for the
same id is mid-transfer is rejected. There is no operation that removes a
settled id.

Persistence (optional):
    <ledger_path>/replay.jsonl - one JSON line per transition
    {"sequence", "action", "unique_id", "recipient", "recorded_at", "prev_hash"}
    prev_hash = SHA-256(JCS(previous record)), GENESIS_HASH for the first.
    The file is replayed and its chain verified at construction.

    A CLAIMED id with no later RELEASED or SETTLED record is an attempt
    whose outcome is unknown (the process stopped mid-transfer). It is
    restored as settled and reported as unresolved.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Set, Union

from vouchsafe.core.canonical import canonical_hash
from vouchsafe.core.exceptions import AlreadyMarkedError, LedgerError
from vouchsafe.core.time import unix_now


logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64
LEDGER_FILENAME = "replay.jsonl"


class RecordAction(Enum):
    CLAIMED  = "claimed"
    RELEASED = "released"
    SETTLED  = "settled"


@dataclass(frozen=True)
class LedgerRecord:
    """One replay-ledger transition as stored on disk."""
    sequence:    int
    action:      RecordAction
    unique_id:   int
    recipient:   Optional[str]
    recorded_at: int
    prev_hash:   str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence":    self.sequence,
            "action":      self.action.value,
            "unique_id":   str(self.unique_id),
            "recipient":   self.recipient,
            "recorded_at": self.recorded_at,
            "prev_hash":   self.prev_hash,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "LedgerRecord":
        return LedgerRecord(
            sequence=    int(data["sequence"]),
            action=      RecordAction(data["action"]),
            unique_id=   int(data["unique_id"]),
            recipient=   data["recipient"],
            recorded_at= int(data["recorded_at"]),
            prev_hash=   data["prev_hash"],
        )

    def compute_hash(self) -> str:
        """Hash the next record must reference."""
        return canonical_hash(self.to_dict())


class ReplayLedger:
    """
    Monotonically growing set of settled voucher ids.

    Thread-safe via internal lock (single-process only). The lock guards
    the set mutation and its record write; callers never hold it across
    transfers.
    """

    def __init__(
        self,
        ledger_path: Optional[Union[str, Path]] = None,
        clock:       Callable[[], int] = unix_now,
    ) -> None:
        self._lock:       threading.Lock = threading.Lock()
        self._settled:    Set[int]       = set()
        self._pending:    Set[int]       = set()
        self._unresolved: Set[int]       = set()
        self._records:    List[LedgerRecord] = []
        self._clock = clock

        self._ledger_file: Optional[Path] = None
        if ledger_path is not None:
            ledger_dir = Path(ledger_path)
            ledger_dir.mkdir(parents=True, exist_ok=True)
            self._ledger_file = ledger_dir / LEDGER_FILENAME
            self._load()

    # ── Queries ───────────────────────────────────────────────

    def is_settled(self, unique_id: int) -> bool:
        with self._lock:
            return unique_id in self._settled or unique_id in self._pending

    def __contains__(self, unique_id: int) -> bool:
        return self.is_settled(unique_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._settled)

    def settled_ids(self) -> FrozenSet[int]:
        """Settled ids, including ones restored as unresolved."""
        with self._lock:
            return frozenset(self._settled)

    def unresolved_ids(self) -> FrozenSet[int]:
        """Ids restored from a CLAIMED record with no recorded outcome."""
        with self._lock:
            return frozenset(self._unresolved)

    def records(self) -> List[LedgerRecord]:
        with self._lock:
            return list(self._records)

    @property
    def ledger_file(self) -> Optional[Path]:
        return self._ledger_file

    # ── Mutations ─────────────────────────────────────────────

    def mark_settled(self, unique_id: int, recipient: Optional[str] = None) -> LedgerRecord:
        """
        Atomically claim unique_id.

        Of any number of concurrent callers for one id, exactly one returns;
        the rest raise AlreadyMarkedError. When file-backed, the claim is on
        disk before this returns. Raises LedgerError if it cannot be written;
        the id is then not claimed.
        """
        with self._lock:
            if unique_id in self._settled or unique_id in self._pending:
                raise AlreadyMarkedError(
                    "unique_id already marked", {"unique_id": unique_id}
                )
            record = self._append(RecordAction.CLAIMED, unique_id, recipient)
            self._pending.add(unique_id)
            return record

    def release(self, unique_id: int) -> None:
        """
        Undo a pending mark. Settled ids can never be released; releasing
        an id that is not pending does nothing.

        Raises LedgerError if the RELEASED record cannot be written; the id
        then stays pending, as it will be after a restart.
        """
        with self._lock:
            if unique_id in self._settled:
                raise LedgerError(
                    "settled ids cannot be removed", {"unique_id": unique_id}
                )
            if unique_id not in self._pending:
                return
            self._append(RecordAction.RELEASED, unique_id, None)
            self._pending.discard(unique_id)

    def commit(self, unique_id: int, recipient: str) -> LedgerRecord:
        """
        Make a pending mark permanent.

        Raises LedgerError if the id is not pending or the SETTLED record
        cannot be written. In the second case the id stays pending, and the
        CLAIMED record already on disk restores it as settled after a restart.
        """
        with self._lock:
            if unique_id not in self._pending:
                raise LedgerError(
                    "unique_id is not pending", {"unique_id": unique_id}
                )
            record = self._append(RecordAction.SETTLED, unique_id, recipient)
            self._pending.discard(unique_id)
            self._settled.add(unique_id)
            return record

    def _append(
        self, action: RecordAction, unique_id: int, recipient: Optional[str]
    ) -> LedgerRecord:
        # caller holds self._lock
        record = LedgerRecord(
            sequence=    len(self._records),
            action=      action,
            unique_id=   unique_id,
            recipient=   recipient,
            recorded_at= self._clock(),
            prev_hash=   (
                self._records[-1].compute_hash() if self._records else GENESIS_HASH
            ),
        )
        if self._ledger_file is not None:
            self._append_to_ledger(record)
        self._records.append(record)
        return record

    # ── Integrity ─────────────────────────────────────────────

    def verify_chain(self) -> bool:
        """
        Re-read the ledger file and check sequence, hash linkage and
        transition order. Always True for an in-memory ledger.
        """
        if self._ledger_file is None or not self._ledger_file.exists():
            return True
        try:
            _replay_state(self._read_records())
        except LedgerError:
            return False
        return True

    def get_stats(self) -> Dict[str, Any]:
        """Return current ledger state snapshot."""
        with self._lock:
            settled_at = [
                r.recorded_at for r in self._records
                if r.action is RecordAction.SETTLED
            ]
            return {
                "settled":          len(self._settled),
                "pending":          len(self._pending),
                "unresolved":       len(self._unresolved),
                "records":          len(self._records),
                "last_hash":        (
                    self._records[-1].compute_hash()
                    if self._records else GENESIS_HASH
                ),
                "first_settled_at": settled_at[0] if settled_at else None,
                "last_settled_at":  settled_at[-1] if settled_at else None,
                "ledger_file":      (
                    str(self._ledger_file) if self._ledger_file else None
                ),
            }

    # ── Internal ──────────────────────────────────────────────

    def _load(self) -> None:
        """
        Replay the ledger file into memory.
        Raises LedgerError on bad JSON, chain breaks or out-of-order
        transitions; settlement does not start from unknown replay state.
        """
        if not self._ledger_file.exists():
            return
        self._records = self._read_records()
        settled, unresolved = _replay_state(self._records)
        self._settled = settled | unresolved
        self._unresolved = unresolved
        logger.info(
            "Restored %d settled voucher ids from %s",
            len(self._settled), self._ledger_file,
        )
        for unique_id in sorted(unresolved):
            logger.warning(
                "Voucher %s was claimed with no recorded outcome; "
                "treating it as settled", unique_id,
            )

    def _read_records(self) -> List[LedgerRecord]:
        records: List[LedgerRecord] = []
        try:
            with open(self._ledger_file, "r", encoding="utf-8") as f:
                for line_num, line in enumerate(f, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        record = LedgerRecord.from_dict(json.loads(line))
                    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                        raise LedgerError(
                            f"Invalid record at line {line_num}: {e}"
                        ) from e

                    expected_prev = (
                        records[-1].compute_hash() if records else GENESIS_HASH
                    )
                    if record.sequence != len(records):
                        raise LedgerError(
                            f"Sequence gap at line {line_num}: "
                            f"expected {len(records)}, got {record.sequence}"
                        )
                    if record.prev_hash != expected_prev:
                        raise LedgerError(
                            f"Chain break at line {line_num}: "
                            f"expected {expected_prev}, got {record.prev_hash}"
                        )
                    records.append(record)
        except OSError as e:
            raise LedgerError(f"Failed to load replay ledger: {e}") from e
        return records

    def _append_to_ledger(self, record: LedgerRecord) -> None:
        """Append one newline-terminated JSON line and fsync it."""
        try:
            with open(self._ledger_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(record.to_dict()) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as exc:
            raise LedgerError(f"Replay ledger write failed: {exc}") from exc


def _replay_state(records: List[LedgerRecord]):
    """
    Fold transitions into (settled, unresolved) id sets.
    Raises LedgerError on a transition the contract does not allow.
    """
    settled: Set[int] = set()
    claimed: Set[int] = set()
    for record in records:
        uid = record.unique_id
        if record.action is RecordAction.CLAIMED:
            if uid in settled or uid in claimed:
                raise LedgerError(
                    f"Duplicate claim at sequence {record.sequence}",
                    {"unique_id": uid},
                )
            claimed.add(uid)
        elif uid not in claimed:
            raise LedgerError(
                f"{record.action.value} without claim at sequence {record.sequence}",
                {"unique_id": uid},
            )
        elif record.action is RecordAction.RELEASED:
            claimed.discard(uid)
        else:
            claimed.discard(uid)
            settled.add(uid)
    return settled, claimed
