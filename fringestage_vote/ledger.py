"""
fringestage_vote/ledger.py - Transaction Runtime

Responsibilities:
- Run every state change as one atomic, serialized transaction
- Stamp each transaction with its sender and block timestamp
- Seal emitted events into an append-only hash chain

A transaction either lands completely or not at all: any exception raised
inside it rolls back session state, ciphertexts, grants and events alike.
"""
import hashlib
import json
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

import jcs
from sqlalchemy import select
from sqlalchemy.orm import Session as DBSession

from .coprocessor import Coprocessor, FheExecutor
from .errors import EngineRevert
from .models import normalize_address
from .store import LedgerStore, LedgerEventRow, load_events

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


def system_clock() -> int:
    return int(time.time())


@dataclass(frozen=True)
class SealedEvent:
    """Immutable event as recorded in the log."""
    sequence: int
    name: str
    session_id: Optional[int]
    args: Dict[str, Any]
    block_timestamp: int
    prev_event_hash: Optional[str]
    event_hash: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "name": self.name,
            "session_id": self.session_id,
            "args": self.args,
            "block_timestamp": self.block_timestamp,
            "prev_event_hash": self.prev_event_hash,
            "event_hash": self.event_hash,
        }

    @classmethod
    def from_row(cls, row: LedgerEventRow) -> "SealedEvent":
        return cls(
            sequence=row.sequence,
            name=row.name,
            session_id=row.session_id,
            args=json.loads(row.args_jcs),
            block_timestamp=row.block_timestamp,
            prev_event_hash=row.prev_event_hash,
            event_hash=row.event_hash,
        )


def compute_event_hash(
    sequence: int,
    name: str,
    session_id: Optional[int],
    args: Dict[str, Any],
    block_timestamp: int,
    prev_event_hash: Optional[str],
) -> str:
    signed_obj = {
        "sequence": sequence,
        "name": name,
        "session_id": session_id,
        "args": args,
        "block_timestamp": block_timestamp,
        "prev_event_hash": prev_event_hash,
    }
    return hashlib.sha256(jcs.canonicalize(signed_obj)).hexdigest()


@dataclass
class Transaction:
    """Execution context handed to an engine operation."""
    sender: str
    timestamp: int
    db: DBSession
    fhe: FheExecutor
    emitted: List[SealedEvent] = field(default_factory=list)

    def emit(self, name: str, session_id: Optional[int], **args: Any) -> SealedEvent:
        """
        Append an event to the log, chained to the last recorded event.
        """
        last = self.db.scalars(
            select(LedgerEventRow).order_by(LedgerEventRow.sequence.desc()).limit(1)
        ).first()
        sequence = 0 if last is None else last.sequence + 1
        prev_event_hash = None if last is None else last.event_hash

        event_hash = compute_event_hash(sequence, name, session_id, args, self.timestamp, prev_event_hash)
        self.db.add(LedgerEventRow(
            sequence=sequence,
            name=name,
            session_id=session_id,
            args_jcs=jcs.canonicalize(args).decode("utf-8"),
            block_timestamp=self.timestamp,
            prev_event_hash=prev_event_hash,
            event_hash=event_hash,
        ))
        self.db.flush()

        event = SealedEvent(
            sequence=sequence,
            name=name,
            session_id=session_id,
            args=args,
            block_timestamp=self.timestamp,
            prev_event_hash=prev_event_hash,
            event_hash=event_hash,
        )
        self.emitted.append(event)
        return event


class Ledger:
    """
    Serialized transaction runner over a LedgerStore.
    """

    def __init__(self, store: LedgerStore, coprocessor: Coprocessor, address: str, clock: Clock = system_clock):
        self.store = store
        self.coprocessor = coprocessor
        self.address = normalize_address(address, "engine_address")
        self.clock = clock

    def now(self) -> int:
        return int(self.clock())

    @contextmanager
    def transaction(self, sender: str, operation: str) -> Iterator[Transaction]:
        """
        Open one atomic transaction on behalf of `sender`.

        Parameters:
            sender (str): Caller address.
            operation (str): Operation name, for logs only.

        Raises:
            EngineRevert: whatever the operation raised, after rollback.
        """
        sender = normalize_address(sender, "sender")
        try:
            with self.store.transaction() as db:
                tx = Transaction(
                    sender=sender,
                    timestamp=self.now(),
                    db=db,
                    fhe=self.coprocessor.executor(db, self.address),
                )
                yield tx
        except EngineRevert as e:
            logger.info("%s reverted: %s (sender=%s)", operation, e.code.value, sender)
            raise
        logger.info("%s committed (sender=%s, events=%s)", operation, sender,
                    [event.name for event in tx.emitted])

    def events(self, session_id: Optional[int] = None) -> List[SealedEvent]:
        with self.store.snapshot() as db:
            rows = load_events(db)
        events = [SealedEvent.from_row(row) for row in rows]
        if session_id is not None:
            events = [event for event in events if event.session_id == session_id]
        return events


@dataclass(frozen=True)
class LogVerification:
    ok: bool
    event_count: int
    final_event_hash: Optional[str]
    first_break: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "event_count": self.event_count,
            "final_event_hash": self.final_event_hash,
            "first_break": self.first_break,
            "reason": self.reason,
        }


def verify_event_log(events: Iterable[SealedEvent]) -> LogVerification:
    """
    Recompute the hash chain of a full event log.

    Args:
        events: The log in sequence order, starting at sequence 0.

    Returns:
        LogVerification with the sequence of the first broken link, if any.
    """
    prev_hash: Optional[str] = None
    count = 0
    for i, event in enumerate(events):
        count = i + 1
        if event.sequence != i:
            return LogVerification(False, count, prev_hash, event.sequence,
                                   f"Expected sequence {i}, got {event.sequence}")
        if event.prev_event_hash != prev_hash:
            return LogVerification(False, count, prev_hash, event.sequence, "prev_event_hash does not link")
        recomputed = compute_event_hash(event.sequence, event.name, event.session_id, event.args,
                                        event.block_timestamp, event.prev_event_hash)
        if recomputed != event.event_hash:
            return LogVerification(False, count, prev_hash, event.sequence, "event_hash mismatch")
        prev_hash = event.event_hash
    return LogVerification(True, count, prev_hash)
