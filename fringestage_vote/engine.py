"""
fringestage_vote/engine.py - Session Registry & Aggregation Engine

The only authority over session state.

Per-session lifecycle (one-directional, every step single-use):

    Created(active) -> Ended(inactive) -> DecryptionRequested -> ResultsStored

Votes are accepted only while Created(active) and inside
[start_time, end_time].

Invariants:
- vote_count == number of distinct addresses flagged as voted
- Accumulators are only ever added to
- The engine holds a grant on the CURRENT handle of every accumulator.
  A homomorphic add yields a new handle with no grants, so every rewrite
  goes through `_rewrite_accumulator`, which re-grants.
- External decryption grants are only meaningful once voting is closed;
  `request_decryption` re-grants the requester on the final handles.

Trust boundary:
- `store_decrypted_results` cannot check the submitted totals against the
  ciphertexts. Published results are attested by an authorized party, and
  only parties the theater company authorized may publish.
"""
import logging
from typing import List, Optional, Union

from sqlalchemy.orm import Session as DBSession

from .config import Settings, get_settings
from .coprocessor import Coprocessor, KeyMaterial, load_or_generate_keys
from .errors import (
    EngineRevert,
    session_not_found,
    session_not_active,
    session_still_active,
    already_voted,
    only_theater_company,
    unauthorized_theater,
    insufficient_votes,
    decryption_already_requested,
    decryption_not_requested,
    results_already_stored,
    results_not_available,
    malformed_argument,
)
from .ledger import Ledger, Transaction, SealedEvent, Clock, system_clock
from .models import (
    Dimension,
    DIMENSIONS,
    RatingInputs,
    SessionInfo,
    EncryptedAggregates,
    DecryptedResults,
    normalize_address,
    parse_bytes32,
    require_uint,
)
from .store import LedgerStore, SessionRow, VoteRow, AuthorizationRow, ResultRow, count_sessions

logger = logging.getLogger(__name__)


class VotingEngine:
    """
    Session registry and encrypted aggregation over a Ledger.

    Mutating operations take the caller address as `sender` and run as one
    atomic transaction each. Read operations never mutate and reject unknown
    sessions (except `get_total_sessions`).
    """

    def __init__(self, ledger: Ledger, settings: Settings):
        self.ledger = ledger
        self.min_votes_for_decryption = settings.MIN_VOTES_FOR_DECRYPTION
        self.decryption_requires_end_time = settings.DECRYPTION_REQUIRES_END_TIME

    @property
    def address(self) -> str:
        return self.ledger.address

    @property
    def coprocessor(self) -> Coprocessor:
        return self.ledger.coprocessor

    # =========================================================
    # MUTATIONS
    # =========================================================

    def create_session(self, sender: str, title: str, venue: str, start_time: int, end_time: int) -> int:
        """
        Open a new voting session owned by `sender`.

        No ordering check is made between start_time and end_time; sane
        scheduling is the caller's job.

        Returns:
            int: the new session id (sequential from 0).
        """
        _require_text(title, "title")
        _require_text(venue, "venue")
        require_uint(start_time, "start_time")
        require_uint(end_time, "end_time")

        with self.ledger.transaction(sender, "create_session") as tx:
            session_id = count_sessions(tx.db)
            session = SessionRow(
                id=session_id,
                title=title,
                venue=venue,
                start_time=start_time,
                end_time=end_time,
                theater_company=tx.sender,
                vote_count=0,
                is_active=True,
                decryption_requested=False,
                decryption_completed=False,
            )
            for dim in DIMENSIONS:
                _rewrite_accumulator(tx, session, dim, tx.fhe.trivial_encrypt(0))
            tx.db.add(session)
            tx.db.add(AuthorizationRow(session_id=session_id, address=tx.sender))
            tx.db.flush()

            tx.emit("SessionCreated", session_id, title=title, venue=venue, start_time=start_time,
                    end_time=end_time, theater_company=tx.sender)
        return session_id

    def submit_vote(self, sender: str, session_id: int, ratings: RatingInputs,
                    comment_hash: Union[bytes, str]) -> None:
        """
        Add one voter's four encrypted ratings into the session's accumulators.

        Checks, in order: session exists, session active, block time inside
        [start_time, end_time], sender has not voted yet.

        The comment is accepted only as a 32-byte digest and is not stored.
        """
        require_uint(session_id, "session_id")
        parse_bytes32(comment_hash)

        with self.ledger.transaction(sender, "submit_vote") as tx:
            session = _load_session(tx.db, session_id)
            if not session.is_active:
                raise EngineRevert(session_not_active(session_id))
            if not session.start_time <= tx.timestamp <= session.end_time:
                raise EngineRevert(session_not_active(session_id))
            if tx.db.get(VoteRow, (session_id, tx.sender)) is not None:
                raise EngineRevert(already_voted(session_id, tx.sender))

            for dim, external in ratings.by_dimension().items():
                rating = tx.fhe.from_external(external, tx.sender)
                total = tx.fhe.add(_accumulator(session, dim), rating)
                _rewrite_accumulator(tx, session, dim, total)

            tx.db.add(VoteRow(session_id=session_id, voter=tx.sender))
            session.vote_count += 1
            tx.db.flush()

            tx.emit("VoteSubmitted", session_id, voter=tx.sender, vote_count=session.vote_count)

    def authorize_theater(self, sender: str, session_id: int, address: str) -> None:
        """
        Add `address` to the session's authorization set and grant it
        decryption on the current accumulator handles.

        Grants made while voting is open go stale with the next vote; the
        grant that matters is the one `request_decryption` makes.
        """
        require_uint(session_id, "session_id")
        address = normalize_address(address)

        with self.ledger.transaction(sender, "authorize_theater") as tx:
            session = _load_session(tx.db, session_id)
            if tx.sender != session.theater_company:
                raise EngineRevert(only_theater_company(session_id, tx.sender))

            if tx.db.get(AuthorizationRow, (session_id, address)) is None:
                tx.db.add(AuthorizationRow(session_id=session_id, address=address))
            for dim in DIMENSIONS:
                tx.fhe.allow(_accumulator(session, dim), address)
            tx.db.flush()

            tx.emit("TheaterAuthorized", session_id, theater=address)

    def end_session(self, sender: str, session_id: int) -> None:
        """
        Close voting. Creator only, at any time; ending twice changes nothing.
        """
        require_uint(session_id, "session_id")

        with self.ledger.transaction(sender, "end_session") as tx:
            session = _load_session(tx.db, session_id)
            if tx.sender != session.theater_company:
                raise EngineRevert(only_theater_company(session_id, tx.sender))
            session.is_active = False
            tx.db.flush()

            tx.emit("SessionEnded", session_id)

    def request_decryption(self, sender: str, session_id: int) -> None:
        """
        Mark the session's totals as ready for decryption by `sender`.

        Requires: sender authorized, session ended, enough votes, not
        requested before. The requester is (re-)granted decryption on the
        final accumulator handles.
        """
        require_uint(session_id, "session_id")

        with self.ledger.transaction(sender, "request_decryption") as tx:
            session = _load_session(tx.db, session_id)
            if tx.db.get(AuthorizationRow, (session_id, tx.sender)) is None:
                raise EngineRevert(unauthorized_theater(session_id, tx.sender))
            if session.is_active:
                raise EngineRevert(session_still_active(session_id))
            if self.decryption_requires_end_time and tx.timestamp <= session.end_time:
                raise EngineRevert(session_still_active(session_id))
            if session.vote_count < self.min_votes_for_decryption:
                raise EngineRevert(insufficient_votes(session_id, session.vote_count,
                                                      self.min_votes_for_decryption))
            if session.decryption_requested:
                raise EngineRevert(decryption_already_requested(session_id))

            session.decryption_requested = True
            for dim in DIMENSIONS:
                tx.fhe.allow(_accumulator(session, dim), tx.sender)
            tx.db.flush()

            tx.emit("DecryptionRequested", session_id, requester=tx.sender)

    def store_decrypted_results(self, sender: str, session_id: int, total_plot_tension: int,
                                total_performance: int, total_stage_design: int, total_pacing: int) -> None:
        """
        Publish the plaintext totals for a session. Succeeds once per session.

        The totals are taken on trust from the authorized sender; nothing here
        checks them against the accumulators.
        """
        require_uint(session_id, "session_id")
        require_uint(total_plot_tension, "total_plot_tension")
        require_uint(total_performance, "total_performance")
        require_uint(total_stage_design, "total_stage_design")
        require_uint(total_pacing, "total_pacing")

        with self.ledger.transaction(sender, "store_decrypted_results") as tx:
            session = _load_session(tx.db, session_id)
            if tx.db.get(AuthorizationRow, (session_id, tx.sender)) is None:
                raise EngineRevert(unauthorized_theater(session_id, tx.sender))
            if not session.decryption_requested:
                raise EngineRevert(decryption_not_requested(session_id))
            if session.decryption_completed:
                raise EngineRevert(results_already_stored(session_id))

            tx.db.add(ResultRow(
                session_id=session_id,
                total_plot_tension=total_plot_tension,
                total_performance=total_performance,
                total_stage_design=total_stage_design,
                total_pacing=total_pacing,
                stored_by=tx.sender,
            ))
            session.decryption_completed = True
            tx.db.flush()

            tx.emit("ResultsStored", session_id, submitter=tx.sender)

        logger.info("Session %d results published by %s (attested, not verified against ciphertexts)",
                    session_id, sender)

    # =========================================================
    # READS
    # =========================================================

    def get_session_info(self, session_id: int) -> SessionInfo:
        require_uint(session_id, "session_id")
        with self.ledger.store.snapshot() as db:
            return _session_info(_load_session(db, session_id))

    def list_sessions(self) -> List[SessionInfo]:
        with self.ledger.store.snapshot() as db:
            return [_session_info(row) for row in db.query(SessionRow).order_by(SessionRow.id.asc()).all()]

    def get_total_sessions(self) -> int:
        with self.ledger.store.snapshot() as db:
            return count_sessions(db)

    def has_voted(self, session_id: int, voter: str) -> bool:
        require_uint(session_id, "session_id")
        voter = normalize_address(voter, "voter")
        with self.ledger.store.snapshot() as db:
            _load_session(db, session_id)
            return db.get(VoteRow, (session_id, voter)) is not None

    def is_authorized(self, session_id: int, address: str) -> bool:
        require_uint(session_id, "session_id")
        address = normalize_address(address)
        with self.ledger.store.snapshot() as db:
            _load_session(db, session_id)
            return db.get(AuthorizationRow, (session_id, address)) is not None

    def get_encrypted_aggregates(self, session_id: int) -> EncryptedAggregates:
        """
        Current accumulator handles. Decrypting them needs a grant on these
        exact handles.
        """
        require_uint(session_id, "session_id")
        with self.ledger.store.snapshot() as db:
            session = _load_session(db, session_id)
            return EncryptedAggregates(**{dim.value: _accumulator(session, dim) for dim in DIMENSIONS})

    def get_decrypted_results(self, session_id: int) -> DecryptedResults:
        """
        Published totals with truncated averages.

        Raises:
            EngineRevert: SESSION_NOT_FOUND, or RESULTS_NOT_AVAILABLE until
            results have been stored.
        """
        require_uint(session_id, "session_id")
        with self.ledger.store.snapshot() as db:
            session = _load_session(db, session_id)
            if not session.decryption_completed:
                raise EngineRevert(results_not_available(session_id))
            row = db.get(ResultRow, session_id)
            totals = {dim: getattr(row, f"total_{dim.value}") for dim in DIMENSIONS}
            return DecryptedResults.from_totals(session_id, session.vote_count, totals)

    def events(self, session_id: Optional[int] = None) -> List[SealedEvent]:
        return self.ledger.events(session_id)


def _load_session(db: DBSession, session_id: int) -> SessionRow:
    session = db.get(SessionRow, session_id)
    if session is None:
        raise EngineRevert(session_not_found(session_id))
    return session


def _accumulator(session: SessionRow, dim: Dimension) -> str:
    return getattr(session, f"{dim.value}_handle")


def _rewrite_accumulator(tx: Transaction, session: SessionRow, dim: Dimension, handle: str) -> None:
    """The one place an accumulator handle changes. The grant follows the handle."""
    setattr(session, f"{dim.value}_handle", handle)
    tx.fhe.allow_this(handle)


def _session_info(session: SessionRow) -> SessionInfo:
    return SessionInfo(
        session_id=session.id,
        title=session.title,
        venue=session.venue,
        start_time=session.start_time,
        end_time=session.end_time,
        theater_company=session.theater_company,
        vote_count=session.vote_count,
        is_active=session.is_active,
        decryption_requested=session.decryption_requested,
        decryption_completed=session.decryption_completed,
    )


def _require_text(value: str, name: str) -> None:
    if not isinstance(value, str):
        raise EngineRevert(malformed_argument(name, "expected string"))


def build_engine(settings: Optional[Settings] = None, clock: Clock = system_clock,
                 keys: Optional[KeyMaterial] = None) -> VotingEngine:
    """
    Wire store, coprocessor, ledger and engine from settings.

    Parameters:
        settings: Defaults to the environment-derived settings.
        clock: Block timestamp source (unix seconds).
        keys: Coprocessor keys; loaded from or generated at FHE_KEY_PATH when omitted.
    """
    settings = settings or get_settings()
    store = LedgerStore(settings.DATABASE_URL)
    if keys is None:
        keys = load_or_generate_keys(settings.FHE_KEY_PATH, settings.FHE_KEY_BITS)
    ledger = Ledger(store, Coprocessor(keys, store), settings.ENGINE_ADDRESS, clock)
    return VotingEngine(ledger, settings)
