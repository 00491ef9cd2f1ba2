"""
fringestage_vote/store.py - Ledger Persistence

Responsibilities:
- Own every table the engine and the coprocessor write to
- Hand out one database transaction per ledger transaction
- Hand out read-only snapshots for queries

Sessions, votes, authorizations, ciphertexts and permission grants are only
ever inserted or updated in place; nothing is deleted.
"""
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List

from sqlalchemy import (
    create_engine, event, Column, String, Integer, BigInteger, Boolean, Text, DateTime,
    ForeignKey, func, select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, sessionmaker, Session as DBSession
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    pass


class SessionRow(Base):
    """One voting session per performance."""
    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, autoincrement=False)
    title = Column(Text, nullable=False)
    venue = Column(Text, nullable=False)
    start_time = Column(BigInteger, nullable=False)
    end_time = Column(BigInteger, nullable=False)
    theater_company = Column(String(42), nullable=False, index=True)

    vote_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    decryption_requested = Column(Boolean, nullable=False, default=False)
    decryption_completed = Column(Boolean, nullable=False, default=False)

    # Current accumulator handles; replaced after every homomorphic add
    plot_tension_handle = Column(String(66), nullable=False)
    performance_handle = Column(String(66), nullable=False)
    stage_design_handle = Column(String(66), nullable=False)
    pacing_handle = Column(String(66), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class VoteRow(Base):
    """Has-voted flag. No rating content is kept."""
    __tablename__ = "votes"

    session_id = Column(Integer, ForeignKey("sessions.id"), primary_key=True)
    voter = Column(String(42), primary_key=True)


class AuthorizationRow(Base):
    __tablename__ = "authorizations"

    session_id = Column(Integer, ForeignKey("sessions.id"), primary_key=True)
    address = Column(String(42), primary_key=True)


class ResultRow(Base):
    """Plaintext totals, written once per session."""
    __tablename__ = "decrypted_results"

    session_id = Column(Integer, ForeignKey("sessions.id"), primary_key=True)
    total_plot_tension = Column(BigInteger, nullable=False)
    total_performance = Column(BigInteger, nullable=False)
    total_stage_design = Column(BigInteger, nullable=False)
    total_pacing = Column(BigInteger, nullable=False)
    stored_by = Column(String(42), nullable=False)


class CiphertextRow(Base):
    __tablename__ = "ciphertexts"

    handle = Column(String(66), primary_key=True)
    ciphertext = Column(Text, nullable=False)  # Decimal string of the Paillier ciphertext
    exponent = Column(Integer, nullable=False, default=0)


class AclRow(Base):
    __tablename__ = "acl"

    handle = Column(String(66), ForeignKey("ciphertexts.handle"), primary_key=True)
    address = Column(String(42), primary_key=True)


class LedgerEventRow(Base):
    """Append-only, hash-chained event log."""
    __tablename__ = "ledger_events"

    sequence = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String(64), nullable=False)
    session_id = Column(Integer, nullable=True, index=True)
    args_jcs = Column(Text, nullable=False)
    block_timestamp = Column(BigInteger, nullable=False)
    prev_event_hash = Column(String(64), nullable=True)
    event_hash = Column(String(64), nullable=False)


class LedgerHeadRow(Base):
    """Single row every write transaction locks first."""
    __tablename__ = "ledger_head"

    id = Column(Integer, primary_key=True, autoincrement=False)


HEAD_ID = 1
WRITER_OPTION = "fringestage_writer"


def _serialize_sqlite_writers(engine: Engine) -> None:
    """
    Take over BEGIN from pysqlite so that write transactions start with
    BEGIN IMMEDIATE. A second writer, in this or any other process, then
    waits for the first to commit before it reads anything.
    """
    @event.listens_for(engine, "connect")
    def _disable_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        if conn.get_execution_options().get(WRITER_OPTION):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")


class LedgerStore:
    """
    Owner of the engine's persistent state.

    Every access goes through `transaction()` or `snapshot()`; callers never
    keep a database session around between operations.
    """

    def __init__(self, database_url: str):
        """
        Create the SQLAlchemy engine, ensure the schema exists and prepare a
        session factory.

        Parameters:
            database_url (str): SQLAlchemy URL. In-memory SQLite URLs share a
                single connection so that every session sees the same database.
        """
        # One shared connection: readers must not observe an open write
        self.shared_connection = database_url in ("sqlite://", "sqlite:///:memory:")
        if self.shared_connection:
            self.engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(database_url)
        if self.engine.dialect.name == "sqlite":
            _serialize_sqlite_writers(self.engine)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, autoflush=True, expire_on_commit=False)
        self._writer = self.engine.execution_options(**{WRITER_OPTION: True})
        self._write_lock = threading.RLock()
        self._ensure_head()

    def _ensure_head(self) -> None:
        try:
            with self.transaction() as db:
                if db.get(LedgerHeadRow, HEAD_ID) is None:
                    db.add(LedgerHeadRow(id=HEAD_ID))
        except IntegrityError:
            # Another store on the same database inserted it first
            pass

    @contextmanager
    def transaction(self) -> Iterator[DBSession]:
        """
        Yield a database session that commits when the block exits normally
        and rolls back everything when it raises.

        Writers are serialized: one transaction is fully committed or rolled
        back before the next one starts. Inside one store the RLock does it;
        across stores and processes sharing a database, the row lock on
        `ledger_head` (BEGIN IMMEDIATE on SQLite) does.
        """
        with self._write_lock:
            db = self.Session(bind=self._writer)
            try:
                db.get(LedgerHeadRow, HEAD_ID, with_for_update=True)
                yield db
                db.commit()
            except BaseException:
                db.rollback()
                raise
            finally:
                db.close()

    @contextmanager
    def snapshot(self) -> Iterator[DBSession]:
        """Yield a database session for reads. Nothing is committed."""
        if self.shared_connection:
            with self._write_lock:
                yield from self._read_session()
        else:
            yield from self._read_session()

    def _read_session(self) -> Iterator[DBSession]:
        db = self.Session()
        try:
            yield db
        finally:
            db.rollback()
            db.close()

    def dispose(self) -> None:
        self.engine.dispose()


def count_sessions(db: DBSession) -> int:
    return db.scalar(select(func.count()).select_from(SessionRow)) or 0


def load_events(db: DBSession) -> List[LedgerEventRow]:
    """
    Return the whole event log ordered by sequence, detached from `db`.
    """
    rows = db.scalars(select(LedgerEventRow).order_by(LedgerEventRow.sequence.asc())).all()
    for row in rows:
        db.expunge(row)
    return list(rows)
