"""SQLAlchemy database models and engine setup for the note store."""
import datetime
import logging
from typing import Optional

from sqlalchemy import (Boolean, Column, DateTime, ForeignKey, Index, Integer,
                        String, Table, Text, create_engine, event, text)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import QueuePool

from notecore.config import NoteCoreConfig

logger = logging.getLogger(__name__)

Base = declarative_base()


def _utcnow_naive() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


# Association table for tags and notes; removing either side removes the pair
note_tags = Table(
    "note_tags",
    Base.metadata,
    Column("note_id", Integer, ForeignKey("notes.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
    Index("ix_note_tags_tag_id", "tag_id"),
)


class DBNote(Base):
    """Database model for a note. Timestamps are naive UTC."""
    __tablename__ = "notes"
    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(Text, nullable=False)
    body = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, default=_utcnow_naive, nullable=False, index=True)
    updated_at = Column(DateTime, default=_utcnow_naive, nullable=False, index=True)
    pinned = Column(Boolean, default=False, nullable=False)
    archived = Column(Boolean, default=False, nullable=False)
    deleted_at = Column(DateTime, nullable=True, index=True)

    tags = relationship(
        "DBTag", secondary=note_tags, back_populates="notes", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"<Note(id={self.id}, title='{self.title}')>"


class DBTag(Base):
    """Database model for a tag. Names are stored case-normalized."""
    __tablename__ = "tags"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(64), unique=True, nullable=False)

    notes = relationship(
        "DBNote", secondary=note_tags, back_populates="tags", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"<Tag(id={self.id}, name='{self.name}')>"


class DBBackup(Base):
    """A database backup written on clean shutdown. Never mutated."""
    __tablename__ = "backups"
    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime, default=_utcnow_naive, nullable=False)
    path = Column(Text, nullable=False)

    def __repr__(self) -> str:
        return f"<Backup(id={self.id}, path='{self.path}')>"


def create_db_engine(cfg: NoteCoreConfig, db_url: Optional[str] = None) -> Engine:
    """Create an engine with the hardened SQLite connection settings.

    Every new connection gets:
    - WAL journal mode and ``synchronous=NORMAL``
    - foreign key enforcement (needed for the association cascades)
    - the configured ``wal_autocheckpoint`` and ``busy_timeout``
    """
    busy_timeout_ms = cfg.busy_timeout_ms
    engine = create_engine(
        db_url or cfg.get_db_url(),
        poolclass=QueuePool,
        pool_size=1,
        max_overflow=1,
        pool_pre_ping=True,
        connect_args={
            # The storage worker owns the engine, but it may be created
            # on a different thread than the one that uses it.
            "check_same_thread": False,
            "timeout": busy_timeout_ms / 1000.0,
        },
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA wal_autocheckpoint={int(cfg.wal_autocheckpoint)}")
        cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        cursor.close()

    return engine


def init_db(cfg: NoteCoreConfig, db_url: Optional[str] = None) -> Engine:
    """Create the schema (idempotently) and return a configured engine."""
    engine = create_db_engine(cfg, db_url)
    Base.metadata.create_all(engine)
    init_fts5(engine)
    return engine


def init_fts5(engine: Engine) -> None:
    """Create the FTS5 mirror of ``notes`` and the triggers that sync it.

    The mirror stores its own copy of title/body keyed by the note id as
    rowid, so it can be rebuilt from ``notes`` at any time and feeds the
    ``notes_fts_vocab`` table used for fuzzy expansion.
    """
    with engine.connect() as conn:
        conn.execute(text("""
            CREATE VIRTUAL TABLE IF NOT EXISTS notes_fts USING fts5(
                title,
                body,
                tokenize='unicode61',
                prefix='2 3'
            )
        """))
        conn.execute(text("""
            CREATE VIRTUAL TABLE IF NOT EXISTS notes_fts_vocab
            USING fts5vocab(notes_fts, 'row')
        """))

        conn.execute(text("""
            CREATE TRIGGER IF NOT EXISTS notes_ai AFTER INSERT ON notes BEGIN
                INSERT INTO notes_fts(rowid, title, body)
                VALUES (NEW.id, NEW.title, NEW.body);
            END
        """))
        conn.execute(text("""
            CREATE TRIGGER IF NOT EXISTS notes_ad AFTER DELETE ON notes BEGIN
                DELETE FROM notes_fts WHERE rowid = OLD.id;
            END
        """))
        # Flag-only updates (pinned, trash) leave the mirror alone
        conn.execute(text("""
            CREATE TRIGGER IF NOT EXISTS notes_au AFTER UPDATE OF title, body ON notes BEGIN
                DELETE FROM notes_fts WHERE rowid = OLD.id;
                INSERT INTO notes_fts(rowid, title, body)
                VALUES (NEW.id, NEW.title, NEW.body);
            END
        """))
        conn.commit()


def rebuild_fts_index(engine: Engine) -> int:
    """Rebuild the FTS5 mirror from the notes table.

    Returns:
        Number of notes indexed.
    """
    with engine.connect() as conn:
        conn.execute(text("DELETE FROM notes_fts"))
        conn.execute(text(
            "INSERT INTO notes_fts(rowid, title, body) SELECT id, title, body FROM notes"
        ))
        conn.commit()
        count = conn.execute(text("SELECT COUNT(*) FROM notes_fts")).scalar()
    return int(count or 0)


def get_session_factory(engine: Engine):
    """Get a session factory for the database."""
    return sessionmaker(bind=engine, expire_on_commit=False)
