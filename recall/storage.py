"""SQLite Event Store for Screen Recall.

This module persists capture events and their screenshots. Event metadata is
kept in a SQLite database; screenshot blobs are PNG files in a flat
screenshots directory next to it.

On-disk layout:
    <data_dir>/recall.db              event index
    <data_dir>/screenshots/*.png      one file per capture, named
                                      YYYYMMDD_HHMMSS_mmm.png

Database Schema:
    capture_events table:
        - id: Opaque identifier (uuid hex), primary key
        - timestamp: Capture instant as Unix seconds with millisecond
          precision (indexed)
        - ocr_text: Extracted text, NULL when nothing was recognized
        - screenshot_path: Path relative to the screenshots directory, NULL
          when the image could not be written
        - application_name: Foreground application name (optional)
        - bundle_identifier: Foreground application identifier (optional)

Concurrency:
    Writes are serialized by a lock owned by the store, so callers never need
    their own locking. Readers open independent connections and may run
    concurrently with the writer (the database runs in WAL mode).

Example:
    >>> store = EventStore("~/screen-recall-data")
    >>> path = store.save_screenshot(image, timestamp)
    >>> store.save(CaptureEvent.create(timestamp, "hello", path, "Firefox", "firefox"))
    >>> store.fetch_by_keywords(["hello"])
"""

import logging
import sqlite3
import threading
import unicodedata
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from .errors import ImageEncodeFailure, PersistenceError
from .models import CaptureEvent

logger = logging.getLogger(__name__)

EVENT_COLUMNS = "id, timestamp, ocr_text, screenshot_path, application_name, bundle_identifier"


def fold_text(text: Optional[str]) -> Optional[str]:
    """Fold case and strip diacritics so 'Café' and 'CAFE' compare equal."""
    if text is None:
        return None
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c)).casefold()


def screenshot_filename(timestamp: datetime) -> str:
    """Deterministic, millisecond-resolution filename for a capture instant."""
    return f"{timestamp.strftime('%Y%m%d_%H%M%S')}_{timestamp.microsecond // 1000:03d}.png"


class EventStore:
    """Durable repository of capture events and screenshot files.

    Attributes:
        data_dir (Path): Root data directory
        db_path (str): Path to the SQLite database file
        screenshots_dir (Path): Directory that every screenshot path resolves into

    Example:
        >>> store = EventStore(tmp_dir)
        >>> store.fetch_recent(5)
        []
    """

    def __init__(self, data_dir: str = "~/screen-recall-data"):
        """Initialize the store and create its directories and schema.

        Args:
            data_dir (str): Directory holding the database and screenshots.
                Tilde notation is expanded.

        Raises:
            PersistenceError: If the directories or schema cannot be created
        """
        self.data_dir = Path(data_dir).expanduser()
        self.screenshots_dir = self.data_dir / "screenshots"
        try:
            self.screenshots_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create data directory {self.data_dir}: {e}") from e

        self.db_path = str(self.data_dir / "recall.db")
        self._write_lock = threading.Lock()
        self.init_db()

    @contextmanager
    def get_connection(self):
        """Context manager yielding a SQLite connection.

        The connection uses the Row factory and has the ``fold`` SQL function
        registered for case- and diacritic-insensitive matching.

        Raises:
            PersistenceError: If the database file cannot be opened
        """
        try:
            conn = sqlite3.connect(self.db_path, timeout=10)
        except sqlite3.Error as e:
            raise PersistenceError(f"Database access error for {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        conn.create_function("fold", 1, fold_text, deterministic=True)
        try:
            yield conn
        finally:
            conn.close()

    def init_db(self):
        """Create the capture_events table and its timestamp index."""
        try:
            with self.get_connection() as conn:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS capture_events (
                        id TEXT PRIMARY KEY,
                        timestamp REAL NOT NULL,
                        ocr_text TEXT,
                        screenshot_path TEXT,
                        application_name TEXT,
                        bundle_identifier TEXT
                    )
                """)
                conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_events_timestamp ON capture_events(timestamp)
                """)
                conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to initialize schema in {self.db_path}: {e}") from e

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save(self, event: CaptureEvent) -> None:
        """Persist a capture event atomically.

        Empty OCR text is stored as NULL so "nothing recognized" stays
        distinguishable from real text.

        Args:
            event (CaptureEvent): Event to store

        Raises:
            PersistenceError: If the write fails. The transaction is rolled
                back, so no partial record is ever visible to readers.
        """
        payload = (
            event.id,
            event.timestamp.timestamp(),
            event.ocr_text or None,
            event.screenshot_path or None,
            event.application_name,
            event.bundle_identifier,
        )
        with self._write_lock:
            with self.get_connection() as conn:
                try:
                    conn.execute(
                        f"INSERT INTO capture_events ({EVENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                        payload,
                    )
                    conn.commit()
                except sqlite3.Error as e:
                    conn.rollback()
                    raise PersistenceError(f"Failed to save capture event {event.id}: {e}") from e
        logger.info(f"Saved capture event {event.id} ({event.application_name or 'unknown app'})")

    def save_screenshot(self, image, timestamp: datetime) -> Optional[str]:
        """Encode a frame as PNG into the screenshots directory.

        Args:
            image: PIL image to write
            timestamp (datetime): Capture instant, used for the filename

        Returns:
            Optional[str]: Path relative to the screenshots directory, or None
                if encoding or writing failed (any partial file is removed)
        """
        try:
            return self._write_screenshot(image, timestamp)
        except ImageEncodeFailure as e:
            logger.warning(f"Screenshot not saved: {e}")
            return None

    def _write_screenshot(self, image, timestamp: datetime) -> str:
        filename = screenshot_filename(timestamp)
        filepath = self.screenshots_dir / filename
        try:
            self.screenshots_dir.mkdir(parents=True, exist_ok=True)
            image.save(filepath, "PNG")
        except Exception as e:
            filepath.unlink(missing_ok=True)
            raise ImageEncodeFailure(f"Failed to write {filepath}: {e}") from e
        logger.debug(f"Screenshot saved: {filepath}")
        return filename

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def fetch_recent(self, limit: int = 0) -> List[CaptureEvent]:
        """Return the most recent events, newest first.

        Args:
            limit (int): Maximum number of events; 0 returns every event

        Returns:
            List[CaptureEvent]: Events ordered by timestamp descending. Empty
                when the store is empty or the query fails.
        """
        query = f"SELECT {EVENT_COLUMNS} FROM capture_events ORDER BY timestamp DESC, rowid DESC"
        params: tuple = ()
        if limit > 0:
            query += " LIMIT ?"
            params = (limit,)
        return self._query(query, params)

    def fetch_by_keywords(self, keywords: Iterable[str]) -> List[CaptureEvent]:
        """Return events whose OCR text contains any of ``keywords``.

        Matching is a case- and diacritic-insensitive substring match, and
        keywords combine with logical OR. Blank keywords are ignored; if none
        remain the database is not queried at all.

        Args:
            keywords: Search terms

        Returns:
            List[CaptureEvent]: Matching events, newest first
        """
        needles = [fold_text(k.strip()) for k in keywords if k and k.strip()]
        if not needles:
            logger.debug("Keyword search called without usable keywords")
            return []

        clause = " OR ".join("instr(fold(ocr_text), ?) > 0" for _ in needles)
        query = (
            f"SELECT {EVENT_COLUMNS} FROM capture_events "
            f"WHERE ocr_text IS NOT NULL AND ({clause}) "
            "ORDER BY timestamp DESC, rowid DESC"
        )
        events = self._query(query, tuple(needles))
        logger.debug(f"Keyword search matched {len(events)} events")
        return events

    def fetch_between(self, start: datetime, end: datetime) -> List[CaptureEvent]:
        """Return events with start <= timestamp < end, oldest first."""
        return self._query(
            f"SELECT {EVENT_COLUMNS} FROM capture_events "
            "WHERE timestamp >= ? AND timestamp < ? ORDER BY timestamp ASC, rowid ASC",
            (start.timestamp(), end.timestamp()),
        )

    def get_event(self, event_id: str) -> Optional[CaptureEvent]:
        events = self._query(
            f"SELECT {EVENT_COLUMNS} FROM capture_events WHERE id = ?", (event_id,)
        )
        return events[0] if events else None

    def count(self) -> int:
        try:
            with self.get_connection() as conn:
                return conn.execute("SELECT COUNT(*) FROM capture_events").fetchone()[0]
        except (sqlite3.Error, PersistenceError) as e:
            logger.error(f"Failed to count capture events: {e}")
            return 0

    def resolve_screenshot_path(self, relative_path: Optional[str]) -> Optional[Path]:
        """Map a stored screenshot path to an absolute path.

        Rejects empty paths, absolute paths and any path with a parent
        directory segment before touching the filesystem, so the result always
        lies inside ``screenshots_dir``.

        Args:
            relative_path (str): Path as stored on a CaptureEvent

        Returns:
            Optional[Path]: Absolute path, or None if the path is rejected

        Example:
            >>> store.resolve_screenshot_path("../../etc/passwd") is None
            True
        """
        if not relative_path:
            return None
        segments = relative_path.replace("\\", "/").split("/")
        if ".." in segments or relative_path.startswith(("/", "\\")) or Path(relative_path).is_absolute():
            logger.warning(f"Rejected screenshot path outside screenshots directory: {relative_path}")
            return None
        return self.screenshots_dir / relative_path

    def _query(self, query: str, params: tuple) -> List[CaptureEvent]:
        try:
            with self.get_connection() as conn:
                rows = conn.execute(query, params).fetchall()
        except (sqlite3.Error, PersistenceError) as e:
            logger.error(f"Capture event query failed: {e}")
            return []
        return [self._row_to_event(row) for row in rows]

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> CaptureEvent:
        return CaptureEvent(
            id=row["id"],
            timestamp=datetime.fromtimestamp(row["timestamp"]),
            ocr_text=row["ocr_text"],
            screenshot_path=row["screenshot_path"],
            application_name=row["application_name"],
            bundle_identifier=row["bundle_identifier"],
        )
