"""Document store: the contract the pipeline relies on, plus a SQLite implementation."""

import logging
import secrets
import sqlite3
import string
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Protocol

logger = logging.getLogger(__name__)

DATA_ROOT = Path("data")

PARSED_NOTE_TAG = "pdf-parse"
PDF_CONTENT_TYPE = "application/pdf"

_KEY_ALPHABET = string.ascii_uppercase + string.digits
_KEY_LENGTH = 8

ATTACHMENT_ADDED = "attachment-added"

StoreListener = Callable[[str, dict], None]

# ── Contract ─────────────────────────────────────────────────────────


class DocumentStore(Protocol):
    """What the parse pipeline needs from the host document store."""

    def get_document(self, document_id: int) -> dict: ...

    def get_attachment(self, attachment_id: int) -> dict: ...

    def get_best_pdf_attachment(self, document_id: int) -> dict | None: ...

    def create_child_note(self, document_id: int, tags: tuple[str, ...] = ...) -> int: ...

    def get_note_body(self, note_id: int) -> str: ...

    def set_note_body(self, note_id: int, body: str) -> None: ...

    def list_notes(self, document_id: int) -> list[dict]: ...

    def import_embedded_image(self, note_id: int, data: bytes, content_type: str) -> str: ...


# ── Schema DDL ───────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    id              INTEGER PRIMARY KEY,
    key             TEXT NOT NULL UNIQUE,
    library_id      INTEGER NOT NULL DEFAULT 1,
    item_type       TEXT NOT NULL DEFAULT 'journalArticle',
    title           TEXT NOT NULL DEFAULT '',
    deleted         INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_documents_library ON documents(library_id);

CREATE TABLE IF NOT EXISTS attachments (
    id              INTEGER PRIMARY KEY,
    key             TEXT NOT NULL UNIQUE,
    document_id     INTEGER NOT NULL REFERENCES documents(id),
    path            TEXT NOT NULL,
    content_type    TEXT NOT NULL,
    deleted         INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_attachments_document ON attachments(document_id);

CREATE TABLE IF NOT EXISTS notes (
    id              INTEGER PRIMARY KEY,
    key             TEXT NOT NULL UNIQUE,
    document_id     INTEGER NOT NULL REFERENCES documents(id),
    body            TEXT NOT NULL DEFAULT '',
    deleted         INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_notes_document ON notes(document_id);

CREATE TABLE IF NOT EXISTS note_tags (
    note_id         INTEGER NOT NULL REFERENCES notes(id),
    tag             TEXT NOT NULL,
    PRIMARY KEY (note_id, tag)
);

CREATE INDEX IF NOT EXISTS idx_note_tags_tag ON note_tags(tag);

CREATE TABLE IF NOT EXISTS embedded_images (
    id              INTEGER PRIMARY KEY,
    key             TEXT NOT NULL UNIQUE,
    note_id         INTEGER NOT NULL REFERENCES notes(id),
    content_type    TEXT NOT NULL,
    data            BLOB NOT NULL,
    created_at      TEXT NOT NULL
);
"""


# ── LibraryDatabase ──────────────────────────────────────────────────


class LibraryDatabase:
    """SQLite-backed document library: documents, PDF attachments, notes, images."""

    def __init__(self, library_name: str, data_root: Path | None = None):
        root = (data_root or DATA_ROOT) / library_name
        root.mkdir(parents=True, exist_ok=True)
        (root / "files").mkdir(exist_ok=True)

        self.files_dir = root / "files"
        self.db_path = root / "library.db"
        self._conn = sqlite3.connect(str(self.db_path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()
        self._listeners: list[StoreListener] = []

    def add_listener(self, callback: StoreListener) -> None:
        """Register a callback fired as ``callback(event, row)`` after a write commits."""
        self._listeners.append(callback)

    def _emit(self, event: str, row: dict) -> None:
        for callback in list(self._listeners):
            callback(event, row)

    # ── Documents ────────────────────────────────────────────

    def add_document(
        self,
        title: str,
        item_type: str = "journalArticle",
        library_id: int = 1,
        key: str | None = None,
    ) -> int:
        """Insert a document. Returns its id."""
        now = _now()
        cur = self._conn.execute(
            """INSERT INTO documents
               (key, library_id, item_type, title, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (key or _new_key(), library_id, item_type, title, now, now),
        )
        self._conn.commit()
        return cur.lastrowid

    def get_document(self, document_id: int) -> dict:
        row = self._conn.execute(
            "SELECT * FROM documents WHERE id = ?", (document_id,)
        ).fetchone()
        if row is None:
            raise ValueError(f"Document {document_id} not found")
        return dict(row)

    def get_documents(self, document_ids: list[int]) -> list[dict]:
        """Fetch several documents at once, skipping ids that do not exist."""
        if not document_ids:
            return []
        placeholders = ",".join("?" for _ in document_ids)
        rows = self._conn.execute(
            f"SELECT * FROM documents WHERE id IN ({placeholders}) ORDER BY id",
            list(document_ids),
        ).fetchall()
        return [dict(r) for r in rows]

    def list_document_ids(self, library_id: int) -> list[int]:
        rows = self._conn.execute(
            "SELECT id FROM documents WHERE library_id = ? AND deleted = 0 ORDER BY id",
            (library_id,),
        ).fetchall()
        return [r["id"] for r in rows]

    # ── Attachments ──────────────────────────────────────────

    def add_attachment(
        self,
        document_id: int,
        path: str | Path,
        content_type: str = PDF_CONTENT_TYPE,
        key: str | None = None,
    ) -> int:
        """Attach a file (by path) to a document. Returns the attachment id."""
        self.get_document(document_id)
        cur = self._conn.execute(
            """INSERT INTO attachments
               (key, document_id, path, content_type, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (key or _new_key(), document_id, str(path), content_type, _now()),
        )
        self._conn.commit()
        attachment = self.get_attachment(cur.lastrowid)
        self._emit(ATTACHMENT_ADDED, attachment)
        return attachment["id"]

    def get_attachment(self, attachment_id: int) -> dict:
        row = self._conn.execute(
            "SELECT * FROM attachments WHERE id = ?", (attachment_id,)
        ).fetchone()
        if row is None:
            raise ValueError(f"Attachment {attachment_id} not found")
        return dict(row)

    def get_best_pdf_attachment(self, document_id: int) -> dict | None:
        """Oldest live PDF attachment of a document, or None."""
        row = self._conn.execute(
            """SELECT * FROM attachments
               WHERE document_id = ? AND content_type = ? AND deleted = 0
               ORDER BY id LIMIT 1""",
            (document_id, PDF_CONTENT_TYPE),
        ).fetchone()
        return dict(row) if row else None

    def list_pdf_attachments(self, library_id: int) -> list[dict]:
        """All live PDF attachments whose parent document lives in the library."""
        rows = self._conn.execute(
            """SELECT a.* FROM attachments a
               JOIN documents d ON d.id = a.document_id
               WHERE d.library_id = ? AND d.deleted = 0
                 AND a.deleted = 0 AND a.content_type = ?
               ORDER BY a.id""",
            (library_id, PDF_CONTENT_TYPE),
        ).fetchall()
        return [dict(r) for r in rows]

    # ── Notes ────────────────────────────────────────────────

    def create_child_note(
        self, document_id: int, tags: tuple[str, ...] = (PARSED_NOTE_TAG,)
    ) -> int:
        """Create an empty note under a document. Returns the note id."""
        self.get_document(document_id)
        now = _now()
        cur = self._conn.execute(
            """INSERT INTO notes (key, document_id, body, created_at, updated_at)
               VALUES (?, ?, '', ?, ?)""",
            (_new_key(), document_id, now, now),
        )
        note_id = cur.lastrowid
        for tag in tags:
            self._conn.execute(
                "INSERT OR IGNORE INTO note_tags (note_id, tag) VALUES (?, ?)",
                (note_id, tag),
            )
        self._conn.commit()
        return note_id

    def get_note_body(self, note_id: int) -> str:
        row = self._conn.execute(
            "SELECT body FROM notes WHERE id = ?", (note_id,)
        ).fetchone()
        if row is None:
            raise ValueError(f"Note {note_id} not found")
        return row["body"]

    def set_note_body(self, note_id: int, body: str) -> None:
        cur = self._conn.execute(
            "UPDATE notes SET body = ?, updated_at = ? WHERE id = ?",
            (body, _now(), note_id),
        )
        if cur.rowcount == 0:
            raise ValueError(f"Note {note_id} not found")
        self._conn.commit()

    def list_notes(self, document_id: int) -> list[dict]:
        """Live notes of a document, each with a ``tags`` list."""
        rows = self._conn.execute(
            "SELECT * FROM notes WHERE document_id = ? AND deleted = 0 ORDER BY id",
            (document_id,),
        ).fetchall()
        notes = []
        for r in rows:
            note = dict(r)
            note["tags"] = [
                t["tag"]
                for t in self._conn.execute(
                    "SELECT tag FROM note_tags WHERE note_id = ? ORDER BY tag",
                    (note["id"],),
                ).fetchall()
            ]
            notes.append(note)
        return notes

    def has_parsed_note(self, document_id: int) -> bool:
        return self.latest_parsed_note(document_id) is not None

    def latest_parsed_note(self, document_id: int) -> dict | None:
        """Most recently modified note carrying the parsed-note tag."""
        row = self._conn.execute(
            """SELECT n.* FROM notes n
               JOIN note_tags t ON t.note_id = n.id
               WHERE n.document_id = ? AND n.deleted = 0 AND t.tag = ?
               ORDER BY n.updated_at DESC, n.id DESC LIMIT 1""",
            (document_id, PARSED_NOTE_TAG),
        ).fetchone()
        return dict(row) if row else None

    def list_parsed_document_ids(self, library_id: int) -> set[int]:
        rows = self._conn.execute(
            """SELECT DISTINCT d.id FROM notes n
               JOIN note_tags t ON t.note_id = n.id
               JOIN documents d ON d.id = n.document_id
               WHERE d.library_id = ? AND d.deleted = 0
                 AND n.deleted = 0 AND t.tag = ?""",
            (library_id, PARSED_NOTE_TAG),
        ).fetchall()
        return {r["id"] for r in rows}

    # ── Embedded Images ──────────────────────────────────────

    def import_embedded_image(self, note_id: int, data: bytes, content_type: str) -> str:
        """Store image bytes under a note. Returns the new attachment key."""
        key = _new_key()
        self._conn.execute(
            """INSERT INTO embedded_images (key, note_id, content_type, data, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (key, note_id, content_type, sqlite3.Binary(data), _now()),
        )
        self._conn.commit()
        return key

    def get_embedded_images(self, note_id: int) -> list[dict]:
        rows = self._conn.execute(
            "SELECT key, content_type, data FROM embedded_images WHERE note_id = ? ORDER BY id",
            (note_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    # ── Cleanup ──────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()


# ── Helpers ──────────────────────────────────────────────────────────


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_key() -> str:
    return "".join(secrets.choice(_KEY_ALPHABET) for _ in range(_KEY_LENGTH))
