"""
Database helpers for the paper registry.

A registered paper carries the immutable evidence every stage reads:
metadata, extracted text and the storage path its cache keys derive from.
"""

import json
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from evidentia.errors import InputValidationError
from evidentia.models import PaperCreate, PaperMetadata, PaperRecord, PaperSummary
from evidentia.services.text_utils import clean_plain_text, compute_content_hash


def _row_to_record(row: sqlite3.Row) -> PaperRecord:
    return PaperRecord(
        id=row["id"],
        storage_path=row["storage_path"],
        file_name=row["file_name"],
        paper=PaperMetadata.model_validate(json.loads(row["metadata_json"])),
        text=row["full_text"],
        content_hash=row["content_hash"],
        created_at=row["created_at"],
    )


def create_paper(conn: sqlite3.Connection, data: PaperCreate) -> PaperRecord:
    """
    Register an uploaded paper.

    Args:
        conn: Database connection
        data: Metadata, extracted text and optional storage path

    Returns:
        The stored PaperRecord

    Raises:
        InputValidationError: If the text is empty or the storage path is taken
    """
    if not clean_plain_text(data.text):
        raise InputValidationError("Missing extracted text.", field="text")

    paper_id = str(uuid.uuid4())
    storage_path = clean_plain_text(data.storage_path) or f"papers/{paper_id}.pdf"
    created_at = datetime.now(timezone.utc)

    try:
        conn.execute(
            """
            INSERT INTO paper (id, storage_path, file_name, title, doi, metadata_json, full_text, content_hash, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                paper_id,
                storage_path,
                data.file_name,
                data.paper.title,
                data.paper.doi,
                json.dumps(data.paper.model_dump(by_alias=True)),
                data.text,
                compute_content_hash(data.text),
                created_at.isoformat(),
            ),
        )
    except sqlite3.IntegrityError:
        raise InputValidationError(f"A paper is already registered at {storage_path}.", field="storagePath")

    return PaperRecord(
        id=paper_id,
        storage_path=storage_path,
        file_name=data.file_name,
        paper=data.paper,
        text=data.text,
        content_hash=compute_content_hash(data.text),
        created_at=created_at,
    )


def get_paper(conn: sqlite3.Connection, paper_id: str) -> Optional[PaperRecord]:
    row = conn.execute("SELECT * FROM paper WHERE id = ?", (paper_id,)).fetchone()
    return _row_to_record(row) if row else None


def list_papers(
    conn: sqlite3.Connection,
    limit: Optional[int] = None,
    offset: int = 0
) -> Tuple[List[PaperSummary], int]:
    """
    List registered papers, newest first.

    Returns:
        Tuple of (list of PaperSummary, total_count)
    """
    total_count = conn.execute("SELECT COUNT(*) FROM paper").fetchone()[0]

    query = "SELECT id, title, doi, storage_path, created_at FROM paper ORDER BY created_at DESC"
    params: tuple = ()
    if limit:
        query += " LIMIT ? OFFSET ?"
        params = (limit, offset)

    papers = [
        PaperSummary(
            id=row["id"],
            title=row["title"],
            doi=row["doi"],
            storage_path=row["storage_path"],
            created_at=row["created_at"],
        )
        for row in conn.execute(query, params).fetchall()
    ]
    return papers, total_count


def delete_paper(conn: sqlite3.Connection, paper_id: str) -> bool:
    """Delete a paper row. Returns False when no such paper exists."""
    cursor = conn.execute("DELETE FROM paper WHERE id = ?", (paper_id,))
    return cursor.rowcount > 0


def get_paper_by_storage_path(conn: sqlite3.Connection, storage_path: str) -> Optional[PaperRecord]:
    row = conn.execute("SELECT * FROM paper WHERE storage_path = ?", (storage_path,)).fetchone()
    return _row_to_record(row) if row else None
