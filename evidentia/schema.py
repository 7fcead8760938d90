"""
Database schema for the Evidentia pipeline service.

Two tables: the registry of uploaded papers, and the stage cache holding one
JSON blob ({text, structured}) per cache key.
"""

SCHEMA_SQL = """
-- Uploaded papers (the evidence every stage reads)
CREATE TABLE IF NOT EXISTS paper (
    id TEXT PRIMARY KEY,
    storage_path TEXT UNIQUE NOT NULL,
    file_name TEXT,
    title TEXT,
    doi TEXT,
    metadata_json TEXT NOT NULL,
    full_text TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL
);

-- Stage results keyed like the object store: <storage path minus .pdf><stage suffix>
CREATE TABLE IF NOT EXISTS stage_cache (
    cache_key TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    updated_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_paper_created ON paper(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_paper_doi ON paper(doi);
CREATE INDEX IF NOT EXISTS idx_paper_content_hash ON paper(content_hash);
"""

TABLES = ("paper", "stage_cache")
