import aiosqlite

from mintflow.config import settings

CREATE_ACCESS_CACHE = """
CREATE TABLE IF NOT EXISTS access_cache (
    subject_key TEXT PRIMARY KEY,
    granted INTEGER NOT NULL DEFAULT 0,
    granted_at TEXT,
    evidence_tx_hash TEXT,
    cached_at TEXT NOT NULL,
    last_verified_at TEXT NOT NULL
)
"""

CREATE_MINT_REQUESTS = """
CREATE TABLE IF NOT EXISTS mint_requests (
    id TEXT PRIMARY KEY,
    content_id TEXT NOT NULL,
    recipient TEXT NOT NULL,
    room_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    visibility_json TEXT NOT NULL DEFAULT '[]',
    tx_hash TEXT,
    state TEXT NOT NULL,
    reason TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
)
"""

CREATE_MINT_TX_INDEX = """
CREATE INDEX IF NOT EXISTS idx_mint_requests_tx_hash ON mint_requests (tx_hash)
"""

_DDL = [CREATE_ACCESS_CACHE, CREATE_MINT_REQUESTS, CREATE_MINT_TX_INDEX]


async def init_db(db_path: str | None = None) -> None:
    """Create all tables. Called once at server startup via FastAPI lifespan."""
    async with aiosqlite.connect(db_path or settings.db_path) as db:
        for stmt in _DDL:
            await db.execute(stmt)
        await db.commit()


async def get_async_conn(db_path: str | None = None) -> aiosqlite.Connection:
    """Async connection with row access by column name."""
    conn = await aiosqlite.connect(db_path or settings.db_path)
    await conn.execute("PRAGMA busy_timeout = 5000")
    conn.row_factory = aiosqlite.Row
    return conn
