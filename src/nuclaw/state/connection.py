"""Database connection lifecycle.

The service uses one aiosqlite connection for the task store, opened by
``open_database()`` under the data directory.  Schema definition lives in
:mod:`schema`.
"""

from __future__ import annotations

from pathlib import Path

import aiosqlite

from nuclaw.state.schema import create_schema

DB_FILENAME = "nuclaw.db"


async def open_database(path: Path | str | None = None) -> aiosqlite.Connection:
    """Open (creating if needed) the database and apply the schema.

    *path* defaults to ``<data_dir>/nuclaw.db``; pass ``":memory:"`` for a
    throwaway database.
    """
    if path is None:
        from nuclaw.config import get_settings

        path = get_settings().data_dir / DB_FILENAME
    if str(path) != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)

    db = await aiosqlite.connect(str(path))
    db.row_factory = aiosqlite.Row
    await create_schema(db)
    return db
