from contextlib import contextmanager
from pathlib import Path

import duckdb


@contextmanager
def duckdb_connection(db_path: Path | str, read_only: bool = False):
    db_path = Path(db_path)
    if not read_only:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    con = duckdb.connect(str(db_path), read_only=read_only)
    try:
        yield con
    finally:
        con.close()
