import os
import tempfile
from pathlib import Path

# keep the import-time schema bootstrap away from the real database file;
# every test module swaps db_connect for an in-memory connection anyway
os.environ.setdefault(
    "MENULINE_DB_PATH", str(Path(tempfile.gettempdir()) / "menuline_pytest.db")
)
