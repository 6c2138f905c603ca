"""
═══════════════════════════════════════════════════════════════
  Cross-store Relational Data Migration Tool (relmigrate)
═══════════════════════════════════════════════════════════════
"""

from pathlib import Path
from rich.console import Console

# ═════════════════════════════════════════════════════════════
# Shared console instance
# ═════════════════════════════════════════════════════════════

console = Console()

# ═════════════════════════════════════════════════════════════
# Constants
# ═════════════════════════════════════════════════════════════

SCRIPT_DIR = Path(__file__).parent.parent.resolve()
CONFIG_FILE = SCRIPT_DIR / "migration_config.json"
HTML_REPORT_FILE = "migration_report.html"

DEFAULT_BATCH_SIZE = 500
SUPPORTED_ENGINES = ("sqlite", "postgresql", "mysql")

# Tables never migrated (ORM bookkeeping, engine internals)
INTERNAL_TABLE_PREFIXES = ("_", "sqlite_")

DEFAULT_CONFIG = {
    "source": {
        "engine": "sqlite",
        "path": "prisma/dev.db",
    },
    "destination": {
        "engine": "postgresql",
        "host": "localhost",
        "port": 5432,
        "user": "postgres",
        "password": "YOUR_POSTGRES_PASSWORD",
        "database": "YOUR_DATABASE_NAME",
    },
    "migration": {
        "batch_size": DEFAULT_BATCH_SIZE,
        "exclude_tables": [],
        "schema": "public",
    },
}
