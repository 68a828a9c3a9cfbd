"""sfils_etl.config

Run settings, resolved once in the CLI and passed down explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

DB_DSN_ENV = "DB_DSN"
DEFAULT_DB_DSN = "postgresql://postgres@localhost:5432/sfils"
DEFAULT_INPUT_PATH = "data/sfpl.xlsx"
DEFAULT_REJECTS_PATH = "./artifacts/rejects/sfpl_rejects.csv"
DEFAULT_REPORTS_DIR = "./artifacts/reports"


@dataclass(frozen=True)
class Settings:
    db_dsn: str
    input_path: Path
    batch_size: int
    rejects_path: Path
    reports_dir: Path
    run_id: str
    using_default_dsn: bool = False


def resolve_settings(
    db_dsn: str | None,
    input_path: str,
    batch_size: int,
    rejects_path: str,
    reports_dir: str,
    run_id: str,
) -> Settings:
    """Fill in the documented default DSN when neither flag nor env var is set."""
    return Settings(
        db_dsn=db_dsn or DEFAULT_DB_DSN,
        input_path=Path(input_path),
        batch_size=batch_size,
        rejects_path=Path(rejects_path),
        reports_dir=Path(reports_dir),
        run_id=run_id,
        using_default_dsn=not db_dsn,
    )
