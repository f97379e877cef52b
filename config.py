import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        log_level: str,
        batch_limit: int,
        uncategorized_threshold: float,
        match_amount_cutoff: float,
        match_date_window_days: int,
        match_weights: tuple[float, float, float],
        conflict_retries: int,
    ) -> None:
        self.database_url = database_url
        self.log_level = log_level
        self.batch_limit = batch_limit
        self.uncategorized_threshold = uncategorized_threshold
        self.match_amount_cutoff = match_amount_cutoff
        self.match_date_window_days = match_date_window_days
        self.match_weights = match_weights
        self.conflict_retries = conflict_retries


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _parse_weights(raw: str) -> tuple[float, float, float]:
    parts = [p.strip() for p in raw.split(",") if p.strip()]
    if len(parts) != 3:
        raise ValueError("FINANCE_MATCH_WEIGHTS needs three comma-separated values")
    amount, merchant, on_date = (float(p) for p in parts)
    total = amount + merchant + on_date
    if total <= 0:
        raise ValueError("FINANCE_MATCH_WEIGHTS must sum to a positive value")
    return (amount / total, merchant / total, on_date / total)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    log_level = os.getenv("FINANCE_LOG_LEVEL", "INFO").upper()
    batch_limit = int(os.getenv("FINANCE_BATCH_LIMIT", "100"))
    uncategorized_threshold = float(
        os.getenv("FINANCE_UNCATEGORIZED_THRESHOLD", "0.8")
    )
    match_amount_cutoff = float(os.getenv("FINANCE_MATCH_AMOUNT_CUTOFF", "0.10"))
    match_date_window_days = int(os.getenv("FINANCE_MATCH_DATE_WINDOW_DAYS", "7"))
    match_weights = _parse_weights(
        os.getenv("FINANCE_MATCH_WEIGHTS", "0.55,0.25,0.20")
    )
    conflict_retries = int(os.getenv("FINANCE_CONFLICT_RETRIES", "3"))
    return Settings(
        database_url=database_url,
        log_level=log_level,
        batch_limit=batch_limit,
        uncategorized_threshold=uncategorized_threshold,
        match_amount_cutoff=match_amount_cutoff,
        match_date_window_days=match_date_window_days,
        match_weights=match_weights,
        conflict_retries=conflict_retries,
    )
