"""CALCDASH — Central Configuration via Pydantic Settings."""

import os
from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Database ──
    database_url: str = ""

    # ── App ──
    log_level: str = "INFO"
    max_batch_records: int = 1000  # Dashboards cap record batches before evaluation

    # ── Calculated Fields ──
    default_date_field: str = "created_at"  # Column used for aggregation time scopes

    # ── Metrics ──
    boolean_fields: List[str] = [
        "pcf_submitted",
        "lead_showed",
        "offer_made",
        "deal_closed",
    ]
    currency_fields: List[str] = ["amount", "net_revenue"]
    currency_symbol: str = "$"
    status_fields: List[str] = ["event_outcome", "call_status", "status"]

    @property
    def effective_database_url(self) -> str:
        """Return PostgreSQL URL if set, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        # Vercel has a read-only filesystem; use /tmp for SQLite
        if os.environ.get("VERCEL"):
            return "sqlite:////tmp/calcdash.db"
        return "sqlite:///./calcdash.db"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
