from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    app_env: str
    db_path: str
    embedding_model: str
    analysis_model: str
    scoring_model: str
    embed_poll_interval: float
    embed_concurrency: int
    embed_item_timeout: float
    embed_stop_timeout: float
    max_bullets_per_role: int
    max_total_bullets: int
    max_selected_bullets: int
    fallback_to_heuristic: bool
    analysis_cache_ttl: float
    worker_message_timeout: float
    worker_health_interval: float
    worker_max_concurrent: int
    start_embed_processor: bool

    @staticmethod
    def from_env() -> "Settings":
        def _b(name: str, default: str) -> bool:
            return os.getenv(name, default).strip() in ("1", "true", "True", "yes", "YES")

        def _i(name: str, default: str) -> int:
            return int(os.getenv(name, default).strip())

        def _f(name: str, default: str) -> float:
            return float(os.getenv(name, default).strip())

        return Settings(
            app_env=os.getenv("APP_ENV", "dev").strip(),
            db_path=os.getenv("DB_PATH", "./_local/data/resuum.db").strip(),
            embedding_model=os.getenv("EMBEDDING_MODEL", "text-embedding-3-small").strip(),
            analysis_model=os.getenv("ANALYSIS_MODEL", "gpt-4o-mini").strip(),
            scoring_model=os.getenv("SCORING_MODEL", "gpt-4o-mini").strip(),
            embed_poll_interval=_f("EMBED_POLL_INTERVAL", "2.0"),
            embed_concurrency=_i("EMBED_CONCURRENCY", "3"),
            embed_item_timeout=_f("EMBED_ITEM_TIMEOUT", "30.0"),
            embed_stop_timeout=_f("EMBED_STOP_TIMEOUT", "5.0"),
            max_bullets_per_role=_i("MAX_BULLETS_PER_ROLE", "60"),
            max_total_bullets=_i("MAX_TOTAL_BULLETS", "240"),
            max_selected_bullets=_i("MAX_SELECTED_BULLETS", "50"),
            fallback_to_heuristic=_b("FALLBACK_TO_HEURISTIC", "1"),
            analysis_cache_ttl=_f("ANALYSIS_CACHE_TTL", "600"),
            worker_message_timeout=_f("WORKER_MESSAGE_TIMEOUT", "60.0"),
            worker_health_interval=_f("WORKER_HEALTH_INTERVAL", "30.0"),
            worker_max_concurrent=_i("WORKER_MAX_CONCURRENT", "3"),
            start_embed_processor=_b("START_EMBED_PROCESSOR", "1"),
        )
