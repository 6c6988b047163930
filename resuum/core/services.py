"""Composition root: every component is built once here and passed explicitly."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from resuum.core.batch_scorer import BatchScorer
from resuum.core.bullet_selector import BulletSelector
from resuum.core.embedding_processor import EmbeddingProcessor
from resuum.core.embedding_providers import EmbeddingProvider, OpenAIProvider
from resuum.core.embedding_state import EmbeddingStateMachine
from resuum.core.execution_boundary import ExecutionBoundary
from resuum.core.job_analyzer import JobAnalyzer
from resuum.core.library import LibraryService
from resuum.core.llm_providers import LLMProvider, OpenAIChatProvider
from resuum.core.prefilter import LexicalPrefilter
from resuum.core.recommendation_engine import RecommendationEngine
from resuum.core.settings import Settings
from resuum.core.storage import DB, open_db
from resuum.core.worker import RecommendationWorker

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    db: DB
    state: EmbeddingStateMachine
    embedding_provider: EmbeddingProvider
    analysis_llm: LLMProvider
    scoring_llm: LLMProvider
    processor: EmbeddingProcessor
    library: LibraryService
    engine: RecommendationEngine
    boundary: ExecutionBoundary

    async def start(self) -> None:
        if self.settings.start_embed_processor:
            await self.processor.start()
        await self.boundary.start()

    async def stop(self) -> None:
        await self.boundary.terminate()
        await self.processor.stop()
        self.db.conn.close()


def build_services(
    settings: Settings,
    db: DB | None = None,
    embedding_provider: EmbeddingProvider | None = None,
    analysis_llm: LLMProvider | None = None,
    scoring_llm: LLMProvider | None = None,
) -> Services:
    """Wire all components from settings. Any collaborator can be supplied instead."""
    db = db or open_db(settings.db_path)
    embedding_provider = embedding_provider or OpenAIProvider(model=settings.embedding_model)
    analysis_llm = analysis_llm or OpenAIChatProvider(model=settings.analysis_model)
    scoring_llm = scoring_llm or OpenAIChatProvider(model=settings.scoring_model)

    state = EmbeddingStateMachine(db)
    processor = EmbeddingProcessor(
        db,
        state,
        embedding_provider,
        concurrency=settings.embed_concurrency,
        poll_interval=settings.embed_poll_interval,
        item_timeout=settings.embed_item_timeout,
        stop_timeout=settings.embed_stop_timeout,
    )
    library = LibraryService(db, state)
    engine = RecommendationEngine(
        library=library,
        analyzer=JobAnalyzer(analysis_llm, ttl=settings.analysis_cache_ttl),
        scorer=BatchScorer(scoring_llm),
        prefilter=LexicalPrefilter(
            per_role_cap=settings.max_bullets_per_role,
            total_cap=settings.max_total_bullets,
        ),
        selector=BulletSelector(max_total=settings.max_selected_bullets),
        fallback_to_heuristic=settings.fallback_to_heuristic,
    )
    boundary = ExecutionBoundary(
        worker_factory=lambda: RecommendationWorker(engine),
        message_timeout=settings.worker_message_timeout,
        health_interval=settings.worker_health_interval,
        max_concurrent=settings.worker_max_concurrent,
    )
    logger.info(f"Services built (env={settings.app_env}, db={settings.db_path})")
    return Services(
        settings=settings,
        db=db,
        state=state,
        embedding_provider=embedding_provider,
        analysis_llm=analysis_llm,
        scoring_llm=scoring_llm,
        processor=processor,
        library=library,
        engine=engine,
        boundary=boundary,
    )
