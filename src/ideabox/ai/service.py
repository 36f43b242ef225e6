"""Post-sync analysis of stored messages."""

from __future__ import annotations

import time
from collections import Counter
from typing import TYPE_CHECKING

import structlog

from ideabox.ai.analyzer import FUNCTION_NAME, EmailAnalyzer
from ideabox.config import Settings
from ideabox.exceptions import AuthenticationError
from ideabox.models import AnalysisRunSummary, EmailAnalysis

if TYPE_CHECKING:
    from ideabox.storage.base import MessageStore

logger = structlog.get_logger()


class AnalysisService:
    """Runs the analyzer over a user's unanalyzed messages.

    One message failing is recorded on that message and the batch goes on.
    A rejected API key stops the run since every further call would fail too.
    """

    def __init__(
        self,
        store: MessageStore,
        analyzer: EmailAnalyzer | None = None,
        settings: Settings | None = None,
    ) -> None:
        from ideabox.config import get_settings

        self.settings = settings or get_settings()
        self.store = store
        self.analyzer = analyzer or EmailAnalyzer(settings=self.settings)

    async def run(self, user_id: str, max_emails: int | None = None) -> AnalysisRunSummary:
        limit = max_emails or self.settings.analysis_max_emails
        started = time.perf_counter()
        messages = await self.store.list_unanalyzed_messages(user_id, limit=limit)

        logger.info("analysis_run_started", user_id=user_id, message_count=len(messages), limit=limit)

        summary = AnalysisRunSummary()
        categories: Counter[str] = Counter()
        model = self.analyzer.options.model or self.settings.openai_model

        for message in messages:
            try:
                result = await self.analyzer.analyze(message)
            except AuthenticationError:
                logger.error("analysis_run_aborted", user_id=user_id, reason="authentication")
                raise
            except Exception as exc:  # noqa: BLE001
                summary.failure_count += 1
                logger.warning(
                    "email_analysis_failed",
                    message_id=message.id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                await self.store.mark_analysis_failed(message.id, str(exc))
                continue

            analysis: EmailAnalysis = result.data
            await self.store.save_analysis(message.id, analysis)
            await self.store.log_api_usage(
                user_id,
                service="openai",
                model=model,
                function_name=FUNCTION_NAME,
                tokens_input=result.tokens_input,
                tokens_output=result.tokens_output,
                estimated_cost=result.estimated_cost,
                duration_ms=result.duration_ms,
                message_id=message.id,
            )

            summary.success_count += 1
            summary.actions_created += len(analysis.actions)
            summary.tokens_used += result.tokens_total
            summary.estimated_cost += result.estimated_cost
            categories[analysis.category.value] += 1

        summary.categorized = dict(categories)
        summary.processing_time_ms = round((time.perf_counter() - started) * 1000)

        logger.info(
            "analysis_run_completed",
            user_id=user_id,
            success_count=summary.success_count,
            failure_count=summary.failure_count,
            tokens_used=summary.tokens_used,
            estimated_cost=summary.estimated_cost,
            processing_time_ms=summary.processing_time_ms,
        )
        return summary
