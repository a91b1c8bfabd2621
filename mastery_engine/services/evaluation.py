"""Answer-driven mastery evaluation.

Registered as a post-write hook of the StatisticsAggregator when
EVALUATE_ON_ANSWER is enabled: a correct answer raises the competency one
level, an incorrect one lowers it one level, never leaving 0..max_level.
"""

from mastery_engine.models import AnswerEvent
from mastery_engine.services.mastery_store import MasteryStore


def mastery_evaluation_hook(store: MasteryStore):
    """Build a post-write hook that steps levels through the given store."""

    async def evaluate(event: AnswerEvent) -> None:
        await store.step_level(event.user_id, event.competency_id, event.is_correct)

    return evaluate
