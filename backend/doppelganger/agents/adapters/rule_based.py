"""Rule-based fallback adapter used when model calls fail."""

from .base import GenerationAdapter, ScoreContext, ScoreResult, TurnAction, TurnContext, TurnDecision

FALLBACK_UTTERANCE = "I'm not sure what to say right now."


class RuleBasedAdapter(GenerationAdapter):
    """Neutral placeholder turns; never moves, never invents content."""

    async def generate_turn(self, ctx: TurnContext) -> TurnDecision:
        return TurnDecision(
            utterance=FALLBACK_UTTERANCE,
            action=TurnAction(type="none", target=None, reasoning="Error occurred"),
        )

    async def generate_scores(self, ctx: ScoreContext) -> list[ScoreResult]:
        return [
            ScoreResult(
                user_id=pairing.user_id,
                score=0,
                reasoning="No evaluation available for this pairing.",
                subject_user_id=ctx.subject_user_id,
            )
            for pairing in ctx.pairings
        ]
