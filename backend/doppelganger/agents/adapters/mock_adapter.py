"""Deterministic adapter for local development and repeatable tests.

Produces a short scripted conversation without external API calls: agents
greet and converge on the first item, exchange a few facts drawn from their
knowledge base, then say goodbye.
"""

from .base import GenerationAdapter, ScoreContext, ScoreResult, TurnAction, TurnContext, TurnDecision

MOCK_FAREWELL_ROUND = 3


class MockAdapter(GenerationAdapter):
    """Simple deterministic policy keyed on round number and role."""

    async def generate_turn(self, ctx: TurnContext) -> TurnDecision:
        opener = ctx.agent_role == "agent1"
        if ctx.round_number >= MOCK_FAREWELL_ROUND and opener:
            return TurnDecision(
                utterance=f"This was lovely, {ctx.counterpart_name}. Nice meeting you, goodbye!",
                action=TurnAction(type="none", reasoning="Wrapping up the conversation"),
            )

        if ctx.round_number == 1:
            greeting = f"Hi {ctx.counterpart_name}, I'm {ctx.agent_name}."
            if ctx.goal:
                greeting = f"{greeting} I'm here to {ctx.goal[:80].rstrip('.').lower()}."
            if ctx.items:
                target = str(ctx.items[0]["name"])
                verb = "Shall we head over to" if opener else "Sure, I'll join you at"
                return TurnDecision(
                    utterance=f"{greeting} {verb} the {target}?",
                    action=TurnAction(type="move", target=target, reasoning="Settling somewhere to talk"),
                )
            return TurnDecision(utterance=greeting, action=TurnAction(type="none", reasoning="Introducing myself"))

        facts = ctx.agent_knowledge or ctx.training_utterances
        if facts:
            fact = facts[(ctx.round_number + len(ctx.agent_role)) % len(facts)]
            utterance = f"Something about me: {fact.split(': ', 1)[-1]}"
        elif ctx.fidelity_guard:
            utterance = "I'd rather hear about you first, honestly."
        else:
            utterance = f"Tell me more, {ctx.counterpart_name}. What brings you here?"
        return TurnDecision(utterance=utterance, action=TurnAction(type="none", reasoning="Continuing conversation"))

    async def generate_scores(self, ctx: ScoreContext) -> list[ScoreResult]:
        results: list[ScoreResult] = []
        for pairing in ctx.pairings:
            lines = [line for line in pairing.transcript.splitlines() if line.strip() and not line.startswith("[")]
            counterpart_lines = [line for line in lines if line.startswith(f"{pairing.bit_name}:")]
            quote = counterpart_lines[0] if counterpart_lines else (lines[0] if lines else "(no dialogue)")
            score = max(0, min(100, 30 + 4 * len(lines)))
            results.append(
                ScoreResult(
                    user_id=pairing.user_id,
                    score=score,
                    reasoning=f"Mock evaluation over {len(lines)} lines of dialogue, e.g. \"{quote[:120]}\"",
                    subject_user_id=ctx.subject_user_id,
                )
            )
        return results
