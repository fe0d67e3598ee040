"""Post-hoc compatibility scoring over finished transcripts.

Scoring is two-phase: a deterministic dealbreaker check on declared profile
attributes, then a single model call that grades the remaining pairings on
transcript quality. Dealbreakers always win over whatever the model says.
"""

import logging
import re
from dataclasses import dataclass

from .agents.adapters.base import GenerationAdapter, ScoreContext, ScorePairing, ScoreResult
from .errors import GenerationError, InvalidScoringInput
from .profiles import Identity

logger = logging.getLogger(__name__)

DEALBREAKER_BAND = (0, 10)
DEALBREAKER_SCORE = 5

ROMANTIC_GOAL_RE = re.compile(
    r"\b(romantic|romance|date|dates|dating|boyfriend|girlfriend|spouse|marry|marriage|soulmate|crush|"
    r"love|lover|love interest|partner|life partner|relationship|significant other)\b",
    re.IGNORECASE,
)
MAN_WORDS = {"man", "male", "m", "cis man", "trans man", "boy"}
WOMAN_WORDS = {"woman", "female", "f", "cis woman", "trans woman", "girl"}


@dataclass
class Pairing:
    counterpart: Identity
    transcript: str


def is_romantic_goal(goal: str) -> bool:
    return bool(ROMANTIC_GOAL_RE.search(goal or ""))


def normalize_gender(raw: object) -> str | None:
    value = str(raw or "").strip().lower()
    if value in MAN_WORDS:
        return "man"
    if value in WOMAN_WORDS:
        return "woman"
    return None


def attracted_to(orientation: object, own_gender: str) -> set[str] | None:
    """Genders a declared orientation is attracted to; None means unconstrained or unknown."""

    value = str(orientation or "").strip().lower()
    if "lesbian" in value:
        return {"woman"}
    if "straight" in value or "hetero" in value:
        return {"woman" if own_gender == "man" else "man"}
    if "gay" in value or "homo" in value:
        return {own_gender}
    # bisexual, pansexual, queer, asexual or undeclared
    return None


def dealbreaker_reason(goal: str, subject: Identity, counterpart: Identity) -> str | None:
    if not is_romantic_goal(goal):
        return None
    subject_gender = normalize_gender(subject.profile.get("gender_identity"))
    counterpart_gender = normalize_gender(counterpart.profile.get("gender_identity"))
    if subject_gender is None or counterpart_gender is None:
        return None
    for person, gender, other, other_gender in (
        (subject, subject_gender, counterpart, counterpart_gender),
        (counterpart, counterpart_gender, subject, subject_gender),
    ):
        orientation = person.profile.get("sexual_orientation")
        wanted = attracted_to(orientation, gender)
        if wanted is not None and other_gender not in wanted:
            return (
                f"Dealbreaker: {person.name} ({gender}, {orientation}) is not oriented toward "
                f"{other.name} ({other_gender}) for a romantic goal."
            )
    return None


class CompatibilityScorer:
    """Return one ranked, justified score per pairing."""

    def __init__(self, adapter: GenerationAdapter) -> None:
        self.adapter = adapter

    async def score(self, goal: str, subject: Identity, pairings: list[Pairing]) -> list[ScoreResult]:
        if not goal or not goal.strip():
            raise InvalidScoringInput("Goal is required for compatibility scoring")
        if not pairings:
            raise InvalidScoringInput("At least one pairing is required for compatibility scoring")
        counterpart_ids = [p.counterpart.user_id for p in pairings]
        if len(set(counterpart_ids)) != len(counterpart_ids):
            raise InvalidScoringInput("Each counterpart may appear only once per scoring request")

        results: list[ScoreResult | None] = [None] * len(pairings)
        pending: list[int] = []
        for idx, pairing in enumerate(pairings):
            reason = dealbreaker_reason(goal, subject, pairing.counterpart)
            if reason:
                results[idx] = ScoreResult(
                    user_id=pairing.counterpart.user_id,
                    score=DEALBREAKER_SCORE,
                    reasoning=reason,
                    dealbreaker=True,
                    subject_user_id=subject.user_id,
                )
            else:
                pending.append(idx)

        if pending:
            generated = await self._generate(goal, subject, [pairings[idx] for idx in pending])
            for idx in pending:
                user_id = pairings[idx].counterpart.user_id
                raw = generated.get(user_id)
                if raw is None:
                    raise GenerationError(f"No score returned for user {user_id}")
                score = int(max(0, min(100, raw.score)))
                if raw.dealbreaker:
                    score = max(DEALBREAKER_BAND[0], min(DEALBREAKER_BAND[1], score))
                results[idx] = ScoreResult(
                    user_id=user_id,
                    score=score,
                    reasoning=raw.reasoning,
                    dealbreaker=raw.dealbreaker,
                    subject_user_id=subject.user_id,
                )

        ranked = sorted((r for r in results if r is not None), key=lambda r: r.score, reverse=True)
        for rank, result in enumerate(ranked, start=1):
            result.rank = rank
        return ranked

    async def _generate(self, goal: str, subject: Identity, pairings: list[Pairing]) -> dict[int, ScoreResult]:
        ctx = ScoreContext(
            goal=goal,
            subject_user_id=subject.user_id,
            subject_name=subject.name,
            subject_profile=subject.profile_lines(),
            pairings=[
                ScorePairing(
                    user_id=p.counterpart.user_id,
                    name=p.counterpart.name,
                    bit_name=p.counterpart.display_name,
                    profile=p.counterpart.profile_lines(),
                    transcript=p.transcript,
                )
                for p in pairings
            ],
        )
        try:
            generated = await self.adapter.generate_scores(ctx)
        except GenerationError:
            raise
        except Exception as exc:
            raise GenerationError(f"Score generation failed: {type(exc).__name__}: {str(exc)[:160]}") from exc
        logger.info("scored pairings subject=%s count=%s", subject.user_id, len(generated))
        return {result.user_id: result for result in generated}
