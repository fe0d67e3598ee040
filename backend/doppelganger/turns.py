"""Turn generation for a single agent.

Assembles the bounded prompt context, performs one adapter call under a
timeout, applies the explicit failure policy, and resolves the returned
world action against the current world state.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .agents.adapters.base import GenerationAdapter, TurnAction, TurnContext, TurnDecision
from .agents.adapters.rule_based import RuleBasedAdapter
from .errors import GenerationError
from .profiles import Identity
from .world import WorldState

logger = logging.getLogger(__name__)

CONTEXT_LINES = 40


class GenerationPolicy(str, Enum):
    """What a call site does when turn generation fails."""

    fallback = "fallback"
    strict = "strict"


@dataclass
class Participant:
    role: str
    identity: Identity

    @property
    def name(self) -> str:
        return self.identity.display_name


@dataclass
class TurnResult:
    role: str
    speaker: str
    utterance: str
    action: TurnAction
    narrative_event: str | None = None
    fallback: bool = False
    error: str | None = None

    @property
    def moved_to(self) -> str | None:
        return self.action.target if self.action.type == "move" else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "agent_name": self.speaker,
            "response": self.utterance,
            "action": self.action.to_dict(),
            "narrative_event": self.narrative_event,
            "fallback": self.fallback,
            "error": self.error,
        }


class TurnGenerator:
    """Produce exactly one utterance plus optional action per call."""

    def __init__(
        self,
        adapter: GenerationAdapter,
        *,
        policy: GenerationPolicy = GenerationPolicy.fallback,
        fallback_adapter: GenerationAdapter | None = None,
        fidelity_guard: bool = False,
        timeout_s: float | None = None,
        max_rounds: int = 10,
        context_lines: int = CONTEXT_LINES,
    ) -> None:
        self.adapter = adapter
        self.policy = policy
        self.fallback_adapter = fallback_adapter or RuleBasedAdapter()
        self.fidelity_guard = fidelity_guard
        self.timeout_s = timeout_s
        self.max_rounds = max_rounds
        self.context_lines = context_lines

    def build_context(
        self,
        agent: Participant,
        other: Participant,
        world: WorldState,
        goal: str,
        round_number: int,
    ) -> TurnContext:
        me = agent.identity
        return TurnContext(
            goal=goal,
            round_number=round_number,
            max_rounds=self.max_rounds,
            agent_role=agent.role,
            agent_name=agent.name,
            agent_owner=me.name,
            counterpart_role=other.role,
            counterpart_name=other.name,
            agent_position=world.position_of(agent.role).to_dict(),
            counterpart_position=world.position_of(other.role).to_dict(),
            items=[item.to_dict() for item in world.items],
            conversation=world.trailing_lines(self.context_lines),
            agent_profile=me.profile_lines(),
            agent_knowledge=me.knowledge_facts(),
            training_utterances=list(me.training_utterances),
            counterpart_profile=other.identity.profile_lines(),
            fidelity_guard=self.fidelity_guard and me.is_sparse,
        )

    async def generate_turn(
        self,
        agent: Participant,
        other: Participant,
        world: WorldState,
        goal: str,
        round_number: int,
    ) -> TurnResult:
        ctx = self.build_context(agent, other, world, goal, round_number)
        fallback = False
        error: str | None = None
        try:
            decision = await asyncio.wait_for(self.adapter.generate_turn(ctx), timeout=self.timeout_s)
        except Exception as exc:
            reason = f"{type(exc).__name__}: {str(exc)[:160]}"
            if self.policy is GenerationPolicy.strict:
                raise GenerationError(
                    f"Turn generation failed for {agent.name}: {reason}",
                    agent_name=agent.name,
                ) from exc
            logger.warning(
                "fallback turn role=%s agent=%s round=%s reason=%s",
                agent.role,
                agent.name,
                round_number,
                reason,
            )
            decision = await self.fallback_adapter.generate_turn(ctx)
            fallback = True
            error = reason
        return self.apply_decision(agent, world, decision, fallback=fallback, error=error)

    def apply_decision(
        self,
        agent: Participant,
        world: WorldState,
        decision: TurnDecision,
        *,
        fallback: bool = False,
        error: str | None = None,
    ) -> TurnResult:
        action, narrative = resolve_action(world, agent, decision.action)
        return TurnResult(
            role=agent.role,
            speaker=agent.name,
            utterance=decision.utterance,
            action=action,
            narrative_event=narrative,
            fallback=fallback,
            error=error,
        )


def resolve_action(world: WorldState, agent: Participant, action: TurnAction) -> tuple[TurnAction, str | None]:
    """Apply a move to the world; unknown move targets degrade to `none`."""

    if action.type != "move":
        return action, None
    item = world.find_item(action.target)
    if item is None:
        return TurnAction(type="none", target=None, reasoning=action.reasoning), None
    world.move_agent_to_item(agent.role, item)
    return TurnAction(type="move", target=item.name, reasoning=action.reasoning), f"{agent.name} moves to the {item.name}"
