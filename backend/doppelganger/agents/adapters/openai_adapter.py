"""OpenAI-backed generation adapter with strict JSON schema outputs.

Serves both single-agent turns (utterance + world action) and the batched
compatibility scoring call.
"""

import asyncio
import json
import re
from collections.abc import Callable
from typing import Any, TypeVar

from openai import APIConnectionError, APITimeoutError, InternalServerError, OpenAI, RateLimitError

from ...config import settings
from ...errors import GenerationError
from .base import (
    ACTION_TYPES,
    GenerationAdapter,
    ScoreContext,
    ScoreResult,
    TurnAction,
    TurnContext,
    TurnDecision,
)

T = TypeVar("T")

FIDELITY_RULES = (
    "Identity fidelity rules:\n"
    "- You know very little about the person you represent. Do NOT invent specific facts "
    "(jobs, hometowns, hobbies, stories) that are not listed above.\n"
    "- When asked something you do not know, deflect naturally or give a short, vague answer.\n"
    "- Prefer asking questions over making claims about yourself.\n"
)


class OpenAIAdapter(GenerationAdapter):
    """Adapter that calls OpenAI Responses API and normalizes output."""

    _semaphore: asyncio.Semaphore | None = None

    def __init__(self) -> None:
        if not settings.openai_api_key:
            raise RuntimeError("OPENAI_API_KEY is required for AI_MODE=openai")
        self._client = OpenAI(
            api_key=settings.openai_api_key,
            timeout=settings.openai_timeout_ms / 1000,
            max_retries=0,
        )
        if OpenAIAdapter._semaphore is None:
            OpenAIAdapter._semaphore = asyncio.Semaphore(max(1, settings.openai_concurrency))

    async def generate_turn(self, ctx: TurnContext) -> TurnDecision:
        return await self._generate(
            self._build_turn_prompt(ctx),
            self._turn_schema(),
            self._parse_turn,
            token_floor=200,
        )

    async def generate_scores(self, ctx: ScoreContext) -> list[ScoreResult]:
        known_ids = {pairing.user_id for pairing in ctx.pairings}
        return await self._generate(
            self._build_score_prompt(ctx),
            self._score_schema(),
            lambda payload: self._parse_scores(payload, known_ids, ctx.subject_user_id),
            token_floor=300 * max(1, len(ctx.pairings)),
        )

    async def _generate(
        self,
        base_prompt: str,
        text_format: dict[str, Any],
        parse: Callable[[dict[str, Any]], T],
        *,
        token_floor: int,
        validation_attempts: int = 2,
    ) -> T:
        last_error: Exception | None = None
        for attempt in range(validation_attempts):
            prompt = base_prompt
            if attempt > 0:
                prompt = self._build_retry_prompt(base_prompt, last_error, attempt)
            response = await self._request_with_retry(prompt, text_format, token_floor)
            try:
                return parse(self._coerce_json(response))
            except (json.JSONDecodeError, ValueError, TypeError, KeyError) as exc:
                last_error = exc
                if attempt == validation_attempts - 1:
                    raise GenerationError(
                        "Failed to validate model output after "
                        f"{validation_attempts} attempts: {type(exc).__name__}: {str(exc)[:180]}"
                    ) from exc
                await asyncio.sleep(min(1.2, 0.15 * (2**attempt)))
        raise GenerationError("Unreachable generation validation state")

    async def _request_with_retry(self, prompt: str, text_format: dict[str, Any], token_floor: int) -> Any:
        assert OpenAIAdapter._semaphore is not None
        attempts = max(1, settings.openai_max_retries)
        last_error: Exception | None = None
        for attempt in range(attempts):
            try:
                async with OpenAIAdapter._semaphore:
                    return await asyncio.to_thread(self._create_response, prompt, text_format, token_floor)
            except (RateLimitError, APIConnectionError, APITimeoutError, InternalServerError) as exc:
                last_error = exc
                if attempt == attempts - 1:
                    break
                await asyncio.sleep(min(4.0, 0.5 * (2**attempt)))
        raise GenerationError(f"OpenAI request failed: {type(last_error).__name__}: {str(last_error)[:160]}")

    def _create_response(self, prompt: str, text_format: dict[str, Any], token_floor: int) -> Any:
        return self._client.responses.create(
            model=settings.openai_model,
            input=prompt,
            max_output_tokens=max(token_floor, settings.openai_max_output_tokens),
            text={"format": text_format},
        )

    def _build_retry_prompt(self, base_prompt: str, error: Exception | None, attempt: int) -> str:
        reason = "unknown validation error"
        if error is not None:
            reason = f"{type(error).__name__}: {str(error)[:180]}"
        return (
            f"{base_prompt}\n\n"
            "Previous response failed validation and must be corrected.\n"
            f"Retry attempt: {attempt + 1}\n"
            f"Failure reason: {reason}\n"
            "Return only valid JSON conforming to the required schema. Do not include markdown fences."
        )

    def _turn_schema(self) -> dict[str, Any]:
        return {
            "type": "json_schema",
            "name": "agent_turn",
            "strict": True,
            "schema": {
                "type": "object",
                "properties": {
                    "utterance": {"type": "string"},
                    "action": {
                        "type": "object",
                        "properties": {
                            "type": {"type": "string", "enum": list(ACTION_TYPES)},
                            "target": {"type": ["string", "null"]},
                            "reasoning": {"type": "string"},
                        },
                        "required": ["type", "target", "reasoning"],
                        "additionalProperties": False,
                    },
                },
                "required": ["utterance", "action"],
                "additionalProperties": False,
            },
        }

    def _score_schema(self) -> dict[str, Any]:
        return {
            "type": "json_schema",
            "name": "compatibility_scores",
            "strict": True,
            "schema": {
                "type": "object",
                "properties": {
                    "scores": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "user_id": {"type": "integer"},
                                "score": {"type": "integer"},
                                "dealbreaker": {"type": "boolean"},
                                "reasoning": {"type": "string"},
                            },
                            "required": ["user_id", "score", "dealbreaker", "reasoning"],
                            "additionalProperties": False,
                        },
                    },
                },
                "required": ["scores"],
                "additionalProperties": False,
            },
        }

    def _build_turn_prompt(self, ctx: TurnContext) -> str:
        items = ", ".join(f"{i['name']} at ({i['x']:.0f}, {i['y']:.0f})" for i in ctx.items) or "None"
        profile = "\n".join(f"- {line}" for line in ctx.agent_profile) or "- (none)"
        knowledge = "\n".join(f"- {fact}" for fact in ctx.agent_knowledge[:40]) or "- (nothing recorded yet)"
        training = "\n".join(f"- {line}" for line in ctx.training_utterances[-10:]) or "- (no training data yet)"
        counterpart = "\n".join(f"- {line}" for line in ctx.counterpart_profile) or "- (unknown)"
        conversation = "\n".join(ctx.conversation) or "Conversation just started."
        me, other = ctx.agent_position, ctx.counterpart_position
        fidelity = FIDELITY_RULES if ctx.fidelity_guard else ""
        return (
            f"You are {ctx.agent_name}, an AI doppelganger representing {ctx.agent_owner} in a simulated space.\n"
            f"Goal of this meeting: {ctx.goal or '(none given)'}\n"
            f"Round {ctx.round_number} of at most {ctx.max_rounds}.\n"
            f"Profile of {ctx.agent_owner}:\n{profile}\n"
            f"What you know about {ctx.agent_owner}:\n{knowledge}\n"
            f"Things {ctx.agent_owner} said while training you:\n{training}\n"
            f"You are talking with {ctx.counterpart_name}:\n{counterpart}\n"
            "World:\n"
            f"- Items: {items}\n"
            f"- Your position: ({me['x']:.0f}, {me['y']:.0f})\n"
            f"- {ctx.counterpart_name}'s position: ({other['x']:.0f}, {other['y']:.0f})\n"
            "Conversation so far:\n"
            f"{conversation}\n"
            f"{fidelity}"
            "Decision constraints:\n"
            "- Reply to the latest line naturally, in one to three sentences.\n"
            "- action.type is move only when you go to an item; target must be an exact item name.\n"
            "- Use interact for gestures toward the other person or an item; otherwise none.\n"
            "- Say goodbye only when the conversation has clearly run its course.\n"
            "Return concise turn JSON."
        )

    def _build_score_prompt(self, ctx: ScoreContext) -> str:
        subject = "\n".join(f"- {line}" for line in ctx.subject_profile) or "- (unknown)"
        blocks = []
        for pairing in ctx.pairings:
            profile = "\n".join(f"  - {line}" for line in pairing.profile) or "  - (unknown)"
            blocks.append(
                f"Candidate user_id={pairing.user_id} ({pairing.name}, speaking as {pairing.bit_name}):\n"
                f"{profile}\n"
                f"Transcript:\n{pairing.transcript.strip() or '(empty)'}"
            )
        candidates = "\n\n".join(blocks)
        return (
            f"You evaluate how compatible {ctx.subject_name} is with each candidate for this goal: {ctx.goal}\n"
            f"Profile of {ctx.subject_name} (user_id={ctx.subject_user_id}):\n{subject}\n\n"
            f"{candidates}\n\n"
            "Evaluation policy:\n"
            "1. Dealbreakers first: if declared profile attributes make the goal impossible "
            "(for romantic goals, incompatible gender identity / sexual orientation), set dealbreaker=true "
            "and score between 0 and 10 regardless of the conversation.\n"
            "2. Otherwise judge the transcript: shared values, reciprocity, chemistry, concrete overlap with the goal.\n"
            "Calibration: most pairings should land around a median of 40 to 55; above 80 is rare and needs specific evidence; "
            "do not cluster scores near the top.\n"
            "Cite the transcript in each reasoning (one to three sentences). Return one entry per candidate user_id."
        )

    def _parse_turn(self, payload: dict[str, Any]) -> TurnDecision:
        utterance = str(payload.get("utterance", "")).strip() or "..."
        raw_action = payload.get("action")
        if not isinstance(raw_action, dict):
            raw_action = {}
        action_type = str(raw_action.get("type", "none")).strip().lower()
        if action_type not in ACTION_TYPES:
            action_type = "none"
        target = raw_action.get("target")
        target = target.strip() or None if isinstance(target, str) else None
        if action_type == "none":
            target = None
        return TurnDecision(
            utterance=utterance,
            action=TurnAction(type=action_type, target=target, reasoning=str(raw_action.get("reasoning", "")).strip()),
        )

    def _parse_scores(self, payload: dict[str, Any], known_ids: set[int], subject_user_id: int) -> list[ScoreResult]:
        raw_scores = payload.get("scores")
        if not isinstance(raw_scores, list):
            raise ValueError("scores array missing")
        results: list[ScoreResult] = []
        for raw in raw_scores:
            if not isinstance(raw, dict):
                raise TypeError("score entry must be an object")
            user_id = int(raw["user_id"])
            if user_id not in known_ids:
                continue
            results.append(
                ScoreResult(
                    user_id=user_id,
                    score=int(max(0, min(100, round(float(raw.get("score", 0)))))),
                    reasoning=str(raw.get("reasoning", "")).strip(),
                    dealbreaker=bool(raw.get("dealbreaker", False)),
                    subject_user_id=subject_user_id,
                )
            )
        if {r.user_id for r in results} != known_ids:
            raise ValueError("scores missing for one or more candidates")
        return results

    def _coerce_json(self, response: Any) -> dict[str, Any]:
        text = self._extract_text(response)
        if not text:
            raise ValueError("OpenAI response missing output_text")
        text = self._strip_code_fence(text)
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            candidate = self._extract_first_json_object(text)
            if not candidate:
                raise
            payload = json.loads(candidate)
        if not isinstance(payload, dict):
            raise TypeError("model output must be a JSON object")
        return payload

    def _extract_first_json_object(self, text: str) -> str | None:
        start = text.find("{")
        if start < 0:
            return None
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(text)):
            ch = text[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : idx + 1]
        return None

    def _extract_text(self, response: Any) -> str:
        text = getattr(response, "output_text", None)
        if text:
            return text
        output = getattr(response, "output", None) or []
        chunks: list[str] = []
        for item in output:
            for part in getattr(item, "content", None) or []:
                part_text = getattr(part, "text", None)
                if part_text:
                    chunks.append(part_text)
        return "\n".join(chunks).strip()

    def _strip_code_fence(self, text: str) -> str:
        fenced = re.match(r"^```(?:json)?\s*(.*?)\s*```$", text, re.DOTALL | re.IGNORECASE)
        if fenced:
            return fenced.group(1).strip()
        return text.strip()
