"""Goal analysis stage: free text to a structured goal descriptor."""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

from app.core.errors import GenerationError, InvalidInput, UnparsableOutput
from app.llm.client import TextGenerator
from app.observability.metrics import log_metric
from app.observability.tracing import trace
from app.services.plan_models import COMPLEXITIES, NOT_SPECIFIED, Complexity, GoalDescriptor
from app.services.stage_contract import coerce_choice, coerce_text, extract_json

logger = logging.getLogger(__name__)

ANALYSIS_MAX_TOKENS = 800
_DEADLINE_RE = re.compile(r"(\d+\s*(?:day|week|month|year)s?|deadline|by\s+\w+)", re.IGNORECASE)
_SUBJECT_LIMIT = 50


def analyze_goal(goal_text: str, generator: TextGenerator, *, request_id: Optional[str] = None) -> GoalDescriptor:
    """Return a descriptor for ``goal_text``, falling back to heuristics on any generation problem."""
    if not goal_text or not goal_text.strip():
        raise InvalidInput("Goal text must not be empty")
    goal = goal_text.strip()

    with trace("stage.goal_analysis", metadata={"goal_length": len(goal)}, request_id=request_id):
        try:
            raw = generator.generate(_build_prompt(goal), max_tokens=ANALYSIS_MAX_TOKENS)
            payload = extract_json(raw).unwrap()
            if not isinstance(payload, dict):
                raise UnparsableOutput("goal analysis must be a JSON object", raw_text=raw)
        except (GenerationError, UnparsableOutput) as exc:
            logger.warning("Goal analysis falling back to heuristics: %s", exc)
            log_metric("goal_analysis.fallback.used", 1, {"reason": type(exc).__name__})
            return fallback_analysis(goal)

    return _descriptor_from_payload(goal, payload)


def _descriptor_from_payload(goal: str, payload: Dict[str, Any]) -> GoalDescriptor:
    complexity: Complexity = coerce_choice(payload.get("complexity"), COMPLEXITIES, "medium")
    return GoalDescriptor(
        original_goal=goal,
        parsed_deadline=coerce_text(payload.get("parsedDeadline"), NOT_SPECIFIED),
        subject=coerce_text(payload.get("subject"), "General task"),
        complexity=complexity,
        recommended_approach=coerce_text(payload.get("recommendedApproach"), "Break down into smaller tasks"),
        source="generated",
    )


def fallback_analysis(goal: str) -> GoalDescriptor:
    """Deterministic descriptor built from the goal text alone."""
    match = _DEADLINE_RE.search(goal)
    word_count = len(goal.split())
    if word_count > 20:
        complexity: Complexity = "high"
    elif word_count > 10:
        complexity = "medium"
    else:
        complexity = "low"
    subject = goal[:_SUBJECT_LIMIT] + ("..." if len(goal) > _SUBJECT_LIMIT else "")
    return GoalDescriptor(
        original_goal=goal,
        parsed_deadline=match.group(0) if match else NOT_SPECIFIED,
        subject=subject,
        complexity=complexity,
        recommended_approach="Break goal into smaller, manageable tasks and set milestones",
        source="heuristic",
        note="Fallback analysis used due to parsing error",
    )


def _build_prompt(goal: str) -> str:
    return (
        "You are a goal analysis assistant. Analyze the goal below and respond with ONLY a JSON object.\n\n"
        f'Goal: "{goal}"\n\n'
        "Return exactly this structure:\n"
        "{\n"
        '  "parsedDeadline": "the deadline in plain words, or \\"not specified\\"",\n'
        '  "subject": "the main subject or skill",\n'
        '  "complexity": "low | medium | high",\n'
        '  "recommendedApproach": "one or two sentences on how to approach it"\n'
        "}\n"
        "Do not add commentary before or after the JSON."
    )
