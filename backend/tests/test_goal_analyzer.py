from __future__ import annotations

import pytest

from app.core.errors import InvalidInput
from app.services.goal_analyzer import analyze_goal, fallback_analysis


def test_generated_analysis_is_normalized(scripted_generator) -> None:
    generator = scripted_generator(
        [
            '```json\n{"parsedDeadline": "2 weeks", "subject": "Python", '
            '"complexity": "HIGH", "recommendedApproach": "Practice daily"}\n```'
        ]
    )

    goal = analyze_goal("Learn Python basics in 2 weeks", generator)

    assert goal.source == "generated"
    assert goal.original_goal == "Learn Python basics in 2 weeks"
    assert goal.parsed_deadline == "2 weeks"
    assert goal.subject == "Python"
    assert goal.complexity == "high"
    assert goal.recommended_approach == "Practice daily"
    assert generator.kwargs[0]["max_tokens"] == 800


def test_missing_fields_get_defaults(scripted_generator) -> None:
    generator = scripted_generator(['{"complexity": "extreme"}'])

    goal = analyze_goal("Write a novel", generator)

    assert goal.complexity == "medium"
    assert goal.subject == "General task"
    assert goal.parsed_deadline == "not specified"
    assert goal.recommended_approach == "Break down into smaller tasks"


def test_generation_failure_uses_heuristics(failing_generator) -> None:
    goal = analyze_goal("Learn Python basics in 2 weeks", failing_generator)

    assert goal.source == "heuristic"
    assert goal.parsed_deadline == "2 weeks"
    assert goal.complexity == "low"
    assert goal.subject == "Learn Python basics in 2 weeks"
    assert goal.note == "Fallback analysis used due to parsing error"


@pytest.mark.parametrize("raw", ["no json at all", "[1, 2, 3]"])
def test_unusable_output_uses_heuristics(scripted_generator, raw) -> None:
    goal = analyze_goal("Finish my essay by Friday", scripted_generator([raw]))

    assert goal.source == "heuristic"
    assert goal.parsed_deadline == "by Friday"


def test_empty_goal_is_rejected(failing_generator) -> None:
    with pytest.raises(InvalidInput):
        analyze_goal("   ", failing_generator)
    assert failing_generator.calls == 0


def test_fallback_complexity_follows_word_count() -> None:
    medium = fallback_analysis("Read the first four chapters of the statistics textbook and take notes")
    long_goal = " ".join(["word"] * 25)
    high = fallback_analysis(long_goal)

    assert medium.complexity == "medium"
    assert high.complexity == "high"
    assert high.subject == long_goal[:50] + "..."
    assert high.parsed_deadline == "not specified"
