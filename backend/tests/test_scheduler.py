from __future__ import annotations

import json
from datetime import date

import pytest

from app.services.plan_models import PlanTask, Schedule, ScheduleDay, ScheduledTaskInstance, SchedulingPreferences, ScheduleSummary
from app.services.scheduler import (
    analyze_feasibility,
    create_schedule,
    fallback_schedule,
    format_start_time,
    get_todays_tasks,
    get_upcoming_tasks,
)

START = date(2026, 1, 5)


def _task(description: str, hours: float, score: int, order: int, task_id: str | None = None) -> PlanTask:
    extra = {"id": task_id} if task_id else {}
    return PlanTask(description=description, estimated_hours=hours, priority_score=score, order=order, **extra)


def _prefs(**overrides) -> SchedulingPreferences:
    values = {"available_hours_per_day": 4, "buffer_time_percent": 20, "start_date": START}
    values.update(overrides)
    return SchedulingPreferences(**values)


def test_overbooked_goal_spreads_over_many_days(failing_generator) -> None:
    hours = [3, 3.5, 4, 5.5, 6]
    tasks = [_task(f"Task {i}", h, 5, i + 1) for i, h in enumerate(hours)]

    schedule = create_schedule(tasks, _prefs(), failing_generator)

    assert schedule.source == "fallback"
    assert schedule.summary.note == "Fallback schedule generated"
    assert len(schedule.days) >= 5
    assert schedule.summary.total_hours == 22
    assert sum(item.duration for day in schedule.days for item in day.tasks) == 22
    assert schedule.summary.tasks_scheduled == 5


def test_fallback_packs_by_score_and_computes_start_times() -> None:
    tasks = [
        _task("Low", 2, 5, 3),
        _task("Top", 1, 9, 1),
        _task("Mid", 1.5, 7, 2),
    ]

    schedule = fallback_schedule(tasks, _prefs(preferred_study_times=["evening"]))

    first, second = schedule.days
    assert [item.task_description for item in first.tasks] == ["Top", "Mid"]
    assert [item.start_time for item in first.tasks] == ["18:00", "19:12"]
    assert [item.buffer_after for item in first.tasks] == [0.2, 0.3]
    assert first.total_hours == 3.0
    assert first.date == START
    assert first.time_of_day == "evening"
    assert [item.task_description for item in second.tasks] == ["Low"]
    assert second.tasks[0].start_time == "18:00"
    assert second.date == date(2026, 1, 6)
    assert second.day == 2


def test_every_task_appears_exactly_once() -> None:
    tasks = [_task(f"Task {i}", 1 + (i % 3), 10 - i, i + 1) for i in range(8)]

    schedule = fallback_schedule(tasks, _prefs(available_hours_per_day=5))

    placed = [item.task_id for day in schedule.days for item in day.tasks]
    assert sorted(placed) == sorted(task.id for task in tasks)
    for day in schedule.days:
        assert len(day.tasks) == 1 or day.total_hours <= 5


def test_generated_layout_is_normalized(scripted_generator) -> None:
    tasks = [
        _task("Read chapter 1", 2, 8, 1, task_id="task-a"),
        _task("Read chapter 2", 1, 7, 2, task_id="task-b"),
        _task("Do exercises", 1.5, 6, 3, task_id="task-c"),
    ]
    raw = json.dumps(
        {
            "schedule": [
                {
                    "day": 1,
                    "date": "2026-01-05",
                    "timeOfDay": "afternoon",
                    "tasks": [
                        {"taskId": "task-a", "startTime": "14:00", "duration": 99},
                        {"taskDescription": "read chapter 2", "startTime": "25:00"},
                    ],
                },
                {"tasks": [{"taskId": "task-a"}, {"taskId": "task-c"}]},
            ]
        }
    )
    generator = scripted_generator([raw])

    schedule = create_schedule(tasks, _prefs(), generator)

    assert schedule.source == "generated"
    first, second = schedule.days
    assert [item.task_id for item in first.tasks] == ["task-a", "task-b"]
    assert first.tasks[0].duration == 2
    assert first.tasks[0].buffer_after == 0.4
    assert [item.start_time for item in first.tasks] == ["14:00", "16:24"]
    assert first.total_hours == 3.6
    assert [item.task_id for item in second.tasks] == ["task-c"]
    assert second.date == date(2026, 1, 6)
    assert second.time_of_day == "morning"
    assert second.tasks[0].start_time == "09:00"
    assert schedule.summary.total_hours == 4.5
    assert schedule.summary.total_days == 2
    assert generator.kwargs[0]["max_tokens"] == 1200


def test_generated_layout_missing_a_task_falls_back(scripted_generator) -> None:
    tasks = [_task("One", 1, 8, 1, task_id="one"), _task("Two", 1, 6, 2, task_id="two")]
    raw = '{"schedule": [{"day": 1, "tasks": [{"taskId": "one"}]}]}'

    schedule = create_schedule(tasks, _prefs(), scripted_generator([raw]))

    assert schedule.source == "fallback"
    assert schedule.summary.tasks_scheduled == 2


def test_empty_task_list_gives_empty_schedule(failing_generator) -> None:
    schedule = create_schedule([], _prefs(), failing_generator)

    assert schedule.days == []
    assert schedule.summary.total_days == 0
    assert schedule.summary.note == "No tasks to schedule"
    assert failing_generator.calls == 0


@pytest.mark.parametrize(
    "time_of_day, elapsed, expected",
    [("morning", 0, "09:00"), ("afternoon", 2.5, "16:30"), ("evening", 1.2, "19:12"), ("evening", 7, "01:00")],
)
def test_format_start_time(time_of_day, elapsed, expected) -> None:
    assert format_start_time(time_of_day, elapsed) == expected


def _single_day_schedule(hours: float, cap: float) -> Schedule:
    day = ScheduleDay(
        day=1,
        date=START,
        tasks=[ScheduledTaskInstance(task_description="Big", task_id="big", start_time="09:00", duration=hours)],
        total_hours=hours,
    )
    summary = ScheduleSummary(total_days=1, total_hours=hours, average_hours_per_day=hours, tasks_scheduled=1)
    return Schedule(days=[day], summary=summary, preferences=_prefs(available_hours_per_day=cap))


def test_feasibility_flags_overloaded_day() -> None:
    report = analyze_feasibility(_single_day_schedule(6, 4))

    assert report.is_feasible is False
    assert report.overloaded_days == 1
    assert report.load_percentage == "150%"
    assert report.recommendation == "Consider extending deadline or reducing scope"


@pytest.mark.parametrize(
    "hours, recommendation",
    [(3.5, "Schedule is tight but achievable"), (2, "Schedule has comfortable margins")],
)
def test_feasibility_recommendations(hours, recommendation) -> None:
    report = analyze_feasibility(_single_day_schedule(hours, 4))

    assert report.is_feasible is True
    assert report.recommendation == recommendation


def test_today_and_upcoming_views() -> None:
    tasks = [_task(f"Task {i}", 3, 5, i + 1) for i in range(4)]
    schedule = fallback_schedule(tasks, _prefs())

    assert [item.task_description for item in get_todays_tasks(schedule, date(2026, 1, 6))] == ["Task 1"]
    assert get_todays_tasks(schedule, date(2026, 2, 1)) == []
    upcoming = get_upcoming_tasks(schedule, days=2, today=date(2026, 1, 6))
    assert [day.date for day in upcoming] == [date(2026, 1, 6), date(2026, 1, 7)]
