from __future__ import annotations

from datetime import date, timedelta
from uuid import uuid4

from app.db.models.agent_action_log import AgentActionLog
from app.db.models.plan import Plan
from app.db.models.task import Task
from app.services.job_runner import run_overdue_sweep, run_reflection_for_all_users, run_reflection_for_user
from app.services.orchestrator import PlanningOrchestrator
from app.services.plan_models import SchedulingPreferences
from app.services.plan_service import create_goal_plan

PAST_START = date(2026, 1, 5)


def _seed_goal(session_factory, generator, user_id, start_date=PAST_START, goal_text="Learn Python basics in 2 weeks"):
    session = session_factory()
    try:
        result, goal = create_goal_plan(
            session,
            PlanningOrchestrator(generator),
            user_id=user_id,
            goal_text=goal_text,
            preferences=SchedulingPreferences(start_date=start_date),
        )
        assert result.success
        return goal.id
    finally:
        session.close()


def test_overdue_sweep_marks_past_tasks_missed(session_factory, failing_generator):
    user_id = uuid4()
    goal_id = _seed_goal(session_factory, failing_generator, user_id)

    session = session_factory()
    try:
        first_day = session.query(Plan).filter(Plan.goal_id == goal_id).one().schedule[0]
        cutoff = date.fromisoformat(first_day["date"]) + timedelta(days=1)
        marked = run_overdue_sweep(session, today=cutoff)
        statuses = [task.status for task in session.query(Task).filter(Task.goal_id == goal_id)]
        logs = session.query(AgentActionLog).filter(AgentActionLog.action_type == "task_status_updated").count()
    finally:
        session.close()

    assert marked == len(first_day["tasks"])
    assert statuses.count("missed") == marked
    assert statuses.count("pending") == len(statuses) - marked
    assert logs == marked


def test_overdue_sweep_ignores_future_and_completed_tasks(session_factory, failing_generator):
    user_id = uuid4()
    future_goal = _seed_goal(session_factory, failing_generator, user_id, start_date=date(2099, 1, 1))
    past_goal = _seed_goal(session_factory, failing_generator, user_id, goal_text="Read a book")

    session = session_factory()
    try:
        done = session.query(Task).filter(Task.goal_id == past_goal).first()
        done.status = "completed"
        session.commit()
        marked = run_overdue_sweep(session, today=date(2026, 6, 1))
        future_statuses = {task.status for task in session.query(Task).filter(Task.goal_id == future_goal)}
        past_statuses = [task.status for task in session.query(Task).filter(Task.goal_id == past_goal)]
    finally:
        session.close()

    assert future_statuses == {"pending"}
    assert past_statuses.count("completed") == 1
    assert marked == len(past_statuses) - 1


def test_reflection_job_only_runs_on_new_outcomes(session_factory, failing_generator):
    user_id = uuid4()
    _seed_goal(session_factory, failing_generator, user_id)

    session = session_factory()
    try:
        untouched = run_reflection_for_all_users(session, failing_generator)
        run_overdue_sweep(session, today=date(2026, 6, 1))
        first = run_reflection_for_all_users(session, failing_generator)
        second = run_reflection_for_all_users(session, failing_generator)
        forced = run_reflection_for_all_users(session, failing_generator, force=True)
        reflections = session.query(AgentActionLog).filter(AgentActionLog.action_type == "reflection_applied").count()
    finally:
        session.close()

    assert untouched.reflections_written == 0
    assert untouched.goals_skipped == 1
    assert first.users_processed == 1
    assert first.reflections_written == 1
    assert second.reflections_written == 0
    assert second.goals_skipped == 1
    assert forced.reflections_written == 1
    assert reflections == 2


def test_reflection_for_user_skips_goals_without_outcomes(session_factory, failing_generator):
    user_id = uuid4()
    _seed_goal(session_factory, failing_generator, user_id, start_date=date(2099, 1, 1))

    session = session_factory()
    try:
        written, skipped = run_reflection_for_user(session, user_id, failing_generator, force=True)
    finally:
        session.close()

    assert written == 0
    assert skipped == 1


def test_reflection_job_picks_up_status_flip(session_factory, failing_generator):
    user_id = uuid4()
    goal_id = _seed_goal(session_factory, failing_generator, user_id)

    session = session_factory()
    try:
        run_overdue_sweep(session, today=date(2026, 6, 1))
        first = run_reflection_for_all_users(session, failing_generator)
        recovered = session.query(Task).filter(Task.goal_id == goal_id, Task.status == "missed").first()
        recovered.status = "completed"
        session.commit()
        flipped = run_reflection_for_all_users(session, failing_generator)
        settled = run_reflection_for_all_users(session, failing_generator)
        history = session.query(Plan).filter(Plan.goal_id == goal_id).one().adjustments
    finally:
        session.close()

    assert first.reflections_written == 1
    assert flipped.reflections_written == 1
    assert settled.reflections_written == 0
    assert history[0]["observations"] == history[1]["observations"]
    assert history[0]["outcomeDigest"] != history[1]["outcomeDigest"]
