"""ORM models exposed for metadata discovery."""
from app.db.models.agent_action_log import AgentActionLog
from app.db.models.goal import Goal
from app.db.models.plan import Plan
from app.db.models.task import Task
from app.db.models.user import User
from app.db.models.user_memory import UserMemory

__all__ = [
    "AgentActionLog",
    "Goal",
    "Plan",
    "Task",
    "User",
    "UserMemory",
]
