"""Data models for the fleet orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

TASK_STATUSES = ("queued", "assigned", "running", "completed", "failed", "cancelled")
TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})
STARTED_STATUSES = frozenset({"running", "completed"})
PENDING_STATUSES = frozenset({"queued", "assigned"})
TASK_PRIORITIES = ("critical", "high", "medium", "low")
TASK_TYPES = ("code", "review", "docs", "research", "test", "tests", "custom")
MESSAGE_TYPES = ("HANDOFF", "RESPONSE", "ALERT", "REQUEST", "STATUS")


@dataclass
class User:
    id: str
    email: str
    api_token: str
    name: str | None = None
    github_token: str | None = None
    github_username: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Initiative:
    id: str
    user_id: str
    name: str
    slug: str
    description: str | None = None
    max_agents: int = 100
    min_agents: int = 1
    scaling_policy: str = "auto"
    default_agent: str = "claude"
    default_model: str | None = None
    allowed_agents: list[dict] = field(default_factory=list)
    triggers: list[dict] = field(default_factory=list)
    status: str = "active"
    created_at: datetime | None = None
    updated_at: datetime | None = None
    repository_ids: list[str] = field(default_factory=list)


@dataclass
class Repository:
    id: str
    user_id: str
    url: str
    name: str
    full_name: str
    provider: str = "github"
    default_branch: str = "main"
    installation_id: str | None = None
    repo_instructions: str | None = None
    webhooks_enabled: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Task:
    id: str
    initiative_id: str
    prompt: str
    repository_id: str | None = None
    repo_url: str | None = None
    branch: str | None = None
    agent: str | None = None
    model: str | None = None
    type: str = "custom"
    priority: str = "medium"
    status: str = "queued"
    assigned_agents: int = 1
    progress: int = 0
    eta: str | None = None
    blackbox_task_id: str | None = None
    result: dict[str, Any] | None = None
    artifacts: list[dict] = field(default_factory=list)
    error: str | None = None
    depends_on: list[str] = field(default_factory=list)
    queued_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class AgentMessage:
    id: str
    from_initiative_id: str
    to_initiative_id: str
    type: str
    subject: str
    from_task_id: str | None = None
    to_task_id: str | None = None
    body: str | None = None
    metadata: dict[str, Any] | None = None
    suggested_actions: list[dict] | None = None
    read: bool = False
    created_at: datetime | None = None


@dataclass
class MetricsHour:
    hour: datetime
    tasks_created: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    prs_created: int = 0
    lines_added: int = 0
    lines_removed: int = 0
    files_changed: int = 0
