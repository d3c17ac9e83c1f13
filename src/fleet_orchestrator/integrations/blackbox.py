"""Blackbox remote-agents API client.

Thin request/response wrapper over ``httpx``. Every call is a single
attempt; callers decide what a failure means for their records.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from fleet_orchestrator.config import DEFAULT_BLACKBOX_URL, Config

logger = logging.getLogger(__name__)

AGENTS = ("claude", "blackbox", "codex", "gemini")

DEFAULT_MODELS = {
    "claude": "blackboxai/anthropic/claude-sonnet-4.5",
    "blackbox": "blackboxai/blackbox-pro",
    "codex": "gpt-5-codex",
    "gemini": "gemini-2.0-flash-exp",
}

AGENT_MODELS = {
    "claude": [
        "blackboxai/anthropic/claude-sonnet-4.5",
        "blackboxai/anthropic/claude-sonnet-4",
        "blackboxai/anthropic/claude-opus-4",
    ],
    "blackbox": [
        "blackboxai/blackbox-pro",
        "blackboxai/anthropic/claude-sonnet-4.5",
        "blackboxai/openai/gpt-5-codex",
        "blackboxai/anthropic/claude-opus-4",
        "blackboxai/x-ai/grok-code-fast-1:free",
        "blackboxai/google/gemini-2.5-pro",
    ],
    "codex": ["openai/gpt-5", "gpt-5-codex", "openai/gpt-5-mini", "openai/gpt-5-nano", "openai/gpt-4.1"],
    "gemini": ["gemini-2.0-flash-exp", "gemini-2.5-pro", "gemini-2.5-flash"],
}

PROVIDER_TERMINAL = frozenset({"completed", "failed", "cancelled"})


class BlackboxError(Exception):
    """Raised when the execution provider cannot be used."""


class BlackboxAPIError(BlackboxError):
    """Raised when a provider call fails or returns a non-2xx response."""

    def __init__(self, message: str, status_code: int | None = None, response: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response


class BlackboxTimeoutError(BlackboxError):
    """Raised when a task does not reach a terminal state within the poll budget."""


@dataclass
class DiffStats:
    added: int = 0
    removed: int = 0
    files_changed: int = 0

    @classmethod
    def from_dict(cls, data: dict | None) -> "DiffStats | None":
        if not data:
            return None
        return cls(
            added=int(data.get("added", data.get("totalLinesAdded", 0)) or 0),
            removed=int(data.get("removed", data.get("totalLinesRemoved", 0)) or 0),
            files_changed=int(
                data.get("filesChanged", data.get("totalFilesChanged", 0)) or 0
            ),
        )

    def to_dict(self) -> dict:
        return {"added": self.added, "removed": self.removed, "filesChanged": self.files_changed}


@dataclass
class BlackboxTask:
    """Status snapshot of a provider-side task."""

    id: str
    status: str = "pending"
    progress: int = 0
    logs: list[str] = field(default_factory=list)
    error: str | None = None
    branch_name: str | None = None
    pr_url: str | None = None
    pr_number: int | None = None
    diff_stats: DiffStats | None = None
    eta: str | None = None
    summary: str | None = None
    raw: dict = field(default_factory=dict, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in PROVIDER_TERMINAL

    @classmethod
    def from_dict(cls, data: dict) -> "BlackboxTask":
        if "task" in data and isinstance(data["task"], dict):
            data = data["task"]
        task_id = data.get("id") or data.get("taskId")
        if not task_id:
            raise BlackboxAPIError("Provider response is missing a task id", response=data)
        return cls(
            id=str(task_id),
            status=data.get("status") or "pending",
            progress=int(data.get("progress") or 0),
            logs=list(data.get("logs") or []),
            error=data.get("error"),
            branch_name=data.get("branchName"),
            pr_url=data.get("prUrl"),
            pr_number=data.get("prNumber"),
            diff_stats=DiffStats.from_dict(data.get("diffStats")),
            eta=data.get("eta"),
            summary=data.get("summary"),
            raw=data,
        )


class BlackboxClient:
    """Synchronous client for the remote-agents task API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BLACKBOX_URL,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        if not api_key:
            raise BlackboxError("API key is required")
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=10.0),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "BlackboxClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _request(self, method: str, path: str, json: dict | None = None) -> dict:
        try:
            response = self._client.request(method, path, json=json)
        except httpx.TimeoutException as exc:
            raise BlackboxAPIError(f"Request to {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise BlackboxAPIError(f"Request to {path} failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = {}

        if not response.is_success:
            message = ""
            if isinstance(data, dict):
                message = data.get("message") or data.get("error") or ""
            raise BlackboxAPIError(
                message or f"HTTP {response.status_code}",
                status_code=response.status_code,
                response=data,
            )
        return data

    def create_task(
        self,
        prompt: str,
        repo_url: str | None = None,
        branch: str = "main",
        agent: str = "blackbox",
        model: str | None = None,
        credentials: str | None = None,
        environment: dict[str, str] | None = None,
    ) -> BlackboxTask:
        """Create a single-agent task and return its initial snapshot."""
        env = dict(environment or {})
        if credentials:
            env["GITHUB_TOKEN"] = credentials

        payload: dict[str, Any] = {
            "prompt": prompt,
            "selectedBranch": branch,
            "selectedAgent": agent,
            "selectedModel": model or DEFAULT_MODELS.get(agent, DEFAULT_MODELS["blackbox"]),
        }
        if repo_url:
            payload["repoUrl"] = repo_url
        if env:
            payload["environmentVariables"] = env

        data = self._request("POST", "/api/tasks", json=payload)
        task = BlackboxTask.from_dict(data)
        logger.info("Created provider task %s (agent=%s)", task.id, agent)
        return task

    def get_task(self, task_id: str) -> BlackboxTask:
        return BlackboxTask.from_dict(self._request("GET", f"/api/tasks/{task_id}"))

    def wait_for_completion(
        self,
        task_id: str,
        poll_interval: float = 5.0,
        timeout: float = 600.0,
        on_progress: Callable[[BlackboxTask], None] | None = None,
    ) -> BlackboxTask:
        """Poll a task until it reaches a terminal status."""
        started = time.monotonic()
        while True:
            task = self.get_task(task_id)
            if on_progress:
                on_progress(task)
            if task.is_terminal:
                return task
            if time.monotonic() - started >= timeout:
                raise BlackboxTimeoutError(f"Task {task_id} timed out after {timeout}s")
            time.sleep(poll_interval)


def create_client(config: Config) -> BlackboxClient:
    """Build a client from configuration. Raises BlackboxError if no API key is set."""
    if not config.blackbox_api_key:
        raise BlackboxError("BLACKBOX_API_KEY environment variable is not set")
    return BlackboxClient(
        config.blackbox_api_key,
        base_url=config.blackbox_api_url,
        timeout=config.blackbox_timeout,
    )
