"""JSON API for the fleet orchestrator."""

import functools
import json
import logging

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from fleet_orchestrator.config import get_config
from fleet_orchestrator.core import initiatives as initiatives_mod
from fleet_orchestrator.core import lifecycle
from fleet_orchestrator.core import messages as messages_mod
from fleet_orchestrator.core import metrics as metrics_mod
from fleet_orchestrator.core import repositories as repos_mod
from fleet_orchestrator.core import tasks as tasks_mod
from fleet_orchestrator.core.errors import NotFoundError, ValidationError
from fleet_orchestrator.core.prompts import build_prompt
from fleet_orchestrator.core.signatures import SIGNATURE_HEADER, verify_signature
from fleet_orchestrator.db.engine import init_db
from fleet_orchestrator.db.models import TASK_PRIORITIES, TASK_TYPES
from fleet_orchestrator.integrations.blackbox import (
    AGENT_MODELS,
    AGENTS,
    DEFAULT_MODELS,
    BlackboxError,
    create_client,
)
from fleet_orchestrator.web.auth import current_user

logger = logging.getLogger(__name__)


INITIATIVE_FIELDS = {
    "name": "name",
    "description": "description",
    "maxAgents": "max_agents",
    "minAgents": "min_agents",
    "scalingPolicy": "scaling_policy",
    "defaultAgent": "default_agent",
    "defaultModel": "default_model",
    "allowedAgents": "allowed_agents",
    "triggers": "triggers",
    "status": "status",
}
REPOSITORY_FIELDS = {
    "defaultBranch": "default_branch",
    "repoInstructions": "repo_instructions",
    "webhooksEnabled": "webhooks_enabled",
}
TASK_FIELDS = {
    "priority": "priority",
    "status": "status",
    "assignedAgents": "assigned_agents",
    "progress": "progress",
    "eta": "eta",
    "result": "result",
    "artifacts": "artifacts",
    "error": "error",
}


def _get_db():
    config = get_config()
    return init_db(config.db_path)


def _default_gateway():
    return create_client(get_config())


def authenticated(handler):
    """Open a request-lifetime connection, resolve the caller and map domain errors."""

    @functools.wraps(handler)
    async def wrapper(request: Request):
        db = _get_db()
        try:
            user = current_user(request, db)
            if not user:
                return JSONResponse({"error": "Unauthorized"}, status_code=401)
            return await handler(request, db, user)
        except ValidationError as exc:
            return JSONResponse({"error": str(exc)}, status_code=400)
        except NotFoundError as exc:
            return JSONResponse({"error": str(exc)}, status_code=404)
        except Exception:
            logger.exception("Error in %s %s", request.method, request.url.path)
            return JSONResponse({"error": "Internal server error"}, status_code=500)
        finally:
            db.close()

    return wrapper


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError as exc:
        raise ValidationError("Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _int_param(request: Request, name: str, default: int) -> int:
    value = request.query_params.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValidationError(f"{name} must be an integer") from exc


def _mapped(body: dict, fields: dict[str, str]) -> dict:
    return {column: body[key] for key, column in fields.items() if key in body}


def _not_found(what: str) -> JSONResponse:
    return JSONResponse({"error": f"{what} not found"}, status_code=404)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def health(request: Request):
    return JSONResponse({"status": "ok"})


async def api_agents(request: Request):
    return JSONResponse({
        "agents": [
            {"agent": a, "defaultModel": DEFAULT_MODELS[a], "models": AGENT_MODELS[a]}
            for a in AGENTS
        ]
    })


@authenticated
async def api_list_initiatives(request: Request, db, user):
    status = request.query_params.get("status")
    initiatives = initiatives_mod.list_initiatives(db, user.id, status=status)
    return JSONResponse({"initiatives": [_initiative_dict(i) for i in initiatives]})


@authenticated
async def api_create_initiative(request: Request, db, user):
    body = await _json_body(request)
    initiative = initiatives_mod.create_initiative(
        db,
        user.id,
        body.get("name"),
        body.get("slug"),
        description=body.get("description"),
        max_agents=body.get("maxAgents", 100),
        min_agents=body.get("minAgents", 1),
        scaling_policy=body.get("scalingPolicy", "auto"),
        default_agent=body.get("defaultAgent", "claude"),
        default_model=body.get("defaultModel"),
        allowed_agents=body.get("allowedAgents"),
        triggers=body.get("triggers"),
        repository_ids=body.get("repositoryIds"),
    )
    return JSONResponse({"initiative": _initiative_dict(initiative)}, status_code=201)


@authenticated
async def api_get_initiative(request: Request, db, user):
    initiative = initiatives_mod.get_initiative(db, request.path_params["initiative_id"], user.id)
    if not initiative:
        return _not_found("Initiative")
    data = _initiative_dict(initiative)
    data["repositories"] = [
        _repository_dict(r)
        for r in (repos_mod.get_repository(db, rid) for rid in initiative.repository_ids)
        if r
    ]
    data["stats"] = initiatives_mod.initiative_stats(db, initiative.id)
    return JSONResponse({"initiative": data})


@authenticated
async def api_update_initiative(request: Request, db, user):
    body = await _json_body(request)
    initiative = initiatives_mod.update_initiative(
        db,
        request.path_params["initiative_id"],
        user.id,
        repository_ids=body.get("repositoryIds"),
        **_mapped(body, INITIATIVE_FIELDS),
    )
    if not initiative:
        return _not_found("Initiative")
    return JSONResponse({"initiative": _initiative_dict(initiative)})


@authenticated
async def api_delete_initiative(request: Request, db, user):
    if not initiatives_mod.delete_initiative(db, request.path_params["initiative_id"], user.id):
        return _not_found("Initiative")
    return JSONResponse({"success": True})


@authenticated
async def api_list_repositories(request: Request, db, user):
    repos = repos_mod.list_repositories(db, user.id)
    return JSONResponse({"repositories": [_repository_dict(r) for r in repos]})


@authenticated
async def api_create_repository(request: Request, db, user):
    body = await _json_body(request)
    repo = repos_mod.create_repository(
        db,
        user.id,
        body.get("url"),
        body.get("name"),
        body.get("fullName"),
        provider=body.get("provider", "github"),
        default_branch=body.get("defaultBranch", "main"),
        installation_id=body.get("installationId"),
        repo_instructions=body.get("repoInstructions"),
    )
    return JSONResponse({"repository": _repository_dict(repo)}, status_code=201)


@authenticated
async def api_get_repository(request: Request, db, user):
    repo = repos_mod.get_repository(db, request.path_params["repo_id"], user.id)
    if not repo:
        return _not_found("Repository")
    data = _repository_dict(repo)
    data["initiative_ids"] = repos_mod.linked_initiative_ids(db, repo.id)
    data["stats"] = repos_mod.repository_stats(db, repo.id)
    return JSONResponse({"repository": data})


@authenticated
async def api_update_repository(request: Request, db, user):
    body = await _json_body(request)
    repo = repos_mod.update_repository(
        db, request.path_params["repo_id"], user.id, **_mapped(body, REPOSITORY_FIELDS)
    )
    if not repo:
        return _not_found("Repository")
    return JSONResponse({"repository": _repository_dict(repo)})


@authenticated
async def api_delete_repository(request: Request, db, user):
    if not repos_mod.delete_repository(db, request.path_params["repo_id"], user.id):
        return _not_found("Repository")
    return JSONResponse({"success": True})


@authenticated
async def api_list_tasks(request: Request, db, user):
    status = request.query_params.get("status")
    tasks, total = tasks_mod.list_tasks(
        db,
        user.id,
        initiative_id=request.query_params.get("initiativeId"),
        statuses=[s for s in status.split(",") if s] if status else None,
        priority=request.query_params.get("priority"),
        limit=_int_param(request, "limit", 50),
        offset=_int_param(request, "offset", 0),
    )
    return JSONResponse({"tasks": [_task_dict(t) for t in tasks], "total": total})


@authenticated
async def api_create_task(request: Request, db, user):
    body = await _json_body(request)
    config = get_config()

    task_type = body.get("type") or "custom"
    priority = body.get("priority") or "medium"
    if task_type not in TASK_TYPES:
        raise ValidationError(f"Invalid task type: {task_type}")
    if priority not in TASK_PRIORITIES:
        raise ValidationError(f"Invalid priority: {priority}")
    try:
        prompt = build_prompt(
            task_type,
            body.get("prompt"),
            focus=body.get("focus"),
            docs_type=body.get("docsType"),
            test_type=body.get("testType"),
            target=body.get("target"),
        )
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    if body.get("agent") and body["agent"] not in AGENTS:
        raise ValidationError("Invalid agent")

    depends_on = body.get("dependsOn") or []
    if not isinstance(depends_on, list):
        raise ValidationError("dependsOn must be a list of task ids")

    repo = None
    repo_url = body.get("repoUrl")
    branch = body.get("branch")
    if body.get("repositoryId"):
        repo = repos_mod.get_repository(db, body["repositoryId"], user.id)
        if not repo:
            raise NotFoundError("Repository not found")
        repo_url = repo_url or repo.url
        branch = branch or repo.default_branch
    if repo_url and not user.github_token:
        raise ValidationError(lifecycle.GITHUB_REQUIRED)

    if body.get("initiativeId"):
        initiative = initiatives_mod.get_initiative(db, body["initiativeId"], user.id)
        if not initiative:
            raise NotFoundError("Initiative not found")
    else:
        initiative = initiatives_mod.ensure_default_initiative(
            db, user.id, config.default_agent, config.default_model
        )

    agent = body.get("agent") or initiative.default_agent
    model = body.get("model")
    if not model and agent == initiative.default_agent:
        model = initiative.default_model

    deps = [tasks_mod.get_task(db, dep_id, user.id) for dep_id in depends_on]
    ready = all(d is not None and d.status == "completed" for d in deps)

    task = tasks_mod.create_task(
        db,
        initiative.id,
        prompt,
        repository_id=repo.id if repo else None,
        type=task_type,
        priority=priority,
        depends_on=depends_on,
        status="running" if ready else "queued",
        user_id=user.id,
        repo_url=repo_url,
        branch=branch or "main",
        agent=agent,
        model=model,
    )
    metrics_mod.record_task_created(db)

    if task.status == "running":
        task = await _dispatch(request, db, task, credential=user.github_token)
    else:
        logger.info("Task %s queued behind %d dependencies", task.id, len(depends_on))

    return JSONResponse({"task": _task_dict(task)}, status_code=201)


async def _dispatch(request: Request, db, task, **kwargs):
    try:
        gateway = request.app.state.gateway_factory()
    except BlackboxError as exc:
        logger.warning("Cannot dispatch task %s: %s", task.id, exc)
        return tasks_mod.apply_task_update(db, task, {"status": "failed", "error": str(exc)})
    try:
        return await run_in_threadpool(lifecycle.dispatch_task, db, task, gateway, **kwargs)
    finally:
        gateway.close()


@authenticated
async def api_get_task(request: Request, db, user):
    task = tasks_mod.get_task(db, request.path_params["task_id"], user.id)
    if not task:
        return _not_found("Task")

    syncable = task.blackbox_task_id and task.status in lifecycle.SYNCABLE_STATUSES
    if request.query_params.get("sync") == "true" and syncable:
        try:
            gateway = request.app.state.gateway_factory()
            try:
                task = await run_in_threadpool(lifecycle.sync_task, db, task, gateway)
            finally:
                gateway.close()
        except BlackboxError as exc:
            logger.warning("Error syncing task %s with provider: %s", task.id, exc)

    data = _task_dict(task)
    data["events"] = [_event_dict(e) for e in tasks_mod.get_task_events(db, task.id)]
    return JSONResponse({"task": data})


@authenticated
async def api_update_task(request: Request, db, user):
    body = await _json_body(request)
    task = tasks_mod.update_task(
        db, request.path_params["task_id"], user.id, **_mapped(body, TASK_FIELDS)
    )
    if not task:
        return _not_found("Task")
    return JSONResponse({"task": _task_dict(task)})


@authenticated
async def api_delete_task(request: Request, db, user):
    action = tasks_mod.delete_or_cancel(db, request.path_params["task_id"], user.id)
    if not action:
        return _not_found("Task")
    return JSONResponse({"success": True, "action": action})


@authenticated
async def api_add_dependency(request: Request, db, user):
    body = await _json_body(request)
    dep_id = body.get("dependsOn")
    if not dep_id:
        raise ValidationError("dependsOn is required")
    task = tasks_mod.add_dependency(db, request.path_params["task_id"], dep_id, user.id)
    if not task:
        return _not_found("Task")
    return JSONResponse({"task": _task_dict(task)})


@authenticated
async def api_remove_dependency(request: Request, db, user):
    task = tasks_mod.remove_dependency(
        db, request.path_params["task_id"], request.path_params["dep_id"], user.id
    )
    if not task:
        return _not_found("Task")
    return JSONResponse({"task": _task_dict(task)})


@authenticated
async def api_list_messages(request: Request, db, user):
    msgs, total = messages_mod.list_messages(
        db,
        user.id,
        initiative_id=request.query_params.get("initiativeId"),
        unread_only=request.query_params.get("unread") == "true",
        limit=_int_param(request, "limit", 50),
        offset=_int_param(request, "offset", 0),
    )
    return JSONResponse({"messages": [_message_dict(m) for m in msgs], "total": total})


@authenticated
async def api_create_message(request: Request, db, user):
    body = await _json_body(request)
    from_id = body.get("fromInitiativeId")
    if not from_id:
        raise ValidationError("fromInitiativeId is required")
    msg = messages_mod.create_message(
        db,
        from_id,
        body.get("toInitiativeId") or from_id,
        body.get("type"),
        body.get("subject"),
        body=body.get("body"),
        from_task_id=body.get("fromTaskId"),
        to_task_id=body.get("toTaskId"),
        metadata=body.get("metadata"),
        suggested_actions=body.get("suggestedActions"),
        user_id=user.id,
    )
    return JSONResponse({"message": _message_dict(msg)}, status_code=201)


@authenticated
async def api_mark_message_read(request: Request, db, user):
    msg = messages_mod.mark_read(db, request.path_params["message_id"], user.id)
    if not msg:
        return _not_found("Message")
    return JSONResponse({"message": _message_dict(msg)})


@authenticated
async def api_metrics(request: Request, db, user):
    hours = _int_param(request, "hours", 24)
    if hours < 1:
        raise ValidationError("hours must be positive")
    return JSONResponse({"hours": hours, "metrics": metrics_mod.summarize(db, hours=hours)})


@authenticated
async def api_dashboard(request: Request, db, user):
    initiatives = initiatives_mod.list_initiatives(db, user.id, status="active")
    stats = {i.id: initiatives_mod.initiative_stats(db, i.id) for i in initiatives}
    active = tasks_mod.list_active_tasks(db, user.id, limit=10)
    msgs, _ = messages_mod.list_messages(db, user.id, limit=20)
    totals = metrics_mod.summarize(db, hours=24)

    return JSONResponse({
        "initiatives": [{**_initiative_dict(i), "stats": stats[i.id]} for i in initiatives],
        "tasks": [_task_dict(t) for t in active],
        "messages": [_message_dict(m) for m in msgs],
        "metrics": {
            "liveAgents": sum(s["running"] for s in stats.values()),
            "agentCapacity": sum(i.max_agents for i in initiatives) or 100,
            "deploysToday": totals["prs_created"],
            "linesChanged": {"added": totals["lines_added"], "removed": totals["lines_removed"]},
            "tasksTotal": totals["tasks_created"],
            "tasksQueued": sum(1 for t in active if t.status == "queued"),
            **totals,
        },
    })


async def blackbox_webhook(request: Request):
    config = get_config()
    raw = await request.body()

    if not verify_signature(raw, request.headers.get(SIGNATURE_HEADER), config.webhook_secret):
        logger.warning("Invalid webhook signature")
        return JSONResponse({"error": "Invalid signature"}, status_code=401)

    try:
        payload = json.loads(raw)
    except ValueError:
        return JSONResponse({"error": "Invalid JSON"}, status_code=400)

    provider_task = payload.get("task") if isinstance(payload, dict) else None
    if not isinstance(provider_task, dict) or not provider_task.get("id"):
        return JSONResponse({"error": "Missing task ID"}, status_code=400)

    event = payload.get("event")
    logger.info("Received provider webhook: %s %s", event, provider_task["id"])

    db = _get_db()
    try:
        task = lifecycle.handle_event(db, event, provider_task, dedup=config.webhook_dedup)
    except Exception:
        logger.exception("Error in provider webhook")
        return JSONResponse({"error": "Webhook processing failed"}, status_code=500)
    finally:
        db.close()

    if task is None:
        return JSONResponse({"received": True, "message": "Task not found"})
    return JSONResponse({"received": True, "taskId": task.id})


# ── Serialization ─────────────────────────────────────────────────────────────


def _iso(value):
    return value.isoformat() if value else None


def _initiative_dict(i) -> dict:
    return {
        "id": i.id,
        "user_id": i.user_id,
        "name": i.name,
        "slug": i.slug,
        "description": i.description,
        "max_agents": i.max_agents,
        "min_agents": i.min_agents,
        "scaling_policy": i.scaling_policy,
        "default_agent": i.default_agent,
        "default_model": i.default_model,
        "allowed_agents": i.allowed_agents,
        "triggers": i.triggers,
        "status": i.status,
        "repository_ids": i.repository_ids,
        "created_at": _iso(i.created_at),
        "updated_at": _iso(i.updated_at),
    }


def _repository_dict(r) -> dict:
    return {
        "id": r.id,
        "url": r.url,
        "provider": r.provider,
        "name": r.name,
        "full_name": r.full_name,
        "default_branch": r.default_branch,
        "installation_id": r.installation_id,
        "repo_instructions": r.repo_instructions,
        "webhooks_enabled": r.webhooks_enabled,
        "created_at": _iso(r.created_at),
        "updated_at": _iso(r.updated_at),
    }


def _task_dict(t) -> dict:
    return {
        "id": t.id,
        "initiative_id": t.initiative_id,
        "repository_id": t.repository_id,
        "prompt": t.prompt,
        "repo_url": t.repo_url,
        "branch": t.branch,
        "agent": t.agent,
        "model": t.model,
        "type": t.type,
        "priority": t.priority,
        "status": t.status,
        "assigned_agents": t.assigned_agents,
        "progress": t.progress,
        "eta": t.eta,
        "blackbox_task_id": t.blackbox_task_id,
        "result": t.result,
        "artifacts": t.artifacts,
        "error": t.error,
        "depends_on": t.depends_on,
        "queued_at": _iso(t.queued_at),
        "started_at": _iso(t.started_at),
        "completed_at": _iso(t.completed_at),
        "created_at": _iso(t.created_at),
        "updated_at": _iso(t.updated_at),
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": _iso(e.created_at),
    }


def _message_dict(m) -> dict:
    return {
        "id": m.id,
        "from_initiative_id": m.from_initiative_id,
        "to_initiative_id": m.to_initiative_id,
        "from_task_id": m.from_task_id,
        "to_task_id": m.to_task_id,
        "type": m.type,
        "subject": m.subject,
        "body": m.body,
        "metadata": m.metadata,
        "suggested_actions": m.suggested_actions,
        "read": m.read,
        "created_at": _iso(m.created_at),
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(gateway_factory=None) -> Starlette:
    """Build the API. ``gateway_factory`` returns a provider client per call."""
    routes = [
        Route("/api/health", health),
        Route("/api/agents", api_agents, methods=["GET"]),
        Route("/api/initiatives", api_list_initiatives, methods=["GET"]),
        Route("/api/initiatives", api_create_initiative, methods=["POST"]),
        Route("/api/initiatives/{initiative_id}", api_get_initiative, methods=["GET"]),
        Route("/api/initiatives/{initiative_id}", api_update_initiative, methods=["PUT"]),
        Route("/api/initiatives/{initiative_id}", api_delete_initiative, methods=["DELETE"]),
        Route("/api/repos", api_list_repositories, methods=["GET"]),
        Route("/api/repos", api_create_repository, methods=["POST"]),
        Route("/api/repos/{repo_id}", api_get_repository, methods=["GET"]),
        Route("/api/repos/{repo_id}", api_update_repository, methods=["PUT"]),
        Route("/api/repos/{repo_id}", api_delete_repository, methods=["DELETE"]),
        Route("/api/tasks", api_list_tasks, methods=["GET"]),
        Route("/api/tasks", api_create_task, methods=["POST"]),
        Route("/api/tasks/{task_id}", api_get_task, methods=["GET"]),
        Route("/api/tasks/{task_id}", api_update_task, methods=["PUT"]),
        Route("/api/tasks/{task_id}", api_delete_task, methods=["DELETE"]),
        Route("/api/tasks/{task_id}/dependencies", api_add_dependency, methods=["POST"]),
        Route(
            "/api/tasks/{task_id}/dependencies/{dep_id}",
            api_remove_dependency,
            methods=["DELETE"],
        ),
        Route("/api/messages", api_list_messages, methods=["GET"]),
        Route("/api/messages", api_create_message, methods=["POST"]),
        Route("/api/messages/{message_id}/read", api_mark_message_read, methods=["POST"]),
        Route("/api/metrics", api_metrics, methods=["GET"]),
        Route("/api/dashboard", api_dashboard, methods=["GET"]),
        Route("/api/webhooks/blackbox", blackbox_webhook, methods=["POST"]),
    ]
    app = Starlette(routes=routes)
    app.state.gateway_factory = gateway_factory or _default_gateway
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port, log_config=None)
