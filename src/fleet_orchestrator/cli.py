"""CLI entry point for the fleet orchestrator."""

import json
import sys

import click

from fleet_orchestrator.config import get_config
from fleet_orchestrator.core import initiatives as initiatives_mod
from fleet_orchestrator.core import lifecycle
from fleet_orchestrator.core import metrics as metrics_mod
from fleet_orchestrator.core import repositories as repos_mod
from fleet_orchestrator.core import tasks as tasks_mod
from fleet_orchestrator.core import users as users_mod
from fleet_orchestrator.core.errors import ValidationError
from fleet_orchestrator.db.engine import get_db
from fleet_orchestrator.integrations.blackbox import BlackboxError, create_client
from fleet_orchestrator.logging_setup import configure_logging

STATUS_ICONS = {
    "queued": "○",
    "assigned": "◐",
    "running": "●",
    "completed": "✓",
    "failed": "✗",
    "cancelled": "-",
}


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _fail(message: str):
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _require_user(db, email):
    user = users_mod.get_user_by_email(db, email)
    if not user:
        _fail(f"No user with email {email}")
    return user


def _gateway():
    try:
        return create_client(get_config())
    except BlackboxError as exc:
        _fail(str(exc))


@click.group()
def main():
    """fo - Fleet Orchestrator CLI"""
    pass


# ── Server ────────────────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default=None, help="Host to bind to (default: FO_HOST)")
@click.option("--port", default=None, type=int, help="Port to listen on (default: FO_PORT)")
def serve_command(host, port):
    """Run the JSON API server."""
    from fleet_orchestrator.web.app import run_server

    config = get_config()
    configure_logging(config.log_level)
    host = host or config.host
    port = port or config.port
    click.echo(f"Starting API at http://{host}:{port}/api")
    run_server(host=host, port=port)


# ── Users ─────────────────────────────────────────────────────────────────────


@main.group("user")
def user_group():
    """Manage API users."""
    pass


@user_group.command("add")
@click.argument("email")
@click.option("--name", default=None, help="Display name")
def user_add(email, name):
    """Create a user and print its API token."""
    with _get_db() as db:
        if users_mod.get_user_by_email(db, email):
            _fail(f"User {email} already exists")
        user = users_mod.create_user(db, email, name=name)
        click.echo(f"Created user: {user.id}")
        click.echo(f"  Email: {user.email}")
        click.echo(f"  Token: {user.api_token}")


@user_group.command("list")
def user_list():
    """List users."""
    with _get_db() as db:
        users = users_mod.list_users(db)
        if not users:
            click.echo("No users found.")
            return
        for user in users:
            github = f" [github: {user.github_username or 'connected'}]" if user.github_token else ""
            click.echo(f"  {user.email} ({user.id}){github}")


@user_group.command("connect-github")
@click.argument("email")
@click.argument("token")
@click.option("--username", default=None, help="GitHub username")
def user_connect_github(email, token, username):
    """Store the repository token forwarded to the execution provider."""
    with _get_db() as db:
        user = _require_user(db, email)
        users_mod.set_github_connection(db, user.id, token, username)
        click.echo(f"GitHub connected for {email}")


@user_group.command("rotate-token")
@click.argument("email")
def user_rotate_token(email):
    """Issue a new API token, invalidating the old one."""
    with _get_db() as db:
        user = _require_user(db, email)
        user = users_mod.rotate_api_token(db, user.id)
        click.echo(f"Token: {user.api_token}")


# ── Initiatives & Repositories ────────────────────────────────────────────────


@main.group("initiative")
def initiative_group():
    """Manage initiatives."""
    pass


@initiative_group.command("create")
@click.argument("name")
@click.argument("slug")
@click.option("--user", "email", required=True, help="Owner email")
@click.option("--description", "-d", default=None)
@click.option("--agent", default="claude", help="Default agent")
@click.option("--max-agents", default=100, type=int)
def initiative_create(name, slug, email, description, agent, max_agents):
    """Create an initiative."""
    with _get_db() as db:
        user = _require_user(db, email)
        try:
            initiative = initiatives_mod.create_initiative(
                db,
                user.id,
                name,
                slug,
                description=description,
                default_agent=agent,
                max_agents=max_agents,
            )
        except ValidationError as exc:
            _fail(str(exc))
        click.echo(f"Created initiative: {initiative.id} ({initiative.slug})")


@initiative_group.command("list")
@click.option("--user", "email", required=True, help="Owner email")
@click.option("--status", default=None, help="Filter by status")
def initiative_list(email, status):
    """List initiatives with task counts."""
    with _get_db() as db:
        user = _require_user(db, email)
        initiatives = initiatives_mod.list_initiatives(db, user.id, status=status)
        if not initiatives:
            click.echo("No initiatives found.")
            return
        for i in initiatives:
            s = initiatives_mod.initiative_stats(db, i.id)
            click.echo(
                f"  {i.slug}: {i.name} ({i.status}) "
                f"running={s['running']} queued={s['queued']} "
                f"completed={s['completed']} failed={s['failed']}"
            )


@main.group("repo")
def repo_group():
    """Manage connected repositories."""
    pass


@repo_group.command("add")
@click.argument("url")
@click.option("--user", "email", required=True, help="Owner email")
@click.option("--name", required=True)
@click.option("--full-name", required=True, help="owner/name")
@click.option("--branch", default="main", help="Default branch")
def repo_add(url, email, name, full_name, branch):
    """Connect a repository."""
    with _get_db() as db:
        user = _require_user(db, email)
        try:
            repo = repos_mod.create_repository(
                db, user.id, url, name, full_name, default_branch=branch
            )
        except ValidationError as exc:
            _fail(str(exc))
        click.echo(f"Connected repository: {repo.id} ({repo.full_name})")


@repo_group.command("list")
@click.option("--user", "email", required=True, help="Owner email")
def repo_list(email):
    """List connected repositories."""
    with _get_db() as db:
        user = _require_user(db, email)
        repos = repos_mod.list_repositories(db, user.id)
        if not repos:
            click.echo("No repositories found.")
            return
        for r in repos:
            click.echo(f"  {r.full_name} [{r.default_branch}] {r.url} ({r.id})")


# ── Tasks ─────────────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Inspect and drive tasks."""
    pass


@task_group.command("list")
@click.option("--user", "email", required=True, help="Owner email")
@click.option("--status", default=None, help="Comma-separated statuses")
@click.option("--limit", default=50, type=int)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(email, status, limit, json_output):
    """List tasks, newest first."""
    statuses = [s.strip() for s in status.split(",")] if status else None
    with _get_db() as db:
        user = _require_user(db, email)
        tasks, total = tasks_mod.list_tasks(db, user.id, statuses=statuses, limit=limit)

        if json_output:
            click.echo(json.dumps({"tasks": [_task_dict(t) for t in tasks], "total": total}, indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        for task in tasks:
            icon = STATUS_ICONS.get(task.status, "?")
            deps = f" [depends: {', '.join(task.depends_on)}]" if task.depends_on else ""
            click.echo(
                f"  {icon} {task.priority:<8} {task.id}: {task.prompt[:60]} "
                f"({task.status}, {task.progress}%){deps}"
            )
        if total > len(tasks):
            click.echo(f"  ... {total - len(tasks)} more")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details and its event history."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            _fail(f"Task not found: {task_id}")

        click.echo(f"Task: {task.id}")
        click.echo(f"  Status: {task.status} ({task.progress}%)")
        click.echo(f"  Type: {task.type}  Priority: {task.priority}")
        click.echo(f"  Prompt: {task.prompt}")
        if task.blackbox_task_id:
            click.echo(f"  Provider task: {task.blackbox_task_id}")
        if task.depends_on:
            click.echo(f"  Depends on: {', '.join(task.depends_on)}")
        if task.result and task.result.get("prUrl"):
            click.echo(f"  PR: {task.result['prUrl']}")
        if task.error:
            click.echo(f"  Error: {task.error}")

        events = tasks_mod.get_task_events(db, task_id)
        if events:
            click.echo("  Events:")
            for e in events:
                change = f"{e.old_value} -> {e.new_value}" if e.old_value else (e.new_value or "")
                click.echo(f"    {e.created_at}  {e.event_type}  {change}")


@task_group.command("sync")
@click.argument("task_id")
def task_sync(task_id):
    """Reconcile a dispatched task with the provider."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            _fail(f"Task not found: {task_id}")
        if not task.blackbox_task_id:
            _fail(f"Task {task_id} has not been dispatched")

        with _gateway() as gateway:
            try:
                task = lifecycle.sync_task(db, task, gateway)
            except BlackboxError as exc:
                _fail(str(exc))
        click.echo(f"Task {task.id}: {task.status} ({task.progress}%)")


@task_group.command("dispatch")
@click.argument("task_id", required=False)
@click.option("--all-assigned", is_flag=True, help="Dispatch every assigned task")
@click.option("--agent", default=None, help="Agent override")
@click.option("--model", default=None, help="Model override")
def task_dispatch(task_id, all_assigned, agent, model):
    """Send assigned tasks (dependencies met) to the provider."""
    if not task_id and not all_assigned:
        _fail("Give a TASK_ID or --all-assigned")

    with _get_db() as db:
        if all_assigned:
            pending = tasks_mod.list_assigned_tasks(db)
        else:
            task = tasks_mod.get_task(db, task_id)
            if not task:
                _fail(f"Task not found: {task_id}")
            if task.status != "assigned" or task.blackbox_task_id:
                _fail(f"Task {task_id} is {task.status}; only undispatched assigned tasks can be sent")
            pending = [task]

        if not pending:
            click.echo("Nothing to dispatch.")
            return

        skipped = 0
        with _gateway() as gateway:
            for task in pending:
                try:
                    task = _dispatch_one(db, task, gateway, agent, model)
                except ValidationError as exc:
                    skipped += 1
                    click.echo(f"  {STATUS_ICONS[task.status]} {task.id}: skipped ({exc})", err=True)
                    continue
                icon = STATUS_ICONS.get(task.status, "?")
                detail = task.blackbox_task_id or task.error
                click.echo(f"  {icon} {task.id}: {task.status} ({detail})")
        if skipped:
            _fail(f"{skipped} task(s) not dispatched")


def _dispatch_one(db, task, gateway, agent, model):
    initiative = initiatives_mod.get_initiative(db, task.initiative_id)
    owner = users_mod.get_user(db, initiative.user_id)
    if not agent and not task.agent:
        agent = initiative.default_agent
        model = model or initiative.default_model
    return lifecycle.dispatch_task(
        db,
        task,
        gateway,
        owner.github_token if owner else None,
        agent=agent,
        model=model,
    )


@task_group.command("wait")
@click.argument("task_id")
@click.option("--interval", default=5.0, type=float, help="Seconds between polls")
@click.option("--timeout", default=600.0, type=float, help="Give up after this many seconds")
def task_wait(task_id, interval, timeout):
    """Block until a dispatched task finishes, then record its final state."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            _fail(f"Task not found: {task_id}")
        if not task.blackbox_task_id:
            _fail(f"Task {task_id} has not been dispatched")

        def on_progress(snapshot):
            click.echo(f"  {snapshot.status} {snapshot.progress}%")

        with _gateway() as gateway:
            try:
                gateway.wait_for_completion(
                    task.blackbox_task_id,
                    poll_interval=interval,
                    timeout=timeout,
                    on_progress=on_progress,
                )
                task = lifecycle.sync_task(db, task, gateway)
            except BlackboxError as exc:
                _fail(str(exc))
        click.echo(f"Task {task.id}: {task.status}")
        if task.status != "completed":
            sys.exit(1)


# ── Metrics ───────────────────────────────────────────────────────────────────


@main.command("metrics")
@click.option("--hours", default=24, type=int, help="Window size in hours")
def metrics_command(hours):
    """Summarize task outcomes over a trailing window."""
    with _get_db() as db:
        totals = metrics_mod.summarize(db, hours=hours)
    click.echo(f"Last {hours}h:")
    for name, value in totals.items():
        click.echo(f"  {name.replace('_', ' ')}: {value}")


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "initiative_id": task.initiative_id,
        "prompt": task.prompt,
        "type": task.type,
        "repo_url": task.repo_url,
        "agent": task.agent,
        "priority": task.priority,
        "status": task.status,
        "progress": task.progress,
        "blackbox_task_id": task.blackbox_task_id,
        "depends_on": task.depends_on,
        "error": task.error,
        "queued_at": task.queued_at.isoformat() if task.queued_at else None,
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
    }
