"""Canned prompts for the review, docs and tests task types."""

REVIEW_FOCUS = {
    "security": "Focus on security vulnerabilities, auth issues, injection attacks, hardcoded secrets.",
    "performance": "Focus on algorithm efficiency, N+1 queries, memory leaks, caching opportunities.",
    "quality": "Focus on code organization, SOLID principles, DRY violations, naming conventions.",
    "all": "Comprehensive review covering security, performance, and code quality.",
}

DOCS_TYPES = {
    "readme": "Generate a comprehensive README with installation, usage, configuration, and examples.",
    "api": "Generate API documentation with all endpoints, request/response schemas, and auth details.",
    "full": "Generate full documentation including README, API docs, and architecture guide.",
    "changelog": "Generate a CHANGELOG following Keep a Changelog format.",
}

TEST_TYPES = {
    "unit": "Generate unit tests with happy path, edge cases, and error handling coverage.",
    "integration": "Generate integration tests for component interactions and API testing.",
    "e2e": "Generate end-to-end tests for critical user journeys.",
}


def _pick(options: dict[str, str], key: str | None, default: str, label: str) -> str:
    key = key or default
    if key not in options:
        raise ValueError(f"Unknown {label}: {key}")
    return options[key]


def build_prompt(
    task_type: str,
    prompt: str | None = None,
    focus: str | None = None,
    docs_type: str | None = None,
    test_type: str | None = None,
    target: str | None = None,
) -> str:
    """Expand a task type into the prompt sent to the agent.

    ``review``, ``docs`` and ``tests`` ignore ``prompt`` and use the canned
    text for the chosen option. Every other type passes ``prompt`` through.
    """
    if task_type == "review":
        result = f"Code Review: {_pick(REVIEW_FOCUS, focus, 'all', 'review focus')}"
    elif task_type == "docs":
        result = f"Documentation: {_pick(DOCS_TYPES, docs_type, 'readme', 'documentation type')}"
    elif task_type == "tests":
        result = f"Test Generation: {_pick(TEST_TYPES, test_type, 'unit', 'test type')}"
        if target:
            result += f" Target: {target}"
    else:
        result = (prompt or "").strip()

    if not result:
        raise ValueError("Prompt is required")
    return result
