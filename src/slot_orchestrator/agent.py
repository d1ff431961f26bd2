"""Startup brief and launch command for a slot's coding agent."""

import shlex

from .models import Slot

DEFAULT_ALLOWED_TOOLS = "Bash,Read,Glob,Grep,Write,Edit,WebFetch,WebSearch,Task"


def build_startup_brief(slot: Slot) -> str:
    """Describe the slot to the agent: where it works and what is running."""
    lines = [
        f"You are working in slot '{slot.name}' on branch '{slot.branch_name}'.",
        f"Your working directory is {slot.clone_path}.",
        "Before starting work, create a feature branch from the current branch "
        "using git checkout -b.",
        "Use conventional branch names (e.g., feature/short-description, fix/short-description).",
        "Commit your work frequently. Push when you have a meaningful set of changes.",
    ]

    if slot.ports:
        ports = ", ".join(f"{var}={port}" for var, port in sorted(slot.ports.items()))
        lines.append(f"Allocated ports: {ports}.")

    for service, url in sorted(slot.endpoints.items()):
        lines.append(f"{service}: {url}")
    if slot.endpoints:
        lines.append("Use these URLs for browser testing.")

    return " ".join(lines)


def build_agent_argv(
    slot: Slot,
    agent_command: str = "claude",
    prompt: str | None = None,
    allowed_tools: str | None = None,
    max_turns: int | None = None,
) -> list[str]:
    """Build the agent CLI invocation as an argument list."""
    argv = shlex.split(agent_command)
    argv += ["--allowedTools", allowed_tools or DEFAULT_ALLOWED_TOOLS]
    argv += ["--append-system-prompt", build_startup_brief(slot)]
    if max_turns is not None:
        argv += ["--max-turns", str(max_turns)]
    if prompt:
        argv.append(prompt)
    return argv


def build_agent_command(
    slot: Slot,
    agent_command: str = "claude",
    prompt: str | None = None,
    allowed_tools: str | None = None,
    max_turns: int | None = None,
) -> str:
    """Shell command typed into the agent window.

    The trailing ``exit`` closes the window when the agent quits, which is how
    the session controller tells that the agent has exited.
    """
    argv = build_agent_argv(slot, agent_command, prompt, allowed_tools, max_turns)
    return f"cd {shlex.quote(slot.clone_path)} && {shlex.join(argv)}; exit"
