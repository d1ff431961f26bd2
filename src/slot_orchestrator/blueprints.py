"""Blueprints: named, reusable sets of slots stored as YAML.

A blueprint lives in ``<slots dir>/blueprints/<name>.yaml``::

    name: receipts
    description: API and web work for receipts
    defaults:
      source: /src/shop
      auto_start: true
      agent:
        prompt_template: "Work on {branch} in slot {slot_name}"
    slots:
      - name: receipts-api
        branch: feature/receipts-api
      - name: receipts-web
        auto_spawn_agent: true

Slot entries override the defaults field by field, agent settings included.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiofiles
import yaml

from .errors import (
    BlueprintAlreadyExistsError,
    BlueprintNotFoundError,
    BlueprintValidationError,
)
from .models import SLOT_NAME_PATTERN, Slot

logger = logging.getLogger(__name__)

# Blueprint names follow the slot-name rule.
BLUEPRINT_NAME_PATTERN = SLOT_NAME_PATTERN


@dataclass
class BlueprintAgentConfig:
    prompt_template: str | None = None
    allowed_tools: str | None = None
    max_turns: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BlueprintAgentConfig:
        return cls(
            prompt_template=data.get("prompt_template"),
            allowed_tools=data.get("allowed_tools"),
            max_turns=data.get("max_turns"),
        )

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {
                "prompt_template": self.prompt_template,
                "allowed_tools": self.allowed_tools,
                "max_turns": self.max_turns,
            }
        )

    def merged_with(self, override: BlueprintAgentConfig | None) -> BlueprintAgentConfig:
        """Field-by-field merge; set fields of ``override`` win."""
        if override is None:
            return self
        return BlueprintAgentConfig(
            prompt_template=override.prompt_template or self.prompt_template,
            allowed_tools=override.allowed_tools or self.allowed_tools,
            max_turns=override.max_turns if override.max_turns is not None else self.max_turns,
        )


@dataclass
class BlueprintDefaults:
    source: str | None = None
    auto_start: bool | None = None
    auto_spawn_agent: bool | None = None
    agent: BlueprintAgentConfig | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BlueprintDefaults:
        return cls(
            source=data.get("source"),
            auto_start=_auto_start(data),
            auto_spawn_agent=data.get("auto_spawn_agent"),
            agent=_agent_from(data),
        )

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {
                "source": self.source,
                "auto_start": self.auto_start,
                "auto_spawn_agent": self.auto_spawn_agent,
                "agent": self.agent.to_dict() if self.agent else None,
            }
        )


@dataclass
class BlueprintSlotEntry:
    name: str
    branch: str | None = None
    source: str | None = None
    auto_start: bool | None = None
    auto_spawn_agent: bool | None = None
    agent: BlueprintAgentConfig | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BlueprintSlotEntry:
        return cls(
            name=data.get("name") or "",
            branch=data.get("branch"),
            source=data.get("source"),
            auto_start=_auto_start(data),
            auto_spawn_agent=data.get("auto_spawn_agent"),
            agent=_agent_from(data),
        )

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {
                "name": self.name,
                "branch": self.branch,
                "source": self.source,
                "auto_start": self.auto_start,
                "auto_spawn_agent": self.auto_spawn_agent,
                "agent": self.agent.to_dict() if self.agent else None,
            }
        )


@dataclass
class Blueprint:
    name: str
    description: str | None = None
    defaults: BlueprintDefaults | None = None
    slots: list[BlueprintSlotEntry] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any, source: str = "<blueprint>") -> Blueprint:
        """Build a blueprint from a decoded YAML document.

        Raises:
            BlueprintValidationError: If the document has the wrong shape
        """
        if not isinstance(data, dict):
            raise BlueprintValidationError(f"{source}: expected a mapping at the top level")
        defaults = data.get("defaults")
        if defaults is not None and not isinstance(defaults, dict):
            raise BlueprintValidationError(f"{source}: 'defaults' must be a mapping")
        slots = data.get("slots") or []
        if not isinstance(slots, list) or not all(isinstance(s, dict) for s in slots):
            raise BlueprintValidationError(f"{source}: 'slots' must be a list of mappings")
        try:
            return cls(
                name=data.get("name") or "",
                description=data.get("description"),
                defaults=BlueprintDefaults.from_dict(defaults) if defaults else None,
                slots=[BlueprintSlotEntry.from_dict(s) for s in slots],
            )
        except (AttributeError, TypeError) as e:
            raise BlueprintValidationError(f"{source}: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {
                "name": self.name,
                "description": self.description,
                "defaults": self.defaults.to_dict() if self.defaults else None,
                "slots": [entry.to_dict() for entry in self.slots],
            }
        )


@dataclass
class ResolvedBlueprintSlot:
    """One slot of a blueprint with defaults applied and the prompt rendered."""

    name: str
    branch: str
    source: str
    auto_start: bool = False
    auto_spawn_agent: bool = False
    prompt: str | None = None
    allowed_tools: str | None = None
    max_turns: int | None = None


def _drop_none(data: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in data.items() if value is not None}


def _auto_start(data: dict[str, Any]) -> bool | None:
    if "auto_start" in data:
        return data["auto_start"]
    return data.get("auto_start_aspire")


def _agent_from(data: dict[str, Any]) -> BlueprintAgentConfig | None:
    agent = data.get("agent")
    if agent is None:
        return None
    if not isinstance(agent, dict):
        raise TypeError("'agent' must be a mapping")
    return BlueprintAgentConfig.from_dict(agent)


def validate_blueprint(blueprint: Blueprint) -> None:
    """Check a blueprint can be applied.

    Every problem is reported at once, joined with "; ".

    Raises:
        BlueprintValidationError: If the blueprint is incomplete
    """
    errors = []
    if not blueprint.name:
        errors.append("blueprint name is required")
    elif not BLUEPRINT_NAME_PATTERN.match(blueprint.name):
        errors.append(f"invalid blueprint name '{blueprint.name}'")
    if not blueprint.slots:
        errors.append("blueprint must contain at least one slot")

    default_source = blueprint.defaults.source if blueprint.defaults else None
    seen: set[str] = set()
    for index, entry in enumerate(blueprint.slots):
        if not entry.name:
            errors.append(f"slot {index + 1} has no name")
            continue
        if entry.name in seen:
            errors.append(f"slot '{entry.name}' appears more than once")
        seen.add(entry.name)
        if not entry.source and not default_source:
            errors.append(f"slot '{entry.name}' has no source and there is no default source")

    if errors:
        raise BlueprintValidationError("; ".join(errors))


def interpolate(template: str, slot_name: str, branch: str) -> str:
    """Fill ``{slot_name}`` and ``{branch}`` in a prompt template."""
    return template.replace("{slot_name}", slot_name).replace("{branch}", branch)


def resolve_blueprint(blueprint: Blueprint) -> list[ResolvedBlueprintSlot]:
    """Apply defaults to every slot entry.

    A slot without a branch works on a branch named after the slot.

    Raises:
        BlueprintValidationError: If the blueprint is incomplete
    """
    validate_blueprint(blueprint)
    defaults = blueprint.defaults or BlueprintDefaults()
    base_agent = defaults.agent or BlueprintAgentConfig()

    resolved = []
    for entry in blueprint.slots:
        branch = entry.branch or entry.name
        agent = base_agent.merged_with(entry.agent)
        auto_start = entry.auto_start if entry.auto_start is not None else defaults.auto_start
        auto_spawn = (
            entry.auto_spawn_agent
            if entry.auto_spawn_agent is not None
            else defaults.auto_spawn_agent
        )
        prompt = None
        if agent.prompt_template:
            prompt = interpolate(agent.prompt_template, entry.name, branch)
        resolved.append(
            ResolvedBlueprintSlot(
                name=entry.name,
                branch=branch,
                source=entry.source or defaults.source,
                auto_start=bool(auto_start),
                auto_spawn_agent=bool(auto_spawn),
                prompt=prompt,
                allowed_tools=agent.allowed_tools,
                max_turns=agent.max_turns,
            )
        )
    return resolved


def snapshot_from_slots(name: str, description: str | None, slots: list[Slot]) -> Blueprint:
    """Capture existing slots (name, branch, source) as a blueprint."""
    return Blueprint(
        name=name,
        description=description,
        slots=[
            BlueprintSlotEntry(name=slot.name, branch=slot.branch_name, source=slot.source)
            for slot in slots
        ],
    )


class BlueprintStore:
    """Reads and writes blueprint YAML files in one directory."""

    def __init__(self, blueprints_dir: str | Path):
        self.blueprints_dir = Path(blueprints_dir)

    def path_for(self, name: str) -> Path:
        if not BLUEPRINT_NAME_PATTERN.match(name):
            raise BlueprintValidationError(f"invalid blueprint name '{name}'")
        return self.blueprints_dir / f"{name}.yaml"

    def list_names(self) -> list[str]:
        """Names of stored blueprints, sorted."""
        if not self.blueprints_dir.is_dir():
            return []
        return sorted(path.stem for path in self.blueprints_dir.glob("*.yaml"))

    async def load(self, name: str) -> Blueprint:
        """Read a blueprint.

        Raises:
            BlueprintNotFoundError: If no file exists for ``name``
            BlueprintValidationError: If the file is not a valid blueprint
        """
        path = self.path_for(name)
        if not path.exists():
            raise BlueprintNotFoundError(name)

        async with aiofiles.open(path) as f:
            content = await f.read()
        try:
            raw = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise BlueprintValidationError(f"failed to parse {path}: {e}") from e

        blueprint = Blueprint.from_dict(raw, source=str(path))
        if not blueprint.name:
            blueprint.name = name
        return blueprint

    async def save(self, blueprint: Blueprint) -> Path:
        """Write a new blueprint.

        Raises:
            BlueprintAlreadyExistsError: If one with the same name is stored
            BlueprintValidationError: If the blueprint is incomplete
        """
        validate_blueprint(blueprint)
        if self.path_for(blueprint.name).exists():
            raise BlueprintAlreadyExistsError(blueprint.name)
        return await self._write(blueprint)

    async def overwrite(self, blueprint: Blueprint) -> Path:
        """Write a blueprint, replacing any stored one of the same name."""
        validate_blueprint(blueprint)
        return await self._write(blueprint)

    async def delete(self, name: str) -> None:
        """Remove a blueprint.

        Raises:
            BlueprintNotFoundError: If no file exists for ``name``
        """
        path = self.path_for(name)
        if not path.exists():
            raise BlueprintNotFoundError(name)
        await asyncio.to_thread(path.unlink)
        logger.info(f"Deleted blueprint {name}")

    async def _write(self, blueprint: Blueprint) -> Path:
        path = self.path_for(blueprint.name)
        self.blueprints_dir.mkdir(parents=True, exist_ok=True)

        temp_file = path.with_name(f"{path.name}.tmp")
        async with aiofiles.open(temp_file, "w") as f:
            await f.write(yaml.safe_dump(blueprint.to_dict(), sort_keys=False))
            await f.flush()
            os.fsync(f.fileno())
        temp_file.replace(path)

        logger.info(f"Saved blueprint {blueprint.name} ({len(blueprint.slots)} slots) to {path}")
        return path


@dataclass
class BlueprintSlotOutcome:
    """What happened to one slot while a blueprint was applied.

    ``slot`` is set once the slot exists, even if a later step (start, agent)
    failed; ``error`` names the step that failed.
    """

    name: str
    slot: Slot | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None
