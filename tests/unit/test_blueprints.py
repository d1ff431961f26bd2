"""Unit tests for blueprint parsing, resolution and storage."""

from datetime import UTC, datetime

import pytest
import yaml

from slot_orchestrator.blueprints import (
    Blueprint,
    BlueprintAgentConfig,
    BlueprintDefaults,
    BlueprintSlotEntry,
    BlueprintStore,
    interpolate,
    resolve_blueprint,
    snapshot_from_slots,
    validate_blueprint,
)
from slot_orchestrator.errors import (
    BlueprintAlreadyExistsError,
    BlueprintNotFoundError,
    BlueprintValidationError,
    ConfigError,
)
from slot_orchestrator.models import Slot

BLUEPRINT_YAML = """\
name: receipts
description: API and web work for receipts
defaults:
  source: /src/shop
  auto_start_aspire: true
  agent:
    prompt_template: "Work on {branch} in slot {slot_name}"
    max_turns: 20
slots:
  - name: receipts-api
    branch: feature/receipts-api
    agent:
      max_turns: 5
  - name: receipts-web
    source: /src/web
    auto_start: false
    auto_spawn_agent: true
"""


@pytest.fixture
def store(tmp_path) -> BlueprintStore:
    return BlueprintStore(tmp_path / "blueprints")


def simple_blueprint(name: str = "pair") -> Blueprint:
    return Blueprint(
        name=name,
        defaults=BlueprintDefaults(source="/src/shop"),
        slots=[BlueprintSlotEntry(name="alpha"), BlueprintSlotEntry(name="beta", branch="b")],
    )


class TestParsing:
    def test_from_yaml(self):
        blueprint = Blueprint.from_dict(yaml.safe_load(BLUEPRINT_YAML))

        assert blueprint.name == "receipts"
        assert blueprint.defaults.source == "/src/shop"
        assert blueprint.defaults.auto_start is True
        assert blueprint.defaults.agent.max_turns == 20
        api, web = blueprint.slots
        assert api.branch == "feature/receipts-api"
        assert api.agent.max_turns == 5
        assert web.auto_start is False
        assert web.agent is None

    def test_to_dict_omits_unset_fields(self):
        assert simple_blueprint().to_dict() == {
            "name": "pair",
            "defaults": {"source": "/src/shop"},
            "slots": [{"name": "alpha"}, {"name": "beta", "branch": "b"}],
        }

    @pytest.mark.parametrize(
        "document",
        [
            ["not", "a", "mapping"],
            {"name": "x", "defaults": "nope"},
            {"name": "x", "slots": ["alpha"]},
            {"name": "x", "slots": [{"name": "a", "agent": "nope"}]},
        ],
    )
    def test_malformed_documents(self, document):
        with pytest.raises(BlueprintValidationError):
            Blueprint.from_dict(document)

    def test_validation_error_is_a_config_error(self):
        assert issubclass(BlueprintValidationError, ConfigError)


class TestValidation:
    def test_valid(self):
        validate_blueprint(simple_blueprint())

    def test_reports_every_problem(self):
        blueprint = Blueprint(
            name="",
            slots=[BlueprintSlotEntry(name=""), BlueprintSlotEntry(name="alpha")],
        )

        with pytest.raises(BlueprintValidationError) as exc_info:
            validate_blueprint(blueprint)

        message = str(exc_info.value)
        assert "blueprint name is required" in message
        assert "slot 1 has no name" in message
        assert "slot 'alpha' has no source" in message
        assert message.count("; ") == 2

    def test_needs_a_slot(self):
        with pytest.raises(BlueprintValidationError, match="at least one slot"):
            validate_blueprint(Blueprint(name="empty"))

    def test_duplicate_slot_names(self):
        blueprint = simple_blueprint()
        blueprint.slots.append(BlueprintSlotEntry(name="alpha"))

        with pytest.raises(BlueprintValidationError, match="more than once"):
            validate_blueprint(blueprint)


class TestResolution:
    def test_interpolate(self):
        assert interpolate("{slot_name} on {branch}, {unknown}", "a", "main") == (
            "a on main, {unknown}"
        )

    def test_defaults_and_overrides(self):
        api, web = resolve_blueprint(Blueprint.from_dict(yaml.safe_load(BLUEPRINT_YAML)))

        assert api.source == "/src/shop"
        assert api.auto_start is True
        assert api.auto_spawn_agent is False
        assert api.prompt == "Work on feature/receipts-api in slot receipts-api"
        assert api.max_turns == 5

        assert web.source == "/src/web"
        assert web.auto_start is False
        assert web.auto_spawn_agent is True
        assert web.max_turns == 20

    def test_missing_branch_uses_slot_name(self):
        alpha, beta = resolve_blueprint(simple_blueprint())

        assert alpha.branch == "alpha"
        assert beta.branch == "b"
        assert alpha.prompt is None
        assert alpha.auto_start is False

    def test_agent_merge_keeps_unset_fields(self):
        base = BlueprintAgentConfig(prompt_template="p", allowed_tools="Read", max_turns=3)

        merged = base.merged_with(BlueprintAgentConfig(allowed_tools="Edit"))

        assert merged == BlueprintAgentConfig(prompt_template="p", allowed_tools="Edit", max_turns=3)

    def test_snapshot_from_slots(self):
        slot = Slot(
            name="alpha",
            branch_name="feature/a",
            clone_path="/tmp/slots/alpha",
            source="/src/shop",
            created_at=datetime(2026, 1, 5, 10, 0, tzinfo=UTC),
        )

        blueprint = snapshot_from_slots("pair", None, [slot])

        assert blueprint.slots == [
            BlueprintSlotEntry(name="alpha", branch="feature/a", source="/src/shop")
        ]


class TestStore:
    def test_list_without_directory(self, store):
        assert store.list_names() == []

    @pytest.mark.asyncio
    async def test_save_load_and_list(self, store):
        await store.save(simple_blueprint("pair"))
        await store.save(simple_blueprint("duo"))

        assert store.list_names() == ["duo", "pair"]
        loaded = await store.load("pair")
        assert loaded == simple_blueprint("pair")
        assert not list(store.blueprints_dir.glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_save_refuses_existing(self, store):
        await store.save(simple_blueprint())

        with pytest.raises(BlueprintAlreadyExistsError):
            await store.save(simple_blueprint())

    @pytest.mark.asyncio
    async def test_overwrite(self, store):
        await store.save(simple_blueprint())
        replacement = simple_blueprint()
        replacement.description = "updated"

        await store.overwrite(replacement)

        assert (await store.load("pair")).description == "updated"

    @pytest.mark.asyncio
    async def test_save_validates(self, store):
        with pytest.raises(BlueprintValidationError):
            await store.save(Blueprint(name="empty"))
        assert store.list_names() == []

    @pytest.mark.asyncio
    async def test_load_missing(self, store):
        with pytest.raises(BlueprintNotFoundError):
            await store.load("ghost")

    @pytest.mark.asyncio
    async def test_load_hand_written_file(self, store):
        store.blueprints_dir.mkdir(parents=True)
        (store.blueprints_dir / "receipts.yaml").write_text(BLUEPRINT_YAML)

        blueprint = await store.load("receipts")

        assert [s.name for s in blueprint.slots] == ["receipts-api", "receipts-web"]

    @pytest.mark.asyncio
    async def test_load_fills_missing_name_from_file(self, store):
        store.blueprints_dir.mkdir(parents=True)
        (store.blueprints_dir / "solo.yaml").write_text("slots:\n  - name: a\n    source: /src\n")

        assert (await store.load("solo")).name == "solo"

    @pytest.mark.asyncio
    async def test_load_invalid_yaml(self, store):
        store.blueprints_dir.mkdir(parents=True)
        (store.blueprints_dir / "broken.yaml").write_text("slots: [unclosed\n")

        with pytest.raises(BlueprintValidationError, match="failed to parse"):
            await store.load("broken")

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.save(simple_blueprint())

        await store.delete("pair")

        assert store.list_names() == []
        with pytest.raises(BlueprintNotFoundError):
            await store.delete("pair")

    @pytest.mark.parametrize("name", ["../escape", "a/b", "", "v1.2"])
    def test_unsafe_names_rejected(self, store, name):
        with pytest.raises(BlueprintValidationError):
            store.path_for(name)
