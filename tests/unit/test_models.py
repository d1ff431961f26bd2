"""Unit tests for models.py."""

from datetime import UTC, datetime

import pytest

from slot_orchestrator.errors import InvalidSlotNameError
from slot_orchestrator.models import AgentStatus, Slot, SlotStatus, validate_slot_name


def make_slot(**overrides) -> Slot:
    fields = {
        "name": "receipts-1",
        "branch_name": "feature/receipts",
        "clone_path": "/tmp/slots/receipts-1",
        "ports": {"API_PORT": 5001},
        "created_at": datetime(2026, 1, 5, 10, 0, tzinfo=UTC),
    }
    fields.update(overrides)
    return Slot(**fields)


class TestSlotNames:
    """Slot names must be safe for paths and tmux."""

    @pytest.mark.parametrize("name", ["receipts-1", "a", "feature_x-2", "A" * 64])
    def test_valid(self, name):
        assert validate_slot_name(name) == name

    @pytest.mark.parametrize(
        "name",
        ["", "-lead", "has space", "a/b", "..", "v1.2", "A" * 65, "colon:name", "trailing\n"],
    )
    def test_invalid(self, name):
        with pytest.raises(InvalidSlotNameError):
            validate_slot_name(name)


class TestSlot:
    """Slot snapshots and state-file encoding."""

    def test_snapshot_is_independent(self):
        slot = make_slot()
        copy = slot.snapshot()

        copy.ports["WEB_PORT"] = 5002
        copy.endpoints["api"] = "http://localhost:5001"

        assert slot.ports == {"API_PORT": 5001}
        assert slot.endpoints == {}

    def test_to_state_dict(self):
        data = make_slot(endpoints={"api": "http://localhost:5001"}).to_state_dict()

        assert data == {
            "name": "receipts-1",
            "branchName": "feature/receipts",
            "status": "created",
            "agentStatus": "idle",
            "ports": {"API_PORT": 5001},
            "endpoints": {"api": "http://localhost:5001"},
            "clonePath": "/tmp/slots/receipts-1",
            "createdAt": "2026-01-05T10:00:00+00:00",
        }

    def test_optional_fields_encoded_when_set(self):
        data = make_slot(source="/src/repo", failure_reason="stack exited with code 1").to_state_dict()

        assert data["source"] == "/src/repo"
        assert data["failureReason"] == "stack exited with code 1"

    def test_from_state_dict(self):
        original = make_slot(status=SlotStatus.RUNNING, agent_status=AgentStatus.ACTIVE)

        restored = Slot.from_state_dict(original.to_state_dict())

        assert restored == original

    def test_naive_timestamp_is_utc(self):
        data = make_slot().to_state_dict()
        data["createdAt"] = "2026-01-05T10:00:00"

        assert Slot.from_state_dict(data).created_at.tzinfo is UTC

    def test_destroyed_status_rejected(self):
        data = make_slot().to_state_dict()
        data["status"] = "destroyed"

        with pytest.raises(ValueError):
            Slot.from_state_dict(data)

    def test_missing_field(self):
        data = make_slot().to_state_dict()
        del data["clonePath"]

        with pytest.raises(KeyError):
            Slot.from_state_dict(data)
