"""Unit tests for the console entry point."""

from unittest.mock import patch

import httpx
import pytest

from slot_orchestrator.cli import build_parser, format_slot_table, main

SLOT = {
    "name": "receipts-1",
    "branchName": "feature/receipts",
    "status": "running",
    "agentStatus": "active",
    "ports": {"API_PORT": 5001},
    "endpoints": {"api": "http://localhost:5001"},
    "clonePath": "/tmp/slots/receipts-1",
    "createdAt": "2026-01-05T10:00:00+00:00",
}


def make_response(status_code: int, body: dict) -> httpx.Response:
    return httpx.Response(status_code, json=body, request=httpx.Request("GET", "http://test"))


class TestParser:
    def test_requires_command(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_pop_in_requires_name(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["pop-in"])


class TestFormatting:
    def test_table(self):
        table = format_slot_table([SLOT])

        header, row = table.splitlines()
        assert header.split() == ["NAME", "BRANCH", "STATUS", "AGENT", "PORTS", "ENDPOINTS"]
        assert row.split() == [
            "receipts-1",
            "feature/receipts",
            "running",
            "active",
            "API_PORT=5001",
            "api=http://localhost:5001",
        ]

    def test_empty(self):
        assert format_slot_table([]) == "No slots."


class TestCommands:
    def test_list(self, capsys):
        with patch("slot_orchestrator.cli.httpx.get") as get:
            get.return_value = make_response(200, {"slots": [SLOT]})
            assert main(["--url", "http://orchestrator:8010", "list"]) == 0

        get.assert_called_once_with("http://orchestrator:8010/slots", timeout=10.0)
        assert "receipts-1" in capsys.readouterr().out

    def test_list_unreachable(self, capsys):
        with patch("slot_orchestrator.cli.httpx.get", side_effect=httpx.ConnectError("refused")):
            assert main(["list"]) == 1

        assert "Cannot reach orchestrator" in capsys.readouterr().err

    def test_pop_in_attaches(self):
        with (
            patch("slot_orchestrator.cli.httpx.get") as get,
            patch("slot_orchestrator.cli.SessionController") as controller_cls,
        ):
            get.return_value = make_response(200, SLOT)
            controller_cls.return_value.attach.return_value = 0

            assert main(["pop-in", "receipts-1"]) == 0

        controller_cls.return_value.attach.assert_called_once_with("receipts-1")

    def test_pop_in_without_active_agent(self, capsys):
        with (
            patch("slot_orchestrator.cli.httpx.get") as get,
            patch("slot_orchestrator.cli.SessionController") as controller_cls,
        ):
            get.return_value = make_response(200, dict(SLOT, agentStatus="idle"))

            assert main(["pop-in", "receipts-1"]) == 1

        controller_cls.assert_not_called()
        assert "no active agent" in capsys.readouterr().err

    def test_pop_in_unknown_slot(self, capsys):
        with patch("slot_orchestrator.cli.httpx.get") as get:
            get.return_value = make_response(404, {"detail": "slot 'ghost' not found"})

            assert main(["pop-in", "ghost"]) == 1

        assert "not found" in capsys.readouterr().err

    def test_serve(self):
        with (
            patch("slot_orchestrator.server.SlotOrchestratorServer") as server_cls,
            patch("slot_orchestrator.cli.asyncio.run") as run,
        ):
            assert main(["serve", "--port", "9100"]) == 0

        config = server_cls.call_args.args[0]
        assert config.server_port == 9100
        run.assert_called_once()

    def test_apply_reports_each_slot(self, capsys):
        result = {
            "blueprint": "receipts",
            "slots": [
                {"name": "receipts-api", "ok": True, "slot": SLOT, "error": None},
                {"name": "receipts-web", "ok": False, "slot": None, "error": "create failed: boom"},
            ],
            "failed": ["receipts-web"],
        }
        with patch("slot_orchestrator.cli.httpx.post") as post:
            post.return_value = make_response(200, result)

            assert main(["--url", "http://orchestrator:8010", "apply", "receipts"]) == 1

        post.assert_called_once_with(
            "http://orchestrator:8010/blueprints/receipts/apply", timeout=600.0
        )
        captured = capsys.readouterr()
        assert "receipts-api: running" in captured.out
        assert "receipts-web: create failed: boom" in captured.err

    def test_apply_unknown_blueprint(self, capsys):
        with patch("slot_orchestrator.cli.httpx.post") as post:
            post.return_value = make_response(404, {"detail": "blueprint 'ghost' not found"})

            assert main(["apply", "ghost"]) == 1

        assert "not found" in capsys.readouterr().err
