"""Unit tests for service discovery from stack output."""

import pytest

from slot_orchestrator.discovery import (
    DiscoveryEvent,
    ServiceDiscoveryParser,
    service_name_for_port_var,
    strip_control_sequences,
)


class TestControlSequences:
    """ANSI and terminal noise is removed before matching."""

    def test_strips_colour_codes(self):
        assert strip_control_sequences("\x1b[32minfo\x1b[0m: ready") == "info: ready"

    def test_strips_osc_hyperlinks(self):
        text = "\x1b]8;;http://x\x07link\x1b]8;;\x07"

        assert strip_control_sequences(text) == "link"

    def test_strips_stray_control_characters(self):
        assert strip_control_sequences("a\x00b\x08c\td") == "abc\td"


class TestServiceNames:
    """Port variables map to service names."""

    @pytest.mark.parametrize(
        "var, expected",
        [("API_PORT", "api"), ("WEB_PORT", "web"), ("ADMINPORT", "admin"), ("PORT", "port")],
    )
    def test_service_name_for_port_var(self, var, expected):
        assert service_name_for_port_var(var) == expected


class TestParser:
    """Incremental line scanning."""

    def test_listening_line_named_after_port_variable(self):
        parser = ServiceDiscoveryParser({"API_PORT": 5001})

        events = parser.feed("info: Now listening on: http://localhost:5001\n")

        assert events == [DiscoveryEvent("api", "http://localhost:5001")]
        assert parser.services == {"api": "http://localhost:5001"}

    def test_listening_line_for_unknown_port_is_dashboard(self):
        parser = ServiceDiscoveryParser({"API_PORT": 5001})

        parser.feed("Now listening on: https://localhost:17000\n")

        assert parser.services == {"dashboard": "https://localhost:17000"}

    def test_login_line(self):
        parser = ServiceDiscoveryParser()

        parser.feed("Login to the dashboard at http://localhost:18888/login?t=abc123\n")

        assert parser.services == {"dashboard": "http://localhost:18888/login?t=abc123"}

    def test_named_resource_line(self):
        parser = ServiceDiscoveryParser()

        parser.feed('Resource "webfrontend" is listening on http://localhost:5173\n')

        assert parser.services == {"webfrontend": "http://localhost:5173"}

    def test_partial_lines_are_buffered(self):
        parser = ServiceDiscoveryParser({"API_PORT": 5001})

        assert parser.feed("Now listening on: http://loc") == []
        assert parser.feed("alhost:5001") == []
        events = parser.feed("\nnext")

        assert events == [DiscoveryEvent("api", "http://localhost:5001")]

    def test_flush_completes_trailing_line(self):
        parser = ServiceDiscoveryParser()
        parser.feed("Login to the dashboard at http://localhost:18888")

        assert parser.flush() == [DiscoveryEvent("dashboard", "http://localhost:18888")]
        assert parser.flush() == []

    def test_bytes_and_crlf(self):
        parser = ServiceDiscoveryParser({"API_PORT": 5001})

        parser.feed(b"\x1b[1mNow listening on: http://localhost:5001\x1b[0m\r\n")

        assert parser.services == {"api": "http://localhost:5001"}

    def test_rediscovery_updates_single_entry(self):
        parser = ServiceDiscoveryParser({"API_PORT": 5001})

        parser.feed_line("Now listening on: http://localhost:5001")
        parser.feed_line("Now listening on: http://localhost:5001")
        parser.feed_line('"api" is listening on http://127.0.0.1:5001')

        assert parser.services == {"api": "http://127.0.0.1:5001"}

    def test_unrelated_lines_ignored(self):
        parser = ServiceDiscoveryParser()

        assert parser.feed("Building...\nlistening soon\n") == []
        assert parser.services == {}


def test_whole_log_with_unterminated_last_line():
    content = (
        "info: Aspire starting\n"
        "\x1b[32minfo\x1b[0m: Now listening on: http://localhost:5001\n"
        "Login to the dashboard at http://localhost:18888/login?t=x"
    )

    parser = ServiceDiscoveryParser({"API_PORT": 5001})
    parser.feed(content)
    parser.flush()

    assert parser.services == {
        "api": "http://localhost:5001",
        "dashboard": "http://localhost:18888/login?t=x",
    }
