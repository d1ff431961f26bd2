"""Service discovery from stack log output.

The stack announces its endpoints in free-form log lines. ServiceDiscoveryParser
consumes that output incrementally (partial chunks are buffered until a newline
arrives), strips terminal control sequences, and turns recognised "ready"
announcements into (service, url) events.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from urllib.parse import urlsplit

# CSI sequences (colours, cursor movement), OSC sequences (titles, hyperlinks)
# and the remaining two-byte escapes.
ANSI_ESCAPE_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[@-Z\\-_]"
)
CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")

LISTENING_RE = re.compile(r"Now listening on:\s+(https?://\S+)")
LOGIN_RE = re.compile(r"Login to the dashboard at\s+(https?://\S+)")
RESOURCE_RE = re.compile(r'"(\w[\w.\-]+)"\s+is listening on\s+(https?://\S+)')

DASHBOARD_SERVICE = "dashboard"


def strip_control_sequences(text: str) -> str:
    """Remove ANSI escapes and stray control characters from a line."""
    return CONTROL_CHARS_RE.sub("", ANSI_ESCAPE_RE.sub("", text))


def service_name_for_port_var(var: str) -> str:
    """Derive a service name from a port variable (``API_PORT`` -> ``api``)."""
    name = var.lower()
    for suffix in ("_port", "port"):
        if name.endswith(suffix) and len(name) > len(suffix):
            name = name[: -len(suffix)]
            break
    return name.strip("_") or var.lower()


@dataclass(frozen=True)
class DiscoveryEvent:
    """A service announced that it is ready at ``url``."""

    service: str
    url: str


class ServiceDiscoveryParser:
    """Stateful line scanner for one slot's stack output.

    Attributes:
        services: Everything discovered so far, one entry per service.
    """

    def __init__(self, ports: Mapping[str, int] | None = None):
        """Initialize the parser.

        Args:
            ports: The slot's port assignments. A generic "Now listening on"
                announcement is attributed to the variable owning the URL's
                port; otherwise it is treated as the dashboard.
        """
        self._port_names = {
            port: service_name_for_port_var(var) for var, port in (ports or {}).items()
        }
        self._buffer = ""
        self.services: dict[str, str] = {}

    def feed(self, chunk: str | bytes) -> list[DiscoveryEvent]:
        """Consume a chunk of output and return events for completed lines."""
        if isinstance(chunk, bytes):
            chunk = chunk.decode("utf-8", errors="replace")

        self._buffer += chunk.replace("\r\n", "\n")
        *complete, self._buffer = self._buffer.split("\n")

        events: list[DiscoveryEvent] = []
        for line in complete:
            events.extend(self._match(line))
        return events

    def feed_line(self, line: str) -> list[DiscoveryEvent]:
        """Consume one already-delimited line."""
        return self.feed(line.rstrip("\r\n") + "\n")

    def flush(self) -> list[DiscoveryEvent]:
        """Treat any buffered partial line as complete (end of stream)."""
        line, self._buffer = self._buffer, ""
        return self._match(line) if line else []

    def _match(self, raw_line: str) -> list[DiscoveryEvent]:
        line = strip_control_sequences(raw_line)
        found: list[DiscoveryEvent] = []

        if m := LISTENING_RE.search(line):
            url = m.group(1)
            found.append(DiscoveryEvent(self._name_for_url(url), url))
        if m := LOGIN_RE.search(line):
            found.append(DiscoveryEvent(DASHBOARD_SERVICE, m.group(1)))
        for m in RESOURCE_RE.finditer(line):
            found.append(DiscoveryEvent(m.group(1), m.group(2)))

        for event in found:
            self.services[event.service] = event.url
        return found

    def _name_for_url(self, url: str) -> str:
        try:
            port = urlsplit(url).port
        except ValueError:
            port = None
        return self._port_names.get(port, DASHBOARD_SERVICE)

