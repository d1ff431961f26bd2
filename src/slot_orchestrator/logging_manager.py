"""Structured logging manager for the slot orchestrator.

Provides the orchestrator log, an audit trail of lifecycle events, per-slot
logs, and live fan-out of stack output to observers such as a dashboard.
"""

import asyncio
import json
import logging
import logging.handlers
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, TextIO

ROOT_LOGGER = "slot_orchestrator"
AUDIT_LOGGER = f"{ROOT_LOGGER}.audit"

# LogRecord attributes that are not user-supplied extras.
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "exc_info",
        "exc_text",
        "stack_info",
        "asctime",
        "taskName",
    }
)


def _extras(record: logging.LogRecord) -> dict[str, Any]:
    extras = {}
    for key, value in record.__dict__.items():
        if key in _RESERVED_ATTRS:
            continue
        try:
            json.dumps(value)  # Ensure serializable
            extras[key] = value
        except (TypeError, ValueError):
            extras[key] = str(value)
    return extras


class JsonFormatter(logging.Formatter):
    """One JSON object per record, extras included."""

    def __init__(self, message_key: str = "message"):
        super().__init__()
        self.message_key = message_key

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            self.message_key: record.getMessage(),
        }
        if self.message_key == "message":
            log_obj.update(
                {"module": record.module, "function": record.funcName, "line": record.lineno}
            )
        log_obj.update(_extras(record))
        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_obj)


class SlotLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds slot context to all log messages."""

    def process(self, msg, kwargs):
        extra = kwargs.get("extra", {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        return msg, kwargs


class LogBroadcaster:
    """Fans stack output lines out to live observers.

    Each subscriber gets its own bounded queue. Lines are delivered in order
    per slot; when a subscriber falls behind, its oldest queued line is dropped.
    """

    def __init__(self, max_queue: int = 1000):
        self.max_queue = max_queue
        self._subscribers: set[asyncio.Queue] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def publish(self, slot_name: str, line: str, source: str = "stack") -> None:
        if not self._subscribers:
            return
        event = {
            "slot": slot_name,
            "source": source,
            "line": line,
            "timestamp": datetime.now().isoformat(),
        }
        for queue in self._subscribers:
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(event)


class LoggingManager:
    """Manages structured logging for the orchestrator and its slots."""

    def __init__(self, log_dir: str | Path = "/tmp/slot_orchestrator_logs", log_level: str = "INFO"):
        """Initialize logging manager.

        Args:
            log_dir: Base directory for all logs
            log_level: Default console log level
        """
        self.log_dir = Path(log_dir)
        self.log_level = getattr(logging, log_level.upper())

        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.slots_dir = self.log_dir / "slots"
        self.slots_dir.mkdir(exist_ok=True)
        self.audit_dir = self.log_dir / "audit"
        self.audit_dir.mkdir(exist_ok=True)

        self._slot_loggers: dict[str, SlotLoggerAdapter] = {}
        self._stack_outputs: dict[str, TextIO] = {}
        self.broadcaster = LogBroadcaster()

        self._setup_orchestrator_logger()
        self._setup_audit_logger()

    def _setup_orchestrator_logger(self):
        """Console (human readable) and rotating JSON file handlers."""
        logger = logging.getLogger(ROOT_LOGGER)
        logger.setLevel(logging.DEBUG)
        logger.propagate = False
        logger.handlers.clear()

        console_handler = logging.StreamHandler()
        console_handler.setLevel(self.log_level)
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(console_handler)

        file_handler = logging.handlers.RotatingFileHandler(
            self.log_dir / "orchestrator.log",
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JsonFormatter())
        logger.addHandler(file_handler)

        self.orchestrator_logger = logger

    def _setup_audit_logger(self):
        """Audit trail in JSON Lines format, rotated daily."""
        logger = logging.getLogger(AUDIT_LOGGER)
        logger.setLevel(logging.INFO)
        logger.propagate = False
        logger.handlers.clear()

        audit_file = self.audit_dir / f"audit_{datetime.now().strftime('%Y%m%d')}.jsonl"
        file_handler = logging.handlers.TimedRotatingFileHandler(
            audit_file,
            when="midnight",
            interval=1,
            backupCount=30,
        )
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(JsonFormatter(message_key="event"))
        logger.addHandler(file_handler)

        self.audit_logger = logger

    def get_slot_logger(self, slot_name: str) -> SlotLoggerAdapter:
        """Get or create the lifecycle logger for a slot."""
        if slot_name in self._slot_loggers:
            return self._slot_loggers[slot_name]

        slot_dir = self.slots_dir / slot_name
        slot_dir.mkdir(parents=True, exist_ok=True)

        logger = logging.getLogger(f"slot.{slot_name}")
        logger.setLevel(logging.DEBUG)
        logger.propagate = False
        logger.handlers.clear()

        handler = logging.handlers.RotatingFileHandler(
            slot_dir / "slot.log",
            maxBytes=5 * 1024 * 1024,  # 5MB
            backupCount=3,
        )
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(handler)

        adapter = SlotLoggerAdapter(logger, {"slot_name": slot_name})
        self._slot_loggers[slot_name] = adapter
        return adapter

    def log_audit_event(
        self,
        event_type: str,
        slot_name: str | None = None,
        details: dict[str, Any] | None = None,
        **kwargs,
    ):
        """Log an audit event.

        Args:
            event_type: Type of event (slot_create, slot_stop, agent_spawn, ...)
            slot_name: Related slot if applicable
            details: Additional event details
            **kwargs: Additional fields to include
        """
        extra = {
            "event_type": event_type,
            "slot_name": slot_name,
            "details": details or {},
        }
        extra.update(kwargs)
        self.audit_logger.info(event_type, extra=extra)

    def log_stack_output(self, slot_name: str, line: str):
        """Append a raw stack output line to the slot's output log and broadcast it."""
        stream = self._stack_outputs.get(slot_name)
        if stream is None:
            slot_dir = self.slots_dir / slot_name
            slot_dir.mkdir(parents=True, exist_ok=True)
            stream = (slot_dir / "stack_output.log").open("a", encoding="utf-8")
            self._stack_outputs[slot_name] = stream
        stream.write(line + "\n")
        stream.flush()
        self.broadcaster.publish(slot_name, line)

    def close_stack_output(self, slot_name: str):
        stream = self._stack_outputs.pop(slot_name, None)
        if stream is not None:
            stream.close()

    def get_slot_logs(self, slot_name: str, log_type: str = "slot", tail: int = 100) -> list[str]:
        """Retrieve recent log lines for a slot.

        Args:
            slot_name: Slot name
            log_type: "slot" (lifecycle log) or "stack_output" (raw stack output)
            tail: Number of recent lines to return (0 for all)

        Returns:
            List of log lines
        """
        log_files = {"slot": "slot.log", "stack_output": "stack_output.log"}
        log_file = self.slots_dir / slot_name / log_files.get(log_type, "slot.log")
        if not log_file.exists():
            return []

        try:
            with log_file.open("r", encoding="utf-8", errors="replace") as f:
                lines = f.readlines()
                return lines[-tail:] if tail else lines
        except OSError as e:
            self.orchestrator_logger.error(f"Failed to read logs for {slot_name}: {e}")
            return []

    def cleanup_slot_logs(self, slot_name: str):
        """Remove logs of a destroyed slot."""
        self.close_stack_output(slot_name)
        adapter = self._slot_loggers.pop(slot_name, None)
        if adapter is not None:
            for handler in list(adapter.logger.handlers):
                handler.close()
                adapter.logger.removeHandler(handler)

        slot_dir = self.slots_dir / slot_name
        if slot_dir.exists():
            try:
                shutil.rmtree(slot_dir)
                self.orchestrator_logger.info(f"Cleaned up logs for slot {slot_name}")
            except OSError as e:
                self.orchestrator_logger.error(f"Failed to cleanup logs for {slot_name}: {e}")

    def close(self):
        for slot_name in list(self._stack_outputs):
            self.close_stack_output(slot_name)
