"""Exception hierarchy for the slot orchestrator."""

from pathlib import Path


class OrchestratorError(Exception):
    """Base class for every error raised by the orchestrator."""


# Validation errors: raised before any external call is made.


class SlotNotFoundError(OrchestratorError):
    def __init__(self, name: str):
        super().__init__(f"slot '{name}' not found")
        self.name = name


class SlotAlreadyExistsError(OrchestratorError):
    def __init__(self, name: str):
        super().__init__(f"slot '{name}' already exists")
        self.name = name


class InvalidSlotNameError(OrchestratorError):
    def __init__(self, name: str):
        super().__init__(
            f"invalid slot name '{name}': use letters, digits, '_' or '-' "
            "(must start with a letter or digit, max 64 chars)"
        )
        self.name = name


class InvalidTransitionError(OrchestratorError):
    """Requested operation is not legal from the slot's current state."""

    def __init__(self, name: str, operation: str, current: str):
        super().__init__(f"cannot {operation} slot '{name}' while it is {current}")
        self.name = name
        self.operation = operation
        self.current = current


class ConfigError(OrchestratorError):
    """Project configuration is present but invalid."""


class ConfigNotFoundError(ConfigError):
    def __init__(self, path: Path):
        super().__init__(f"config file not found at {path}")
        self.path = path


# Resource exhaustion.


class PortAllocationError(OrchestratorError):
    """No free port left in the configured range."""


# External process failures.


class GitError(OrchestratorError):
    """A git command exited non-zero or could not be started."""


class SetupError(OrchestratorError):
    """A setup step for a new clone failed."""


class ProcessError(OrchestratorError):
    """The stack process could not be spawned or terminated."""


# Session layer.


class SessionError(OrchestratorError):
    """The terminal multiplexer rejected an operation after bounded retries."""


# State store.


class StateCorruptedError(OrchestratorError):
    """The durable state file exists but cannot be parsed."""

    def __init__(self, path: Path, reason: str):
        super().__init__(f"state file {path} is corrupt: {reason}")
        self.path = path
        self.reason = reason


# Blueprints.


class BlueprintNotFoundError(OrchestratorError):
    def __init__(self, name: str):
        super().__init__(f"blueprint '{name}' not found")
        self.name = name


class BlueprintAlreadyExistsError(OrchestratorError):
    def __init__(self, name: str):
        super().__init__(f"blueprint '{name}' already exists")
        self.name = name


class BlueprintValidationError(ConfigError):
    """A blueprint is malformed or cannot be applied."""
