"""HTTP and WebSocket command surface for the slot orchestrator."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import uvicorn
from fastapi import FastAPI, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .blueprints import Blueprint, BlueprintSlotOutcome
from .errors import (
    BlueprintAlreadyExistsError,
    BlueprintNotFoundError,
    ConfigError,
    GitError,
    InvalidSlotNameError,
    InvalidTransitionError,
    OrchestratorError,
    PortAllocationError,
    ProcessError,
    SessionError,
    SetupError,
    SlotAlreadyExistsError,
    SlotNotFoundError,
)
from .models import LIVE_STATUSES, AgentStatus, OrchestratorConfig, Slot
from .slot_manager import SlotManager

logger = logging.getLogger(__name__)

# Most specific first.
ERROR_STATUS_CODES: list[tuple[type[OrchestratorError], int]] = [
    (SlotNotFoundError, 404),
    (SlotAlreadyExistsError, 409),
    (BlueprintNotFoundError, 404),
    (BlueprintAlreadyExistsError, 409),
    (InvalidTransitionError, 409),
    (InvalidSlotNameError, 400),
    (ConfigError, 400),
    (PortAllocationError, 503),
    (GitError, 502),
    (ProcessError, 502),
    (SetupError, 502),
    (SessionError, 502),
]


def status_code_for(error: OrchestratorError) -> int:
    for error_type, code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return code
    return 500


def slot_payload(slot: Slot) -> dict[str, Any]:
    """API representation: the state-file fields plus runtime timestamps."""
    data = slot.to_state_dict()
    if slot.stack_started_at:
        data["stackStartedAt"] = slot.stack_started_at.isoformat()
    if slot.agent_started_at:
        data["agentStartedAt"] = slot.agent_started_at.isoformat()
    return data


class CreateSlotRequest(BaseModel):
    """Body of ``POST /slots``."""

    name: str
    branch: str
    source: str = Field(description="Repository path or URL to clone")
    prompt: str | None = Field(default=None, description="Spawn the agent with this prompt")


class SpawnAgentRequest(BaseModel):
    """Body of ``POST /slots/{name}/agent``."""

    prompt: str | None = None
    allowed_tools: str | None = None
    max_turns: int | None = Field(default=None, ge=1)


class BlueprintAgentModel(BaseModel):
    prompt_template: str | None = Field(
        default=None, description="Agent prompt; {slot_name} and {branch} are filled in"
    )
    allowed_tools: str | None = None
    max_turns: int | None = Field(default=None, ge=1)


class BlueprintDefaultsModel(BaseModel):
    source: str | None = None
    auto_start: bool | None = None
    auto_spawn_agent: bool | None = None
    agent: BlueprintAgentModel | None = None


class BlueprintSlotModel(BaseModel):
    name: str
    branch: str | None = None
    source: str | None = None
    auto_start: bool | None = None
    auto_spawn_agent: bool | None = None
    agent: BlueprintAgentModel | None = None


class SaveBlueprintRequest(BaseModel):
    """Body of ``POST /blueprints``."""

    name: str
    description: str | None = None
    defaults: BlueprintDefaultsModel | None = None
    slots: list[BlueprintSlotModel]


class SnapshotBlueprintRequest(BaseModel):
    """Body of ``POST /blueprints/snapshot``."""

    name: str
    description: str | None = None
    slots: list[str] | None = Field(default=None, description="Slots to capture (default: all)")


def outcome_payload(outcome: BlueprintSlotOutcome) -> dict[str, Any]:
    return {
        "name": outcome.name,
        "ok": outcome.ok,
        "slot": slot_payload(outcome.slot) if outcome.slot else None,
        "error": outcome.error,
    }


class SlotOrchestratorServer:
    """FastAPI server exposing slot lifecycle operations."""

    def __init__(self, config: OrchestratorConfig, manager: SlotManager | None = None):
        """Initialize the server.

        Args:
            config: Orchestrator configuration
            manager: Slot manager to serve (built from ``config`` if omitted)
        """
        self.config = config
        self.manager = manager or SlotManager(config)

        self.app = FastAPI(
            title="Slot Orchestrator",
            description="Run isolated development slots side by side",
            version=__version__,
            lifespan=self._lifespan,
        )
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @self.app.exception_handler(OrchestratorError)
        async def orchestrator_error_handler(request, exc: OrchestratorError):
            code = status_code_for(exc)
            if code >= 500:
                logger.error(f"{request.method} {request.url.path} failed: {exc}")
            return JSONResponse(
                status_code=code,
                content={"error": type(exc).__name__, "detail": str(exc)},
            )

        self._setup_routes()
        logger.info("Slot Orchestrator Server initialized")

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        restored = await self.manager.restore()
        logger.info(f"Serving {len(restored)} restored slots")
        self.manager.start_monitoring()
        try:
            yield
        finally:
            await self.manager.shutdown()

    def _setup_routes(self):
        """Register HTTP and WebSocket routes."""
        manager = self.manager

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            slots = await manager.list_slots()
            return {
                "status": "healthy",
                "timestamp": datetime.now(UTC).isoformat(),
                "version": __version__,
                "slots": {
                    "total": len(slots),
                    "running": len([s for s in slots if s.status in LIVE_STATUSES]),
                    "agents_active": len(
                        [s for s in slots if s.agent_status is AgentStatus.ACTIVE]
                    ),
                },
            }

        @self.app.get("/slots")
        async def list_slots():
            return {"slots": [slot_payload(s) for s in await manager.list_slots()]}

        @self.app.get("/slots/{name}")
        async def get_slot(name: str):
            return slot_payload(await manager.get_slot(name))

        @self.app.post("/slots", status_code=201)
        async def create_slot(request: CreateSlotRequest):
            slot = await manager.create(
                request.name, request.branch, request.source, prompt=request.prompt
            )
            return slot_payload(slot)

        @self.app.post("/slots/{name}/start")
        async def start_slot(name: str):
            return slot_payload(await manager.start(name))

        @self.app.post("/slots/{name}/stop")
        async def stop_slot(name: str):
            return slot_payload(await manager.stop(name))

        @self.app.post("/slots/{name}/agent")
        async def spawn_agent(name: str, request: SpawnAgentRequest | None = None):
            request = request or SpawnAgentRequest()
            slot = await manager.spawn_agent(
                name,
                prompt=request.prompt,
                allowed_tools=request.allowed_tools,
                max_turns=request.max_turns,
            )
            return slot_payload(slot)

        @self.app.post("/slots/{name}/rebase")
        async def rebase_slot(name: str):
            return slot_payload(await manager.rebase(name))

        @self.app.post("/slots/{name}/push")
        async def push_slot(name: str):
            return slot_payload(await manager.push(name))

        @self.app.delete("/slots/{name}")
        async def destroy_slot(name: str, purge_logs: bool = False):
            await manager.destroy(name, purge_logs=purge_logs)
            return {"name": name, "status": "destroyed"}

        @self.app.get("/slots/{name}/logs")
        async def get_slot_logs(
            name: str,
            log_type: str = Query("slot", pattern="^(slot|stack_output)$"),
            tail: int = Query(100, ge=0),
        ):
            await manager.get_slot(name)
            lines = manager.logging_manager.get_slot_logs(name, log_type=log_type, tail=tail)
            return {"name": name, "log_type": log_type, "lines": [line.rstrip("\n") for line in lines]}

        @self.app.get("/blueprints")
        async def list_blueprints():
            return {"blueprints": manager.blueprints.list_names()}

        @self.app.get("/blueprints/{name}")
        async def get_blueprint(name: str):
            return (await manager.blueprints.load(name)).to_dict()

        @self.app.post("/blueprints", status_code=201)
        async def save_blueprint(request: SaveBlueprintRequest, overwrite: bool = False):
            blueprint = Blueprint.from_dict(request.model_dump(exclude_none=True))
            if overwrite:
                await manager.blueprints.overwrite(blueprint)
            else:
                await manager.blueprints.save(blueprint)
            return blueprint.to_dict()

        @self.app.post("/blueprints/snapshot", status_code=201)
        async def snapshot_blueprint(request: SnapshotBlueprintRequest, overwrite: bool = False):
            await manager.snapshot_blueprint(
                request.name,
                description=request.description,
                slot_names=request.slots,
                overwrite=overwrite,
            )
            return (await manager.blueprints.load(request.name)).to_dict()

        @self.app.post("/blueprints/{name}/apply")
        async def apply_blueprint(name: str):
            outcomes = await manager.apply_blueprint(name)
            return {
                "blueprint": name,
                "slots": [outcome_payload(o) for o in outcomes],
                "failed": [o.name for o in outcomes if not o.ok],
            }

        @self.app.delete("/blueprints/{name}")
        async def delete_blueprint(name: str):
            await manager.blueprints.delete(name)
            return {"name": name, "status": "deleted"}

        @self.app.websocket("/ws/logs")
        async def logs_websocket(websocket: WebSocket, slot: str | None = None):
            """Live stack output of every slot (or only ``slot``)."""
            await websocket.accept()
            queue = manager.subscribe_logs()
            logger.info("WebSocket client connected to /ws/logs")

            async def forward():
                while True:
                    event = await queue.get()
                    if slot is not None and event["slot"] != slot:
                        continue
                    await websocket.send_json({"type": "stack_output", "data": event})

            sender = asyncio.create_task(forward())
            try:
                # Client messages are ignored; receiving detects the disconnect.
                while True:
                    await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("WebSocket client disconnected from /ws/logs")
            finally:
                sender.cancel()
                await asyncio.gather(sender, return_exceptions=True)
                manager.unsubscribe_logs(queue)

    async def start_server(self):
        """Run the server until interrupted."""
        logger.info(
            f"Starting Slot Orchestrator on {self.config.server_host}:{self.config.server_port}"
        )
        config = uvicorn.Config(
            self.app,
            host=self.config.server_host,
            port=self.config.server_port,
            log_level=self.config.log_level.lower(),
        )
        server = uvicorn.Server(config)
        await server.serve()


async def main():
    """Main entry point for the server."""
    config = OrchestratorConfig.from_env()
    server = SlotOrchestratorServer(config)
    await server.start_server()


if __name__ == "__main__":
    asyncio.run(main())
