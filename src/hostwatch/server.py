"""hostwatch - FastAPI application streaming host metrics over WebSocket."""

import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import psutil
import uvicorn
from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from hostwatch.adapters import ProcessController
from hostwatch.assembler import SnapshotAssembler
from hostwatch.config import Settings, configure_logging
from hostwatch.errors import SourceUnavailable
from hostwatch.persistence import HistorySink, SqliteHistorySink, persist_in_background
from hostwatch.session import ConnectionSession

logger = logging.getLogger(__name__)


class ClientMessageType(str, Enum):
    """Messages a viewer may send on the stream."""

    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"


class ClientMessage(BaseModel):
    """Inbound WebSocket message."""

    model_config = ConfigDict(populate_by_name=True)

    type: ClientMessageType
    server_id: str | None = Field(None, alias="serverId", max_length=256)


class ReniceRequest(BaseModel):
    """Body of the renice action."""

    nice: int = Field(..., ge=-20, le=19)


def error_event(code: str, message: str) -> dict[str, Any]:
    return {"type": "error", "data": {"code": code, "message": message}}


def parse_pid(raw: str) -> int:
    try:
        pid = int(raw)
    except ValueError:
        pid = 0
    if pid <= 0:
        raise HTTPException(status_code=400, detail="invalid pid")
    return pid


def process_action_error(exc: psutil.Error) -> HTTPException:
    """Map a psutil failure of a process action onto an HTTP error."""
    # ZombieProcess is a NoSuchProcess
    if isinstance(exc, psutil.NoSuchProcess):
        return HTTPException(status_code=404, detail="no such process")
    if isinstance(exc, psutil.AccessDenied):
        return HTTPException(status_code=403, detail="permission denied")
    return HTTPException(status_code=500, detail="process action failed")


def dispatch(session: ConnectionSession, raw: str) -> dict[str, Any] | None:
    """
    Apply one inbound message to ``session``.

    Returns an error event to send back, or None when the message was applied.
    """
    try:
        message = ClientMessage.model_validate(json.loads(raw))
    except json.JSONDecodeError:
        return error_event("INVALID_JSON", "Invalid JSON format")
    except ValidationError as exc:
        return error_event("INVALID_MESSAGE", f"Unsupported message: {exc.errors()[0]['msg']}")

    if message.type is ClientMessageType.SUBSCRIBE:
        session.subscribe(message.server_id)
    else:
        session.unsubscribe()
    return None


def create_app(
    settings: Settings | None = None,
    assembler: SnapshotAssembler | None = None,
    sink: HistorySink | None = None,
    controller: ProcessController | None = None,
) -> FastAPI:
    """
    Build the hostwatch application.

    Args:
        settings: Runtime settings. Defaults to ``Settings.from_env()``.
        assembler: Snapshot source. Defaults to one built from ``settings``.
        sink: History sink. Defaults to a SQLite sink when ``history_db`` is
            set, otherwise persistence is disabled.
        controller: Target of the kill/renice process actions.
    """
    settings = settings or Settings.from_env()
    assembler = assembler or SnapshotAssembler.from_settings(settings)
    controller = controller or ProcessController()
    if sink is None and settings.history_db:
        sink = SqliteHistorySink(settings.history_db)

    app = FastAPI(title="hostwatch")
    app.state.settings = settings
    app.state.assembler = assembler
    app.state.sink = sink
    app.state.pending_writes = set()

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/api/v1/servers/{server_id}/metrics/current")
    async def current_metrics(
        server_id: str,
        include_processes: bool = Query(False, alias="includeProcesses"),
        limit: int = Query(settings.process_limit, ge=1, le=1000),
    ) -> dict[str, Any]:
        """One-shot snapshot; processes only when ``includeProcesses`` is set."""
        try:
            snapshot = await assembler.assemble(
                server_id,
                include_processes=include_processes,
                process_limit=limit,
            )
        except SourceUnavailable as exc:
            logger.warning("Current metrics for %s failed: %s", server_id, exc)
            raise HTTPException(status_code=503, detail="failed to collect metrics") from exc

        persist_in_background(sink, snapshot, app.state.pending_writes)
        return snapshot.to_dict()

    @app.get("/api/v1/servers/{server_id}/processes")
    async def processes(
        server_id: str,
        limit: int = Query(settings.process_limit, ge=1, le=1000),
    ) -> dict[str, Any]:
        try:
            found = await assembler.list_processes(limit)
        except Exception as exc:
            logger.warning("Process listing for %s failed: %s", server_id, exc)
            raise HTTPException(status_code=503, detail="failed to list processes") from exc
        return {"serverId": server_id, "processes": [proc.to_dict() for proc in found]}

    @app.post("/api/v1/servers/{server_id}/processes/{pid}/kill")
    async def kill_process(server_id: str, pid: str) -> dict[str, Any]:
        target = parse_pid(pid)
        try:
            await controller.terminate(target)
        except psutil.Error as exc:
            logger.warning("Kill of %d on %s failed: %s", target, server_id, exc)
            raise process_action_error(exc) from exc
        logger.info("Sent SIGTERM to %d on %s", target, server_id)
        return {"ok": True}

    @app.post("/api/v1/servers/{server_id}/processes/{pid}/renice")
    async def renice_process(server_id: str, pid: str, request: ReniceRequest) -> dict[str, Any]:
        target = parse_pid(pid)
        try:
            nice = await controller.renice(target, request.nice)
        except psutil.Error as exc:
            logger.warning("Renice of %d on %s failed: %s", target, server_id, exc)
            raise process_action_error(exc) from exc
        logger.info("Reniced %d on %s to %d", target, server_id, nice)
        return {"ok": True, "nice": nice}

    @app.websocket("/ws")
    async def metrics_stream(websocket: WebSocket) -> None:
        await websocket.accept()
        connection_id = uuid.uuid4().hex[:12]

        async def emit(event: str, payload: dict[str, Any]) -> None:
            await websocket.send_json({"type": event, "data": payload})

        session = ConnectionSession(
            connection_id,
            assembler,
            emit,
            interval=settings.poll_interval,
            process_limit=settings.process_limit,
            sink=sink,
        )
        logger.info("Client connected: %s", connection_id)

        try:
            while True:
                raw = await websocket.receive_text()
                error = dispatch(session, raw)
                if error is not None:
                    logger.warning("Bad message from %s: %s", connection_id, error["data"]["code"])
                    await websocket.send_json(error)
        except WebSocketDisconnect:
            logger.info("Client disconnected: %s", connection_id)
        finally:
            session.close()

    return app


def main() -> None:
    """Entry point for the hostwatch server."""
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
