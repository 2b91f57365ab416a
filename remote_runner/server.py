import json
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterator, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from remote_runner import __version__
from remote_runner.config import config
from remote_runner.errors import (
    AuthenticationFailure, ConnectError, ConnectTimeout, DuplicateRequest, MalformedInput, RunnerError
)
from remote_runner.guard import ExecutionGuard
from remote_runner.models import OutputEvent, RemoteCredential
from remote_runner.runner import Orchestrator
from remote_runner.sessions import SessionStore
from remote_runner.utils import log_error

router = APIRouter(prefix="/api", tags=["runner"])


# ============ Request Models ============

class AuthRequest(BaseModel):
    host: Optional[str] = None
    identity: Optional[str] = None
    secret: Optional[str] = None
    port: Optional[int] = None


class SessionTokenRequest(BaseModel):
    session_token: Optional[str] = None


class ModelRunRequest(BaseModel):
    host: Optional[str] = None
    identity: Optional[str] = None
    secret: Optional[str] = None
    descriptor: Optional[Union[Dict[str, Any], str]] = None
    descriptor_name: Optional[str] = None
    target_directory: Optional[str] = None
    run_name: Optional[str] = None
    session_token: Optional[str] = None
    port: Optional[int] = None


# ============ Helpers ============

def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def error_response(exc: RunnerError, status_code: int) -> JSONResponse:
    return JSONResponse({"error": True, "kind": exc.kind, "message": exc.message}, status_code=status_code)


def connect_error_status(exc: ConnectError) -> int:
    if isinstance(exc, AuthenticationFailure):
        return 401
    if isinstance(exc, ConnectTimeout):
        return 504
    return 502


def ndjson_lines(events: Iterator[OutputEvent]) -> Iterator[str]:
    for event in events:
        yield json.dumps(event.to_payload(), ensure_ascii=False) + "\n"


# ============ Endpoints ============

@router.get("/health")
def health(orchestrator: Orchestrator = Depends(get_orchestrator)):
    return {
        "status": "ok",
        "active_locks": len(orchestrator.guard),
        "sessions": len(orchestrator.sessions),
        "draining": orchestrator.active_drains,
    }


@router.post("/auth")
def authenticate(body: AuthRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Check credentials against the remote host and hand out a session token."""
    credential = RemoteCredential(host=body.host or "", identity=body.identity or "", secret=body.secret or "")
    if body.port:
        credential.port = body.port
    try:
        record = orchestrator.authenticate(credential)
    except MalformedInput as exc:
        return error_response(exc, 400)
    except ConnectError as exc:
        return error_response(exc, connect_error_status(exc))
    return {
        "success": True,
        "session_token": record.token,
        "expires_at": int(record.expires_at * 1000),
    }


@router.post("/session")
def validate_session(body: SessionTokenRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    if not body.session_token:
        return JSONResponse({"error": True, "message": "Session token required"}, status_code=400)
    record = orchestrator.sessions.validate(body.session_token)
    if record is None:
        return JSONResponse({"error": True, "message": "Invalid or expired session token"}, status_code=401)
    return {
        "success": True,
        "session": {
            "host": record.host,
            "identity": record.identity,
            "expires_at": int(record.expires_at * 1000),
            "is_authenticated": True,
        },
    }


@router.delete("/session")
def revoke_session(
    body: Optional[SessionTokenRequest] = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    orchestrator.sessions.revoke(body.session_token if body else None)
    return {"success": True}


@router.post("/model-run")
def model_run(body: ModelRunRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Run the setup script remotely and stream its output as newline-delimited JSON."""
    try:
        request = orchestrator.build_request(
            host=body.host,
            identity=body.identity,
            secret=body.secret,
            descriptor=body.descriptor,
            target_directory=body.target_directory,
            descriptor_name=body.descriptor_name,
            run_name=body.run_name,
            session_token=body.session_token,
            port=body.port,
        )
        events = orchestrator.submit(request)
    except DuplicateRequest as exc:
        retry_after = max(1, int(orchestrator.guard.ttl - exc.age + 0.999))
        return JSONResponse(exc.to_payload(), status_code=429, headers={"Retry-After": str(retry_after)})
    except MalformedInput as exc:
        return error_response(exc, 400)

    log_error(f"run accepted: {request.logical_run_key}")
    return StreamingResponse(
        ndjson_lines(events),
        media_type="application/x-ndjson",
        headers={"Cache-Control": "no-cache"},
    )


# ============ App factory ============

def build_orchestrator() -> Orchestrator:
    return Orchestrator(
        guard=ExecutionGuard(),
        sessions=SessionStore(),
        runs_dir=config.CACHE_DIRS.get("runs_dir", ""),
        project_tag=config.PROJECT_TAG,
    )


def create_app(orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    orchestrator = orchestrator or build_orchestrator()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        orchestrator.sessions.start_sweeper()
        yield
        orchestrator.close()

    app = FastAPI(
        title="Remote Runner",
        version=__version__,
        description="Triggers remote setup scripts over SSH and streams their output",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.include_router(router)
    return app
