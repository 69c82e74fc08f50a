"""REST API routes for SendOver."""

import logging
import os
from urllib.parse import quote

from fastapi import APIRouter, HTTPException, Response
from pydantic import BaseModel

from session.errors import SessionError, TransferBusy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# Injected by main.py at startup
_session = None


def init_routes(session) -> None:
    """Inject the peer session into the routes module."""
    global _session
    _session = session


def _raise_for(error: SessionError) -> None:
    if isinstance(error, TransferBusy):
        raise HTTPException(status_code=409, detail=str(error))
    raise HTTPException(status_code=400, detail=str(error))


# --- Session ---

@router.get("/session")
async def get_session():
    """Connection state, code, transfer progress, latency and the current notice."""
    return _session.snapshot().model_dump()


@router.post("/session/restart")
async def restart_session():
    """Leave the error state and register a fresh code."""
    try:
        await _session.restart()
    except SessionError as e:
        _raise_for(e)
    return _session.snapshot().model_dump()


class ConnectBody(BaseModel):
    code: str


@router.post("/connect")
async def connect(body: ConnectBody):
    """Connect to the peer holding the given 6-digit code."""
    try:
        connected = await _session.connect(body.code)
    except SessionError as e:
        _raise_for(e)
    return {"started": connected, "session": _session.snapshot().model_dump()}


@router.post("/disconnect")
async def disconnect():
    return {"disconnected": _session.disconnect()}


# --- Transfers ---

class CreateTransferBody(BaseModel):
    file_paths: list[str]


@router.post("/transfers")
async def create_transfer(body: CreateTransferBody):
    """Offer files to the connected peer using absolute file paths.

    Several files are bundled into one zip before the offer is made.
    """
    valid_paths = []
    for path in body.file_paths:
        if os.path.isfile(path):
            valid_paths.append(path)
        else:
            logger.warning(f"Skipping invalid file path: {path}")

    if not valid_paths:
        raise HTTPException(status_code=400, detail="No valid files selected")

    snapshot = _session.snapshot()
    if snapshot.connection_state.value != "connected":
        raise HTTPException(status_code=400, detail="Not connected")
    if snapshot.transfer.is_active:
        raise HTTPException(status_code=409, detail="Another transfer is in progress")

    _session.start_offer(valid_paths)
    return {"message": f"Offering {len(valid_paths)} file(s)"}


@router.post("/transfers/accept")
async def accept_transfer():
    if not _session.accept():
        raise HTTPException(status_code=409, detail="No incoming transfer to accept")
    return {"status": "accepted"}


@router.post("/transfers/reject")
async def reject_transfer():
    if not _session.reject():
        raise HTTPException(status_code=409, detail="No incoming transfer to reject")
    return {"status": "rejected"}


@router.post("/transfers/reset")
async def reset_transfer():
    try:
        _session.reset()
    except SessionError as e:
        _raise_for(e)
    return {"status": "idle"}


@router.get("/transfers/download")
async def download_transfer():
    """Stream the received file back with its original name."""
    artifact = _session.materialize_download()
    if artifact is None:
        raise HTTPException(status_code=404, detail="No completed download")
    return Response(
        content=artifact.data,
        media_type=artifact.mime_type or "application/octet-stream",
        headers={
            "Content-Disposition": f"attachment; filename*=UTF-8''{quote(artifact.file_name)}"
        },
    )
