"""API routes for the Stream Archive service."""

from datetime import datetime

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

router = APIRouter()


class RecordingStatus(BaseModel):
    """Active recording response."""

    name: str
    destination: str
    state: str
    started_at: datetime | None = None
    progress_seconds: float = 0.0


class TrackedFileStatus(BaseModel):
    """Tracked segment response."""

    path: str
    storage_duration: int
    creation_time: datetime
    age_seconds: float
    expires_in_seconds: float


@router.get("/recordings")
async def get_recordings(request: Request) -> list[RecordingStatus]:
    """Get all active recordings."""
    archiver = request.app.state.archiver
    return [
        RecordingStatus(
            name=instance.name,
            destination=instance.destination,
            state=instance.state.value,
            started_at=instance.started_at,
            progress_seconds=instance.progress_seconds,
        )
        for instance in archiver.recorder.instances
    ]


@router.post("/recordings/{name}/split")
async def split_recording(name: str, request: Request):
    """Close the current segment of a stream and start the next one."""
    archiver = request.app.state.archiver
    if not await archiver.split(name):
        raise HTTPException(status_code=404, detail="Recording not found")
    return {"status": "splitting", "name": name}


@router.get("/files")
async def get_files(request: Request) -> list[TrackedFileStatus]:
    """Get all segments waiting for removal."""
    retention = request.app.state.archiver.retention
    now = retention.clock()
    return [
        TrackedFileStatus(
            path=tracked.path,
            storage_duration=tracked.storage_duration,
            creation_time=datetime.fromtimestamp(tracked.creation_time),
            age_seconds=tracked.age(now),
            expires_in_seconds=max(0.0, tracked.storage_duration - tracked.age(now)),
        )
        for tracked in retention.files
    ]


@router.post("/rotate")
async def rotate(request: Request):
    """Remove expired segments now."""
    removed = await request.app.state.archiver.rotate()
    return {"removed": removed}
