"""Event recorder: persists raw event data under a deterministic path.

Every received event is written to ``<log_path>/<type>/<id>``. Uploading
and rotating the recorded files is handled outside this service.
"""

import logging
import os
from pathlib import Path
from typing import Union

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.ghbots.events.envelope import CloudEvent, EnvelopeError


logger = logging.getLogger(__name__)

DIR_MODE = 0o755
FILE_MODE = 0o600


class EventRecorder:
    """Writes event payloads to disk.

    Attributes:
        log_path: Root directory for recorded events.
    """

    def __init__(self, log_path: Union[str, Path]):
        self.log_path = Path(log_path)

    def path_for(self, event_type: str, event_id: str) -> Path:
        """Return the file an event is recorded to.

        Raises:
            ValueError: If the type or id would escape the log directory.
        """
        for part in (event_type, event_id):
            if not part or part in (".", "..") or "/" in part or os.sep in part:
                raise ValueError(f"invalid path component: {part!r}")
        return self.log_path / event_type / event_id

    def record(self, event_type: str, event_id: str, data: bytes) -> Path:
        """Persist ``data`` for an event, replacing any earlier copy."""
        path = self.path_for(event_type, event_id)
        path.parent.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)

        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
        with os.fdopen(fd, "wb") as f:
            f.write(data)

        size = path.stat().st_size
        logger.info(
            "Recorded event %s (%s), %d bytes",
            event_id,
            event_type,
            size,
            extra={"event_id": event_id, "event_type": event_type, "path": str(path), "size": size},
        )
        return path


def create_recorder_app(recorder: EventRecorder) -> FastAPI:
    """Build the HTTP app that records every CloudEvent it receives."""
    app = FastAPI(
        title="ghbots recorder",
        description="Records CloudEvents to disk",
        version="1.0.0",
    )

    @app.post("/")
    async def receive(request: Request):
        body = await request.body()
        try:
            event = CloudEvent.from_http(request.headers, body)
        except EnvelopeError as e:
            logger.warning("Rejected invalid CloudEvent: %s", e)
            return JSONResponse(
                status_code=400,
                content={"status": "rejected", "message": str(e)},
            )

        try:
            recorder.record(event.type, event.id, event.data)
        except ValueError as e:
            return JSONResponse(
                status_code=400,
                content={"status": "rejected", "id": event.id, "message": str(e)},
            )
        except OSError as e:
            logger.error(
                "Failed to record event %s: %s",
                event.id,
                e,
                extra={"event_id": event.id, "event_type": event.type},
            )
            return JSONResponse(
                status_code=500,
                content={"status": "error", "id": event.id, "message": str(e)},
            )
        return {"status": "recorded", "id": event.id}

    @app.get("/health")
    async def health():
        """Liveness probe endpoint."""
        return {"status": "healthy"}

    return app
