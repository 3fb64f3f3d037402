from __future__ import annotations

from fastapi import HTTPException, Request, status

from .orchestration.engine import TaskGraphEngine


def get_engine(request: Request) -> TaskGraphEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Engine not initialised")
    return engine
