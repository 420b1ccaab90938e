"""FastAPI dependencies."""

from typing import Annotated

from fastapi import Depends, Request

from campaign_engine.services.engine import Engine, build_engine


def get_engine(request: Request) -> Engine:
    """Engine built at startup, or a fresh one when the lifespan did not run."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        engine = build_engine()
        request.app.state.engine = engine
    return engine


EngineDep = Annotated[Engine, Depends(get_engine)]
