"""
FastAPI dependencies for the topicflow web API.

Provides dependency injection for the pipeline orchestrator.
"""

from fastapi import HTTPException, Request, status

from topicflow.web.services.orchestrator_service import PipelineOrchestrator


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    """
    Orchestrator attached to the application by its lifespan.

    Tests override this dependency with an orchestrator bound to an
    in-memory database.

    Raises:
        HTTPException: 503 if the orchestrator has not been started
    """
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="The pipeline is starting up. Please try again shortly.",
        )
    return orchestrator


__all__ = ["get_orchestrator"]
