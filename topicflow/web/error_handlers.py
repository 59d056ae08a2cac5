"""
Custom error handlers for the topicflow web API.

Provides operator-friendly error messages and prevents technical details
from leaking to dashboard clients.
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import logging


logger = logging.getLogger(__name__)

# Operator-friendly error messages (don't expose technical details)
ERROR_MESSAGES = {
    # Topic service errors
    "topic_not_found": "That topic doesn't exist.",
    "topic_archived": "This topic is archived. Restore it before changing its settings.",
    "topic_validation": "Please check the topic settings and try again.",
    "mode_unknown": "Unknown automation mode. Use manual, auto_gather, auto_simplify, auto_illustrate or holiday.",
    "threshold_range": "Quality threshold must be between 0 and 100.",
    # Source health errors
    "source_not_found": "That source doesn't exist.",
    "force_test_failed": "The source test could not be run. Counters were left unchanged.",
    "persistence_failure": "The result could not be saved. Counters were left unchanged.",
    # Duplicate errors
    "duplicate_not_found": "That duplicate record doesn't exist.",
    "duplicate_reviewed": "That duplicate has already been reviewed.",
    "scan_running": "A duplicate scan is already running for this topic.",
    # Pipeline errors
    "item_not_found": "That item or story doesn't exist.",
    "item_state": "That item can't take this action in its current state.",
    "story_published": "That story is already published and can't be changed.",
    "generation_unavailable": "Content generation is not configured.",
    # Generic errors
    "server_error": "Something went wrong on our end. Please try again in a few moments.",
    "validation_error": "Please check your input and try again.",
}


def get_friendly_message(exception: Exception) -> str:
    """
    Convert exception to operator-friendly message.

    Args:
        exception: The exception that was raised

    Returns:
        Friendly error message (no technical details)
    """
    exception_name = exception.__class__.__name__

    if exception_name == "TopicNotFoundError":
        return ERROR_MESSAGES["topic_not_found"]
    elif exception_name == "TopicArchivedError":
        return ERROR_MESSAGES["topic_archived"]
    elif exception_name == "TopicValidationError":
        error_str = str(exception).lower()
        if "mode" in error_str:
            return ERROR_MESSAGES["mode_unknown"]
        elif "threshold" in error_str:
            return ERROR_MESSAGES["threshold_range"]
        return ERROR_MESSAGES["topic_validation"]
    elif exception_name == "SourceNotFoundError":
        return ERROR_MESSAGES["source_not_found"]
    elif exception_name == "ForceTestError":
        return ERROR_MESSAGES["force_test_failed"]
    elif exception_name == "PersistenceFailure":
        return ERROR_MESSAGES["persistence_failure"]
    elif exception_name == "DuplicateRecordNotFoundError":
        return ERROR_MESSAGES["duplicate_not_found"]
    elif exception_name == "ScanAlreadyRunningError":
        return ERROR_MESSAGES["scan_running"]
    elif exception_name == "DuplicateServiceError":
        return ERROR_MESSAGES["duplicate_reviewed"]
    elif exception_name == "ItemNotFoundError":
        return ERROR_MESSAGES["item_not_found"]
    elif exception_name == "InvalidItemStateError":
        return ERROR_MESSAGES["item_state"]
    elif exception_name == "StoryPublishedError":
        return ERROR_MESSAGES["story_published"]
    elif exception_name == "PipelineServiceError":
        return ERROR_MESSAGES["generation_unavailable"]
    else:
        # Generic fallback
        return ERROR_MESSAGES["server_error"]


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Catch-all exception handler for unexpected errors.

    Logs full exception details and returns a generic message.

    Args:
        request: The FastAPI request
        exc: The unhandled exception

    Returns:
        JSON response with a friendly error message
    """
    logger.error(
        f"Unhandled exception in {request.method} {request.url.path}",
        exc_info=exc,
        extra={
            "method": request.method,
            "path": request.url.path,
            "query_params": dict(request.query_params),
        },
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": ERROR_MESSAGES["server_error"],
        },
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Handle Pydantic validation errors.

    Args:
        request: The FastAPI request
        exc: The validation error

    Returns:
        JSON response with validation error details
    """
    logger.warning(
        f"Validation error in {request.method} {request.url.path}: {exc.errors()}",
        extra={
            "method": request.method,
            "path": request.url.path,
            "errors": exc.errors(),
        },
    )

    # Serialize errors properly (remove non-serializable objects from ctx)
    errors = []
    for error in exc.errors():
        clean_error = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            "input": error.get("input"),
        }
        if "ctx" in error:
            clean_ctx = {}
            for key, value in error["ctx"].items():
                if isinstance(value, (str, int, float, bool, type(None))):
                    clean_ctx[key] = value
                else:
                    clean_ctx[key] = str(value)
            clean_error["ctx"] = clean_ctx
        errors.append(clean_error)

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": errors,
        },
    )
