"""
Task submission routes.
"""

import logging

from fastapi import APIRouter, HTTPException, Query, status

from taskpipe.api.dependencies import ChannelDep, SettingsDep, SubmitterDep
from taskpipe.dlq import DeadLetterReplayer
from taskpipe.errors import EncodeError, NotConnectedError, PublishRejectedError
from taskpipe.types.api import (
    CreateTaskRequest,
    CreateTaskResponse,
    ErrorResponse,
    ProducerStatusResponse,
    ReplayResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tasks", tags=["Tasks"])


def _unavailable(error: str, exc: Exception) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=ErrorResponse(error=error, detail=str(exc), retryable=True).model_dump(),
    )


@router.post(
    "/create",
    response_model=CreateTaskResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a task",
    description="Enqueue a task for asynchronous processing by the workers.",
    responses={
        400: {"description": "Invalid task payload"},
        503: {"description": "Broker unavailable or refused the task"},
    },
)
async def create_task(
    request: CreateTaskRequest,
    submitter: SubmitterDep,
) -> CreateTaskResponse:
    """
    Submit a task.

    A 202 means the broker accepted the task for delivery; it has not been
    processed yet.

    Args:
        request: Task creation request.
        submitter: The application's submitter.

    Returns:
        CreateTaskResponse with the submission id.

    Raises:
        HTTPException: 400 for an unencodable payload, 503 when the broker
            is unavailable or rejected the message.
    """
    try:
        task_id = await submitter.submit(request.to_payload())
    except EncodeError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=ErrorResponse(error="invalid_task", detail=str(e)).model_dump(),
        )
    except NotConnectedError as e:
        raise _unavailable("broker_unavailable", e)
    except PublishRejectedError as e:
        raise _unavailable("publish_rejected", e)

    return CreateTaskResponse(id=task_id)


@router.get(
    "/status",
    response_model=ProducerStatusResponse,
    summary="Producer status",
    description="Report whether the producer is connected to the broker.",
)
async def producer_status(channel: ChannelDep) -> ProducerStatusResponse:
    connected = channel.is_connected
    return ProducerStatusResponse(
        status="running" if connected else "disconnected",
        connected=connected,
        queue=channel.queue_name,
    )


@router.post(
    "/dead-letter/replay",
    response_model=ReplayResponse,
    summary="Replay dead letters",
    description="Move dead-lettered tasks back onto the work queue.",
)
async def replay_dead_letters(
    channel: ChannelDep,
    settings: SettingsDep,
    limit: int | None = Query(default=None, ge=1, le=10_000),
    reset_attempts: bool = Query(default=True),
) -> ReplayResponse:
    """
    Replay dead-lettered tasks.

    Args:
        channel: The application's queue channel.
        settings: Application settings.
        limit: Maximum tasks to move. Defaults to the configured batch size.
        reset_attempts: Restart the retry budget of replayed tasks.

    Returns:
        ReplayResponse with the number of tasks moved.
    """
    if not channel.dead_letter_queue_name:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No dead-letter queue configured",
        )

    replayer = DeadLetterReplayer(channel, settings)
    try:
        replayed = await replayer.run_once(limit=limit, reset_attempts=reset_attempts)
    except (NotConnectedError, PublishRejectedError) as e:
        raise _unavailable("broker_unavailable", e)

    logger.info(
        "Dead-letter replay requested",
        extra={"replayed": replayed, "reset_attempts": reset_attempts},
    )
    return ReplayResponse(
        replayed=replayed,
        dead_letter_queue=channel.dead_letter_queue_name,
        queue=channel.queue_name,
    )
