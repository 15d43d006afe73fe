"""
Task handlers registry and implementations.

Task handlers must be idempotent - delivery is at-least-once, so a handler
may run more than once for the same task after a worker crash or a lost ack.

Handlers report failure by raising: ``HandlerTransientFailure`` for
conditions worth retrying, ``HandlerPermanentFailure`` for ones that are not.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable

import httpx

from taskpipe.constants import DEFAULT_TASK_TYPE
from taskpipe.errors import HandlerPermanentFailure, HandlerTransientFailure
from taskpipe.types.task import TaskContext

logger = logging.getLogger(__name__)

# Type alias for task handler functions
TaskHandler = Callable[[TaskContext], Awaitable[Any]]

# Handler registry
_handlers: dict[str, TaskHandler] = {}


def register_handler(task_type: str) -> Callable[[TaskHandler], TaskHandler]:
    """
    Decorator to register a task handler.

    Args:
        task_type: The task type this handler processes.

    Returns:
        Decorator function.

    Example:
        @register_handler("send_email")
        async def handle_send_email(context: TaskContext) -> dict:
            ...
    """
    def decorator(handler: TaskHandler) -> TaskHandler:
        _handlers[task_type] = handler
        logger.debug(f"Registered handler for task type: {task_type}")
        return handler
    return decorator


def get_handler(task_type: str) -> TaskHandler | None:
    """
    Get the handler for a task type.

    Args:
        task_type: The task type.

    Returns:
        The handler function or None if not found.
    """
    return _handlers.get(task_type)


def list_handlers() -> list[str]:
    """List all registered task types."""
    return list(_handlers.keys())


def _data(context: TaskContext) -> dict[str, Any]:
    return context.payload.get("data") or {}


# ============================================================================
# Built-in task handlers
# ============================================================================


@register_handler("describe")
async def handle_describe(context: TaskContext) -> dict[str, Any]:
    """
    Default handler: log the task description and simulate the work.

    Payload ``data`` may contain:
    - duration_seconds: Simulated processing time (default 2)
    """
    description = context.payload.get("description")
    if not description:
        raise HandlerPermanentFailure("Task has no description")

    duration = float(_data(context).get("duration_seconds", 2))

    logger.info(
        "Received task",
        extra={"task_id": str(context.task_id), "description": description},
    )
    await asyncio.sleep(duration)
    logger.info(
        "Task processed",
        extra={"task_id": str(context.task_id), "description": description},
    )
    return {"description": description, "processed": True}


@register_handler("echo")
async def handle_echo(context: TaskContext) -> dict[str, Any]:
    """Return the input payload as output."""
    return {"echo": context.payload}


@register_handler("sleep")
async def handle_sleep(context: TaskContext) -> dict[str, Any]:
    """
    Sleep handler for exercising timeouts.

    Payload ``data`` should contain:
    - duration_seconds: How long to sleep
    """
    duration = float(_data(context).get("duration_seconds", 1))
    await asyncio.sleep(duration)
    return {"slept_for": duration}


@register_handler("always_fail")
async def handle_always_fail(context: TaskContext) -> None:
    """Always fail transiently - for exercising the retry ceiling."""
    logger.info(
        "Failing task executing (will fail)",
        extra={"task_id": str(context.task_id), "attempt_count": context.attempt_count},
    )
    raise HandlerTransientFailure(
        f"Intentional failure on attempt {context.attempt_count}"
    )


@register_handler("reject")
async def handle_reject(context: TaskContext) -> None:
    """Always fail permanently - for exercising dead-lettering."""
    raise HandlerPermanentFailure("Intentional permanent failure")


@register_handler("random_failure")
async def handle_random_failure(context: TaskContext) -> dict[str, Any]:
    """
    Randomly fail transiently.

    Payload ``data`` should contain:
    - failure_rate: Probability of failure (0.0 to 1.0)
    """
    failure_rate = float(_data(context).get("failure_rate", 0.5))

    if random.random() < failure_rate:
        logger.warning(
            "Random failure triggered",
            extra={"task_id": str(context.task_id), "attempt_count": context.attempt_count},
        )
        raise HandlerTransientFailure(
            f"Random failure on attempt {context.attempt_count}"
        )

    return {"message": "Succeeded this time!"}


@register_handler("http_request")
async def handle_http_request(context: TaskContext) -> dict[str, Any]:
    """
    Make an HTTP request.

    Payload ``data`` should contain:
    - url: The URL to request
    - method: HTTP method (GET, POST, etc.)
    - headers: Optional headers
    - body: Optional JSON request body

    Connection errors and 5xx responses are transient; 4xx are permanent.
    """
    data = _data(context)
    url = data.get("url")
    method = data.get("method", "GET").upper()
    headers = data.get("headers", {})
    body = data.get("body")

    if not url:
        raise HandlerPermanentFailure("Missing 'url' in payload data")

    logger.info(
        "HTTP request task",
        extra={"task_id": str(context.task_id), "method": method, "url": url},
    )

    try:
        async with httpx.AsyncClient() as client:
            response = await client.request(
                method=method,
                url=url,
                headers=headers,
                json=body if method in ["POST", "PUT", "PATCH"] else None,
                timeout=30.0,
            )
    except httpx.TransportError as e:
        raise HandlerTransientFailure(f"HTTP request failed: {e}") from e

    if response.status_code >= 500:
        raise HandlerTransientFailure(f"HTTP {response.status_code}")
    if response.status_code >= 400:
        raise HandlerPermanentFailure(f"HTTP {response.status_code}")

    return {
        "status_code": response.status_code,
        "body": response.text[:1000],  # Truncate response
    }


async def dispatch_task(context: TaskContext) -> Any:
    """
    Execute a task using the handler registered for its type.

    Args:
        context: The task context.

    Returns:
        Whatever the handler returns.

    Raises:
        HandlerPermanentFailure: If no handler is registered for the type.
    """
    task_type = context.task_type or DEFAULT_TASK_TYPE

    handler = get_handler(task_type)

    if handler is None:
        logger.error(
            f"No handler for task type: {task_type}",
            extra={"task_id": str(context.task_id)},
        )
        raise HandlerPermanentFailure(f"No handler registered for task type: {task_type}")

    return await handler(context)
