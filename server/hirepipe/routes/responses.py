from typing import Any, Awaitable

from fastapi import BackgroundTasks

from ..services.errors import PipelineError
from ..services.notifications import CommandResult, NotificationSender, dispatch_notifications


async def command_response(
    command: Awaitable[CommandResult],
    entity_name: str,
    background_tasks: BackgroundTasks,
    notifier: NotificationSender,
) -> dict[str, Any]:
    """Await a pipeline command and queue its notifications for after the response.

    Errors raised after a committed corrective transition carry their own
    intents; those are sent before the error propagates.
    """
    try:
        result = await command
    except PipelineError as exc:
        if exc.notifications:
            await dispatch_notifications(notifier, exc.notifications)
        raise

    if result.notifications:
        background_tasks.add_task(dispatch_notifications, notifier, result.notifications)
    return result.to_response(entity_name)
