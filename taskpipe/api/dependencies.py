"""
Request dependencies resolving the process-wide broker objects.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from taskpipe.config import Settings
from taskpipe.producer import Submitter
from taskpipe.queue import QueueChannel


def get_channel(request: Request) -> QueueChannel:
    """The application's queue channel."""
    channel = request.app.state.channel
    if channel is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Broker channel not initialized",
        )
    return channel


def get_submitter(request: Request) -> Submitter:
    """The application's task submitter."""
    submitter = request.app.state.submitter
    if submitter is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Broker channel not initialized",
        )
    return submitter


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


ChannelDep = Annotated[QueueChannel, Depends(get_channel)]
SubmitterDep = Annotated[Submitter, Depends(get_submitter)]
SettingsDep = Annotated[Settings, Depends(get_app_settings)]
