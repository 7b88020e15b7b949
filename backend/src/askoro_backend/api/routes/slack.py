"""Slack slash-command endpoint."""

from typing import Any, Union
from urllib.parse import parse_qs

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import Response

from ...config import Settings
from ...slack.command import (
    SlackCommandHandler,
    acknowledgement_message,
    usage_message,
    verify_signature,
)
from ..dependencies import get_app_settings, get_slack_handler

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/slack", tags=["slack"])


@router.post("/command", response_model=None)
async def slack_command(
    request: Request,
    background_tasks: BackgroundTasks,
    settings: Settings = Depends(get_app_settings),
    handler: SlackCommandHandler = Depends(get_slack_handler),
) -> Union[dict[str, Any], Response]:
    """Handle a signed, form-encoded slash command."""
    if not settings.slack_signing_secret:
        logger.error("slack_signing_secret_missing")
        raise HTTPException(status_code=500, detail="Slack integration not configured")

    raw_body = await request.body()
    verify_signature(
        settings.slack_signing_secret,
        request.headers.get("x-slack-request-timestamp"),
        request.headers.get("x-slack-signature"),
        raw_body,
    )

    form = {
        name: values[0]
        for name, values in parse_qs(raw_body.decode("utf-8"), keep_blank_values=True).items()
    }
    if form.get("ssl_check") == "1":
        return {"ok": True}

    text = form.get("text", "").strip()
    response_url = form.get("response_url") or None
    user_id = form.get("user_id") or None
    channel_id = form.get("channel_id") or None

    if not text:
        if response_url:
            background_tasks.add_task(handler.post_response, response_url, usage_message())
            return Response(status_code=200)
        return usage_message()

    logger.info("slack_command_received", user_id=user_id, channel_id=channel_id, deferred=bool(response_url))

    if not response_url:
        return await handler.build_reply(text, user_id)

    background_tasks.add_task(handler.answer_deferred, response_url, text, user_id, channel_id)
    return acknowledgement_message(text)
