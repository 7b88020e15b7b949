"""Slack slash-command integration."""

from .command import SlackCommandHandler, verify_signature

__all__ = ["SlackCommandHandler", "verify_signature"]
