"""Notifier implementations."""

from .base import EmailMessage, Notifier
from .brevo_email import BrevoEmailNotifier, build_brevo_payload
from .preview import PreviewNotifier
from .templates import MessageContext, MessageKind, build_message

__all__ = [
    "BrevoEmailNotifier",
    "EmailMessage",
    "MessageContext",
    "MessageKind",
    "Notifier",
    "PreviewNotifier",
    "build_brevo_payload",
    "build_message",
]
