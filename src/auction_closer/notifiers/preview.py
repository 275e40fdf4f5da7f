from __future__ import annotations

from .base import EmailMessage, Notifier


class PreviewNotifier(Notifier):
    """Prints messages instead of sending them."""

    def send(self, message: EmailMessage) -> None:
        print(f"[DRY RUN] WOULD EMAIL {message.recipient}")
        print(f"  Subject: {message.subject}")
        print(message.text)
        print("")
