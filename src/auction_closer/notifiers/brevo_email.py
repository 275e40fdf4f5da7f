from __future__ import annotations

import requests

from auction_closer.errors import NotificationError

from .base import EmailMessage, Notifier


class BrevoEmailNotifier(Notifier):
    def __init__(
        self,
        *,
        api_url: str,
        api_key: str,
        sender_name: str,
        sender_email: str,
        timeout_seconds: int = 15,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.sender_name = sender_name
        self.sender_email = sender_email
        self.timeout_seconds = timeout_seconds

    def send(self, message: EmailMessage) -> None:
        if not message.recipient or not message.subject:
            raise NotificationError("recipient and subject are required")

        payload = build_brevo_payload(
            message,
            sender_name=self.sender_name,
            sender_email=self.sender_email,
        )
        response = requests.post(
            self.api_url,
            json=payload,
            headers={"api-key": self.api_key, "Content-Type": "application/json"},
            timeout=self.timeout_seconds,
        )
        if response.status_code >= 400:
            raise NotificationError(
                f"Email API returned {response.status_code}: {response.text}"
            )


def build_brevo_payload(message: EmailMessage, *, sender_name: str, sender_email: str) -> dict:
    return {
        "sender": {"name": sender_name, "email": sender_email},
        "to": [{"email": message.recipient}],
        "subject": message.subject,
        "htmlContent": message.html,
        "textContent": message.text,
    }
