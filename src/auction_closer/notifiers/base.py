from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(slots=True)
class EmailMessage:
    recipient: str
    subject: str
    html: str
    text: str


class Notifier(ABC):
    @abstractmethod
    def send(self, message: EmailMessage) -> None:
        """Deliver one message to one recipient. Raises on failure."""
