from __future__ import annotations

import html as html_lib
from dataclasses import dataclass
from enum import Enum

from auction_closer.models import Bid, Opportunity, User
from auction_closer.utils.datetime_utils import format_date, format_datetime

from .base import EmailMessage

_SIGN_OFF = "Best regards,\nThe Auction Desk"

# subject, heading, paragraphs, (label, value) details
_Parts = tuple[str, str, list[str], list[tuple[str, str]]]


class MessageKind(str, Enum):
    WINNER = "winner"
    NOT_SELECTED = "not_selected"
    CLOSURE_SUMMARY = "closure_summary"
    BID_CONFIRMATION = "bid_confirmation"
    NEW_BID = "new_bid"
    CLOSING_REMINDER = "closing_reminder"


@dataclass(slots=True)
class MessageContext:
    opportunity: Opportunity
    user: User | None = None
    bid: Bid | None = None
    winning_amount: int | None = None


def format_amount(amount: int | None) -> str:
    if amount is None:
        return "Not specified"
    return f"£{amount:,}"


def build_message(kind: MessageKind, recipient: str, context: MessageContext) -> EmailMessage:
    builder = _BUILDERS[kind]
    subject, heading, paragraphs, details = builder(context)
    return EmailMessage(
        recipient=recipient,
        subject=subject,
        html=_render_html(heading, paragraphs, details),
        text=_render_text(heading, paragraphs, details),
    )


def _opportunity_details(opportunity: Opportunity) -> list[tuple[str, str]]:
    return [
        ("Title", opportunity.title),
        ("LPA", opportunity.lpa or "Not specified"),
        ("NCA", opportunity.nca or "Not specified"),
        ("Unit Type", opportunity.unit_type or "Not specified"),
        ("Units Required", str(opportunity.units_required)),
    ]


def _greeting(user: User | None) -> str:
    if user is None:
        return "Hello,"
    return f"Hello {user.display_name},"


def _winner(context: MessageContext) -> _Parts:
    opportunity = context.opportunity
    amount = context.bid.amount if context.bid else context.winning_amount
    details = _opportunity_details(opportunity)
    details.insert(1, ("Your Winning Bid", format_amount(amount)))
    return (
        f"You won - {opportunity.title}",
        "Congratulations! You Won!",
        [
            _greeting(context.user),
            "Your bid has been selected as the winning bid for:",
        ],
        details + [("Next Steps", "We will be in touch shortly.")],
    )


def _not_selected(context: MessageContext) -> _Parts:
    opportunity = context.opportunity
    return (
        f"Bid Result - {opportunity.title}",
        "Bid Result",
        [
            _greeting(context.user),
            f"Thank you for your bid on {opportunity.title}.",
            "Unfortunately, your bid was not selected. "
            f"The winning bid was {format_amount(context.winning_amount)}.",
            "We encourage you to participate in future opportunities.",
        ],
        [],
    )


def _closure_summary(context: MessageContext) -> _Parts:
    opportunity = context.opportunity
    if opportunity.winning_bid_id:
        outcome = f"Won by bid {opportunity.winning_bid_id} at {format_amount(opportunity.winning_bid_amount)}"
    else:
        outcome = "Closed with no bids"
    details = _opportunity_details(opportunity) + [
        ("Outcome", outcome),
        ("Closed At", format_datetime(opportunity.closed_at)),
    ]
    return (
        f"Opportunity Closed - {opportunity.title}",
        "Opportunity Closed",
        ["The following opportunity has been closed:"],
        details,
    )


def _bid_confirmation(context: MessageContext) -> _Parts:
    opportunity = context.opportunity
    details = _opportunity_details(opportunity) + [
        ("Your Bid Amount", format_amount(context.bid.amount if context.bid else None)),
        ("Closing Date", format_date(opportunity.closing_date)),
    ]
    return (
        f"Bid Confirmation - {opportunity.title}",
        "Bid Confirmation",
        [
            _greeting(context.user),
            "Your bid has been successfully submitted for the following opportunity:",
        ],
        details + [("Outcome", "You will be notified if your bid is successful.")],
    )


def _new_bid(context: MessageContext) -> _Parts:
    opportunity = context.opportunity
    user = context.user
    bidder = "Unknown bidder"
    if user is not None:
        bidder = f"{user.display_name} ({user.company})" if user.company else user.display_name
    details = [
        ("Title", opportunity.title),
        ("Bidder", bidder),
        ("Email", user.email if user else "Not specified"),
        ("Bid Amount", format_amount(context.bid.amount if context.bid else None)),
        ("Submitted", format_datetime(context.bid.created_at if context.bid else None)),
    ]
    return (
        f"New Bid - {opportunity.title}",
        "New Bid Submitted",
        ["A new bid has been submitted:"],
        details,
    )


def _closing_reminder(context: MessageContext) -> _Parts:
    opportunity = context.opportunity
    details = _opportunity_details(opportunity) + [
        ("Closing Date", format_date(opportunity.closing_date)),
    ]
    return (
        f"Reminder: {opportunity.title} closes soon",
        "Bid Opportunity Closing Soon",
        [
            _greeting(context.user),
            "Reminder: the following bid opportunity closes by the end of tomorrow:",
        ],
        details + [("", "Don't miss out on this opportunity!")],
    )


_BUILDERS = {
    MessageKind.WINNER: _winner,
    MessageKind.NOT_SELECTED: _not_selected,
    MessageKind.CLOSURE_SUMMARY: _closure_summary,
    MessageKind.BID_CONFIRMATION: _bid_confirmation,
    MessageKind.NEW_BID: _new_bid,
    MessageKind.CLOSING_REMINDER: _closing_reminder,
}


def _render_text(heading: str, paragraphs: list[str], details: list[tuple[str, str]]) -> str:
    lines = [heading, ""]
    lines.extend(paragraphs)
    if details:
        lines.append("")
        for label, value in details:
            lines.append(f"{label}: {value}" if label else value)
    lines.extend(["", _SIGN_OFF])
    return "\n".join(lines)


def _render_html(heading: str, paragraphs: list[str], details: list[tuple[str, str]]) -> str:
    escape = html_lib.escape
    parts = [f"<h2>{escape(heading)}</h2>"]
    parts.extend(f"<p>{escape(paragraph)}</p>" for paragraph in paragraphs)
    if details:
        parts.append("<ul>")
        for label, value in details:
            if label:
                parts.append(f"<li><strong>{escape(label)}:</strong> {escape(value)}</li>")
            else:
                parts.append(f"<li>{escape(value)}</li>")
        parts.append("</ul>")
    parts.append(f"<p>{escape(_SIGN_OFF).replace(chr(10), '<br>')}</p>")
    return "\n".join(parts)
