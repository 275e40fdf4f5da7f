from __future__ import annotations

import logging

from auction_closer.closing import NOT_FOUND_REASON, ClosingWorkflow
from auction_closer.errors import (
    ClosingFailedError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
)
from auction_closer.models import ClosingResult, ClosingStatus
from auction_closer.store import Repository

logger = logging.getLogger(__name__)


class ManualCloseEndpoint:
    """Administrator-only "close now" for a single opportunity."""

    def __init__(self, *, repository: Repository, workflow: ClosingWorkflow) -> None:
        self.repository = repository
        self.workflow = workflow

    def close(self, caller_id: str | None, opportunity_id: str | None) -> ClosingResult:
        self._require_admin(caller_id)

        opportunity_id = (opportunity_id or "").strip()
        if not opportunity_id:
            raise InvalidArgumentError("opportunity_id is required")

        logger.info("Manual close of %s requested by %s", opportunity_id, caller_id)
        result = self.workflow.close(opportunity_id)

        if result.status is ClosingStatus.FAILED:
            if result.reason == NOT_FOUND_REASON:
                raise NotFoundError(f"opportunity {opportunity_id} not found")
            raise ClosingFailedError(
                f"Failed to close opportunity {opportunity_id}: {result.reason}"
            )
        return result

    def _require_admin(self, caller_id: str | None) -> None:
        if not caller_id:
            raise PermissionDeniedError("caller must be authenticated")

        try:
            user = self.repository.get_user(caller_id)
        except Exception as exc:
            logger.exception("Failed to load caller %s: %s", caller_id, exc)
            raise ClosingFailedError(f"Failed to verify caller {caller_id}: {exc}") from exc
        if user is None or not user.is_admin:
            logger.warning("Rejected manual close by non-admin caller %s", caller_id)
            raise PermissionDeniedError("Only admin users can close opportunities")
