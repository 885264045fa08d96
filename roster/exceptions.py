"""Exception hierarchy for the roster engine."""

from typing import Any


class RosterError(Exception):
    """Base exception for roster engine errors."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        error_type: str = "roster_error",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


# ---------------------------------------------------------------------------
# Membership source
# ---------------------------------------------------------------------------


class MembershipSourceError(RosterError):
    """Raised when the external membership source returns an error."""

    status_code = 502

    def __init__(
        self,
        message: str,
        status: int | None = None,
        error_type: str = "membership_source_error",
    ) -> None:
        super().__init__(message, error_type, {"status": status} if status else None)
        self.status = status


class TransientExternalError(MembershipSourceError):
    """Rate limit, server error or network failure. Safe to retry."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message, status, "transient_external")


class FatalExternalError(MembershipSourceError):
    """Authorization failure. The current pass must be aborted."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message, status, "fatal_external")


class MalformedPageError(MembershipSourceError):
    """A membership page could not be parsed."""

    def __init__(self, message: str, page: int) -> None:
        super().__init__(message, None, "malformed_page")
        self.page = page


class IncompleteMembershipError(MembershipSourceError):
    """A member or role listing ended early; reconciling against it is unsafe."""

    def __init__(
        self, group_id: int, skipped_pages: int, listing: str = "member"
    ) -> None:
        super().__init__(
            f"{listing.capitalize()} listing for group {group_id} is incomplete "
            f"({skipped_pages} page(s) skipped)",
            None,
            "incomplete_membership",
        )
        self.group_id = group_id
        self.skipped_pages = skipped_pages
        self.listing = listing


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class PerRecordError(RosterError):
    """A single user's update failed during a reconciliation pass."""

    def __init__(self, user_id: int, cause: Exception) -> None:
        super().__init__(
            f"Failed to reconcile user {user_id}: {type(cause).__name__}",
            "per_record_error",
            {"user_id": user_id},
        )
        self.user_id = user_id
        self.cause = cause


class ConfigurationConflictError(RosterError):
    """Two internal roles claim the same external role id."""

    def __init__(self, external_role_id: int, role_ids: list[Any]) -> None:
        super().__init__(
            f"External role {external_role_id} is claimed by {len(role_ids)} roles",
            "configuration_conflict",
            {"external_role_id": external_role_id, "role_ids": [str(r) for r in role_ids]},
        )
        self.external_role_id = external_role_id
        self.role_ids = role_ids


class WorkspaceBusyError(RosterError):
    """Another reconcile or reset is already running for the workspace."""

    status_code = 409

    def __init__(self, kind: str, workspace_id: int) -> None:
        super().__init__(
            f"A {kind} is already running for workspace {workspace_id}",
            "workspace_busy",
            {"kind": kind, "workspace_id": workspace_id},
        )
        self.kind = kind
        self.workspace_id = workspace_id


# ---------------------------------------------------------------------------
# Reset
# ---------------------------------------------------------------------------


class PeriodResetError(RosterError):
    """The period reset did not happen. No partial state was written."""

    def __init__(self, workspace_id: int) -> None:
        super().__init__(
            "Activity reset failed",
            "period_reset_failed",
            {"workspace_id": workspace_id},
        )
        self.workspace_id = workspace_id


# ---------------------------------------------------------------------------
# Quotas / permissions
# ---------------------------------------------------------------------------


class WorkspaceNotFoundError(RosterError):
    """Raised when a workspace does not exist."""

    status_code = 404

    def __init__(self, workspace_id: int) -> None:
        super().__init__(
            f"Workspace {workspace_id} not found",
            "workspace_not_found",
        )
        self.workspace_id = workspace_id


class QuotaNotFoundError(RosterError):
    """Raised when a quota does not exist in the workspace."""

    status_code = 404

    def __init__(self, quota_id: Any) -> None:
        super().__init__(f"Quota {quota_id} not found", "quota_not_found")
        self.quota_id = quota_id


class QuotaCompletionError(RosterError):
    """Raised when a manual quota completion is not allowed."""

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message, "quota_completion_error")


class PermissionDeniedError(RosterError):
    """Raised when the caller lacks the required permission."""

    status_code = 403

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message, "permission_denied")
