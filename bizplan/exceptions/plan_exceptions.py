"""
Business plan error taxonomy

Every public tree/engine operation raises one of these. None of them is fatal
to the process: each is scoped to a single operation, and the caller (session
or API layer) decides between retry, rollback and surfacing.
"""

from typing import Any, Dict, Optional


class BusinessPlanError(Exception):
    """
    Base class for business plan errors

    Attributes:
        message: Human-readable error message
        error_code: Stable code for frontend detection
    """

    error_code = "BUSINESS_PLAN_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for JSON response"""
        return {"error": self.error_code, "message": self.message}


class ValidationError(BusinessPlanError):
    """
    Malformed input: empty title, proposed data missing required fields,
    H2 task without a valid H1 parent, partial reorder list.

    Always recoverable locally; nothing was applied.
    """

    error_code = "INVALID_CHANGE"

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        return data


class NotFoundError(BusinessPlanError):
    """
    Operation targets an id absent from the tree model or the entity store.

    For change resolution the change stays pending (unless auto-rejected)
    so the user can dismiss it.
    """

    error_code = "TARGET_NOT_FOUND"

    def __init__(self, entity: str, entity_id: Optional[str], message: str = None):
        self.entity = entity
        self.entity_id = entity_id
        self.auto_rejected = False
        super().__init__(message or f"{entity} not found: {entity_id}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(
            {
                "entity": self.entity,
                "entity_id": self.entity_id,
                "auto_rejected": self.auto_rejected,
            }
        )
        return data


class StaleChangeError(BusinessPlanError):
    """
    Attempt to resolve a pending change that is already terminal (or is
    being accepted right now). Never a silent success.
    """

    error_code = "STALE_CHANGE"

    def __init__(self, change_id: str, status: str, message: str = None):
        self.change_id = change_id
        self.status = status
        super().__init__(
            message or f"Pending change {change_id} has already been resolved ({status})"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"change_id": self.change_id, "status": self.status})
        return data


class TransientError(BusinessPlanError):
    """
    Network or store failure. Recoverable via retry; triggers optimistic
    state rollback.
    """

    error_code = "TRANSIENT_ERROR"
