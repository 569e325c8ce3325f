"""Error taxonomy for the decision readiness engine.

Every error carries a stable `error_code` and the HTTP status the API layer
maps it to. Validation and not-found errors are caller-fixable and returned
without retry. UpstreamDegradedError never reaches a caller: the readiness
aggregator folds it into a degraded category result.
"""

from typing import Any


class EngineError(Exception):
    """Base error for all engine failures.

    Attributes:
        message: Human-readable error description, safe to return to callers.
        error_code: Stable machine-readable code.
        status_code: HTTP status the API layer responds with.
    """

    error_code = "ENGINE_ERROR"
    status_code = 500

    def __init__(self, message: str) -> None:
        """Initialize EngineError.

        Args:
            message: Error description.
        """
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for an API response body.

        Returns:
            Dict with error_code and message.
        """
        return {"error_code": self.error_code, "message": self.message}


class ValidationError(EngineError):
    """Raised when a request is missing a required field or names an unknown value."""

    error_code = "VALIDATION_ERROR"
    status_code = 422

    def __init__(self, message: str, field: str | None = None) -> None:
        """Initialize ValidationError.

        Args:
            message: Error description.
            field: Optional name of the offending field.
        """
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        if self.field is not None:
            body["field"] = self.field
        return body


class UnknownStepError(ValidationError):
    """Raised when an onboarding step has no rules in the active catalog."""

    error_code = "UNKNOWN_STEP"

    def __init__(self, step: str) -> None:
        """Initialize UnknownStepError.

        Args:
            step: The step that could not be resolved.
        """
        super().__init__(f"No policy rules are defined for step '{step}'", field="step")
        self.step = step


class EvidenceValidationError(ValidationError):
    """Raised when evidence for a mandatory rule lacks its integrity digest."""

    error_code = "EVIDENCE_INVALID"

    def __init__(self, message: str, reference_ids: list[str] | None = None) -> None:
        """Initialize EvidenceValidationError.

        Args:
            message: Error description.
            reference_ids: Evidence references that failed validation.
        """
        super().__init__(message, field="evidence")
        self.reference_ids = reference_ids or []


class DecisionSupersededError(ValidationError):
    """Raised when an update targets a decision that was already superseded."""

    error_code = "DECISION_ALREADY_SUPERSEDED"
    status_code = 409

    def __init__(self, decision_id: Any, superseded_by: Any) -> None:
        """Initialize DecisionSupersededError.

        Args:
            decision_id: The decision the caller tried to update.
            superseded_by: The decision that already replaced it.
        """
        super().__init__(
            f"Decision {decision_id} was already superseded by {superseded_by}; "
            f"update the current decision {superseded_by} instead",
            field="previous_decision_id",
        )
        self.decision_id = decision_id
        self.superseded_by = superseded_by


class NotFoundError(EngineError):
    """Raised when a decision, evaluation, or rule set cannot be resolved."""

    error_code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, resource_id: Any) -> None:
        """Initialize NotFoundError.

        Args:
            resource: Resource type name (e.g., "ComplianceDecision").
            resource_id: Identifier that was looked up.
        """
        super().__init__(f"{resource} '{resource_id}' not found")
        self.resource = resource
        self.resource_id = resource_id


class UnauthorizedActorError(EngineError):
    """Raised before any evaluation work when the actor is missing or not permitted."""

    error_code = "UNAUTHORIZED_ACTOR"
    status_code = 401


class UpstreamDegradedError(EngineError):
    """Raised by collaborator adapters when an upstream call fails or times out.

    Attributes:
        source: Name of the degraded upstream.
    """

    error_code = "UPSTREAM_DEGRADED"
    status_code = 503

    def __init__(self, source: str, message: str) -> None:
        """Initialize UpstreamDegradedError.

        Args:
            source: Name of the degraded upstream.
            message: Error description.
        """
        super().__init__(message)
        self.source = source


class InternalError(EngineError):
    """Unexpected failure. Callers only ever see the generic message."""

    error_code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str = "An internal error occurred") -> None:
        super().__init__(message)
