"""
Error taxonomy for the control plane.

Every error carries a machine-readable ``kind`` plus a human message.
Raw provider or SSH output is preserved in ``detail`` for debugging and
is never the only signal a caller gets.
"""

from typing import Optional, Dict, Any


class ControlPlaneError(Exception):
    """Base class for all control plane errors."""

    kind = "internal"

    def __init__(self, message: str, detail: str = ""):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        d = {"kind": self.kind, "message": self.message}
        if self.detail:
            d["detail"] = self.detail
        return d

    def __str__(self) -> str:
        return self.message


class ProviderError(ControlPlaneError):
    """Failure reported by a compute or DNS provider API."""

    kind = "provider"

    QUOTA_EXCEEDED = "quota_exceeded"
    INVALID_SPEC = "invalid_spec"
    TRANSIENT = "transient"
    PERMANENT = "permanent"

    CATEGORIES = (QUOTA_EXCEEDED, INVALID_SPEC, TRANSIENT, PERMANENT)

    def __init__(
        self, message: str, category: str = PERMANENT,
        provider: str = "", status_code: Optional[int] = None,
        detail: str = "",
    ):
        if category not in self.CATEGORIES:
            raise ValueError(f"unknown provider error category: {category}")
        super().__init__(message, detail)
        self.category = category
        self.provider = provider
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.category == self.TRANSIENT

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["category"] = self.category
        d["provider"] = self.provider
        if self.status_code is not None:
            d["status_code"] = self.status_code
        return d


class AuthenticationError(ControlPlaneError):
    """SSH or provider credential failure. Never retried."""

    kind = "authentication"


class OperationTimeoutError(ControlPlaneError):
    """Provisioning, bootstrap or polling exceeded its overall deadline."""

    kind = "timeout"


class ValidationError(ControlPlaneError):
    kind = "validation"


class ConflictError(ControlPlaneError):
    """Invalid state transition or name collision."""

    kind = "conflict"


class EncryptionError(ControlPlaneError):
    kind = "encryption"


class NotFoundError(ControlPlaneError):
    kind = "not_found"


class SSHError(ControlPlaneError):
    """Network-level SSH failure (connection refused, reset, timeout)."""

    kind = "ssh"

    def __init__(self, message: str, detail: str = "", transient: bool = True):
        super().__init__(message, detail)
        self.transient = transient


class PipelineError(ControlPlaneError):
    """
    Aggregated failure of a multi-step workflow.

    Names the step that failed, whether its compensating action ran
    cleanly, and keeps the underlying error as ``cause``.
    """

    kind = "pipeline"

    def __init__(
        self, workflow: str, step: str, cause: Exception,
        compensated: Optional[bool] = None,
    ):
        if compensated is None:
            suffix = ""
        elif compensated:
            suffix = " (compensation succeeded)"
        else:
            suffix = " (compensation FAILED)"
        message = f"{workflow} failed at step '{step}': {cause}{suffix}"
        detail = getattr(cause, "detail", "") or ""
        super().__init__(message, detail)
        self.workflow = workflow
        self.step = step
        self.cause = cause
        self.compensated = compensated

    @property
    def cause_kind(self) -> str:
        return getattr(self.cause, "kind", "internal")

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["workflow"] = self.workflow
        d["step"] = self.step
        d["cause_kind"] = self.cause_kind
        d["compensated"] = self.compensated
        return d


class RemoteCommandError(ControlPlaneError):
    """A remote operation whose command exited non-zero when success was required."""

    kind = "remote_command"

    def __init__(self, message: str, exit_code: int = -1, detail: str = ""):
        super().__init__(message, detail)
        self.exit_code = exit_code

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["exit_code"] = self.exit_code
        return d


_QUOTA_MARKERS = ("limit", "quota", "exceeded", "insufficient")


def classify_http_error(
    provider: str, status_code: int, message: str, detail: str = "",
) -> Exception:
    """Map an HTTP failure onto the error taxonomy."""
    text = f"{message} {detail}".lower()
    if status_code in (401, 403) and not any(m in text for m in _QUOTA_MARKERS):
        return AuthenticationError(f"{provider}: credentials rejected ({status_code})", detail=detail)
    if status_code == 404:
        return NotFoundError(f"{provider}: resource not found", detail=detail)
    if any(m in text for m in _QUOTA_MARKERS) and status_code in (400, 403, 409, 412, 422):
        return ProviderError(
            f"{provider}: quota exceeded: {message}", ProviderError.QUOTA_EXCEEDED,
            provider=provider, status_code=status_code, detail=detail,
        )
    if status_code == 429 or status_code >= 500:
        return ProviderError(
            f"{provider}: temporarily unavailable ({status_code})", ProviderError.TRANSIENT,
            provider=provider, status_code=status_code, detail=detail,
        )
    if status_code in (400, 422):
        return ProviderError(
            f"{provider}: invalid request: {message}", ProviderError.INVALID_SPEC,
            provider=provider, status_code=status_code, detail=detail,
        )
    return ProviderError(
        f"{provider}: request failed ({status_code}): {message}", ProviderError.PERMANENT,
        provider=provider, status_code=status_code, detail=detail,
    )


def error_result(exc: Exception) -> Dict[str, Any]:
    """Render any exception as a user-visible result dict."""
    if isinstance(exc, ControlPlaneError):
        return exc.to_dict()
    return {"kind": "internal", "message": "Internal error", "detail": str(exc)}
