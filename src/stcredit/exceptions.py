"""Custom exceptions for engine and API contract errors."""

from typing import Any, Dict, Optional


class ContractError(Exception):
    """Error that maps to a stable API error payload."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}


class StockMovementParseError(ContractError):
    """Stock movement report rejected as a whole."""

    def __init__(
        self, code: str, message: str, *, line: Optional[int] = None
    ) -> None:
        details = {"line": line} if line is not None else {}
        super().__init__(code, message, status_code=422, details=details)
        self.line = line


class CompetenciaLockedError(ContractError):
    """Competência already confirmed by another operator or frozen in session."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(
            "COMPETENCIA_LOCKED", message, status_code=409, details=details
        )


class CompetenciaNotConfirmedError(ContractError):
    """Action requires the competência to be confirmed first."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(
            "COMPETENCIA_NOT_CONFIRMED", message, status_code=409, details=details
        )


class InvalidBalanceError(ContractError):
    """Opening balance rejected by strict validation."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__("INVALID_BALANCE", message, status_code=400, details=details)


class InvalidTransitionError(ContractError):
    """State change not allowed from the current state."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(
            "INVALID_TRANSITION", message, status_code=409, details=details
        )


class PersistenceError(ContractError):
    """One or more storage writes failed; carries the sync report."""

    def __init__(self, message: str, *, report: Any = None) -> None:
        details: Dict[str, Any] = {}
        if report is not None:
            details = {
                "succeeded": [key.as_dict() for key in report.succeeded],
                "failed": [
                    {"key": failure.key.as_dict(), "error": failure.error}
                    for failure in report.failed
                ],
            }
        super().__init__("PERSISTENCE_FAILED", message, status_code=502, details=details)
        self.report = report
