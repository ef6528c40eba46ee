"""
Engine error taxonomy.

A missing optional signal is not an error: the sub-score simply contributes 0.
"""


class EngineError(Exception):
    """Base class for matching and anomaly-detection errors."""
    def __init__(self, message: str, error_code: str = "ERR_ENGINE"):
        self.message = message
        self.error_code = error_code
        super().__init__(message)


class InvalidCandidate(EngineError):
    """A candidate row has a malformed date or amount. Skip it, keep the batch."""
    def __init__(self, message: str, candidate_id: str = ""):
        self.candidate_id = candidate_id
        super().__init__(message, error_code="ERR_INVALID_CANDIDATE")


class InsufficientHistory(EngineError):
    """Too few historical rows for a statistical rule. The rule returns no alert."""
    def __init__(self, message: str, required: int = 0, found: int = 0):
        self.required = required
        self.found = found
        super().__init__(message, error_code="ERR_INSUFFICIENT_HISTORY")


class PersistenceFailure(EngineError):
    """Writing a decision failed. The enclosing unit of work has been rolled back."""
    def __init__(self, message: str):
        super().__init__(message, error_code="ERR_PERSISTENCE")


class RecordNotFound(EngineError):
    """Focal record does not exist or belongs to another company."""
    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} {record_id} not found", error_code="ERR_NOT_FOUND")


class ReceiptAlreadyConfirmed(EngineError):
    """The receipt already has a confirmed match to another transaction."""
    def __init__(self, receipt_id: str, match_id: str):
        self.receipt_id = receipt_id
        self.match_id = match_id
        super().__init__(
            f"receipt {receipt_id} already confirmed by match {match_id}",
            error_code="ERR_ALREADY_CONFIRMED",
        )
