"""
Exceptions for the match core with user-friendly error messages.

Only genuinely unexpected conditions are raised. Lost races and rule
violations are returned as result values (see arena.data_models.results).
"""

class MatchOperationError(Exception):
    """Base exception for match operation errors."""
    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or message

class StorageUnavailable(MatchOperationError):
    """Raised when the backing store cannot be reached. Safe to retry."""
    def __init__(self, operation: str, details: str = None):
        super().__init__(
            f"Storage unavailable during {operation}: {details}",
            "Connection problem. Please try again."
        )
        self.operation = operation

class MatchDataCorrupted(MatchOperationError):
    """Raised when a persisted row decodes to an impossible value."""
    def __init__(self, match_id: str, reason: str):
        super().__init__(
            f"Match {match_id} has corrupted data: {reason}",
            "This match could not be loaded."
        )
        self.match_id = match_id
class MatchStateError(MatchOperationError):
    """Raised when code tries a status change the state machine forbids."""
    def __init__(self, match_id: str, current, new_status):
        super().__init__(
            f"Match {match_id} cannot go from {current.value} to {new_status.value}",
            "This action is not possible in the current match state."
        )
        self.match_id = match_id
