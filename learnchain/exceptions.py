class DomainError(Exception):
    """Base exception class for all domain-specific exceptions."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(self.message)


class ValidationError(DomainError):
    """Exception raised when validation fails."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ResourceNotFoundError(ValidationError):
    """Exception raised when a requested resource is not found."""

    def __init__(self, resource_type: str, resource_id: object) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type} with ID {resource_id} not found"
        super().__init__(message)


class NotEnrolledError(DomainError):
    """Raised when an operation requires an enrollment the user does not have."""

    def __init__(self, user_id: object, course_id: int) -> None:
        self.user_id = user_id
        self.course_id = course_id
        super().__init__(f"User {user_id} is not enrolled in course {course_id}")


class InsufficientPointsError(DomainError):
    """Raised when a user's balance does not meet an enrollment requirement."""

    def __init__(self, required: int, available: int, reason: str = "enrollment") -> None:
        self.required = required
        self.available = available
        self.reason = reason
        super().__init__(f"Insufficient points for {reason}: required {required}, available {available}")


class WalletMismatchError(DomainError):
    """Raised when the caller's verified wallet is not the one registered for the user."""

    def __init__(self, user_id: object, wallet: str) -> None:
        self.user_id = user_id
        self.wallet = wallet
        super().__init__(f"Wallet {wallet} is not registered for user {user_id}")
