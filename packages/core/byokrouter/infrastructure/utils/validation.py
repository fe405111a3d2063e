"""Input validation utilities for security and data integrity."""

import re

from byokrouter.domain.models.provider import Provider


class ValidationError(Exception):
    """Raised when input validation fails."""

    def __init__(self, message: str, field: str | None = None) -> None:
        """Initialize ValidationError.

        Args:
            message: Human-readable error message.
            field: Optional field name that failed validation.
        """
        self.message = message
        self.field = field
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return error message with field name if available."""
        if self.field:
            return f"Validation error in field '{self.field}': {self.message}"
        return self.message


# Injection attack patterns to detect
INJECTION_PATTERNS = [
    # SQL injection patterns
    re.compile(
        r"(union\s+select|select\s+.*\s+from|insert\s+into|delete\s+from|drop\s+table|'\s*or\s*'1'\s*=\s*'1)",
        re.IGNORECASE,
    ),
    # NoSQL injection patterns
    re.compile(r"(\$where|\$ne|\$gt|\$lt|\$regex|\$exists)", re.IGNORECASE),
    # Command injection patterns
    re.compile(r"[;&|`$(){}[\]<>]"),
    # Script injection patterns
    re.compile(r"(<script|javascript:|onerror=|onload=)", re.IGNORECASE),
    # Path traversal patterns
    re.compile(r"(\.\./|\.\.\\|%2e%2e%2f)", re.IGNORECASE),
]

CONTROL_CHARACTERS = re.compile(r"[\x00-\x1f\x7f]")

MIN_SECRET_LENGTH = 10
MAX_SECRET_LENGTH = 500
MAX_USAGE_DAYS = 365


def detect_injection_attempt(value: str) -> bool:
    """Detect potential injection attacks in a string value.

    Args:
        value: String value to check for injection patterns.

    Returns:
        True if injection pattern detected, False otherwise.
    """
    if not isinstance(value, str):
        return False

    return any(pattern.search(value) for pattern in INJECTION_PATTERNS)


def validate_secret(secret: str) -> str:
    """Validate a user-submitted provider secret.

    Args:
        secret: Raw API key as typed by the user.

    Returns:
        The secret with surrounding whitespace removed.

    Raises:
        ValidationError: If validation fails.
    """
    if not secret or not secret.strip():
        raise ValidationError("API key cannot be empty", field="apiKey")

    secret = secret.strip()

    if len(secret) < MIN_SECRET_LENGTH:
        raise ValidationError(
            f"API key must be at least {MIN_SECRET_LENGTH} characters long",
            field="apiKey",
        )
    if len(secret) > MAX_SECRET_LENGTH:
        raise ValidationError(
            f"API key must be {MAX_SECRET_LENGTH} characters or less",
            field="apiKey",
        )

    if any(ord(c) < 32 or c.isspace() for c in secret):
        raise ValidationError(
            "API key contains whitespace or control characters",
            field="apiKey",
        )

    if detect_injection_attempt(secret):
        raise ValidationError(
            "API key contains potentially malicious content",
            field="apiKey",
        )

    return secret


def validate_provider(provider: str | Provider) -> Provider:
    """Validate and normalize a provider name.

    Raises:
        ValidationError: If the provider is not supported.
    """
    if isinstance(provider, Provider):
        return provider
    if not provider or not provider.strip():
        raise ValidationError("Provider cannot be empty", field="provider")
    try:
        return Provider(provider.strip().lower())
    except ValueError:
        supported = ", ".join(p.value for p in Provider)
        raise ValidationError(
            f"Unsupported provider '{provider}'. Supported providers: {supported}",
            field="provider",
        ) from None


def validate_user_id(user_id: str) -> str:
    """Validate a caller-supplied user id.

    Raises:
        ValidationError: If validation fails.
    """
    if not user_id or not user_id.strip():
        raise ValidationError("User ID cannot be empty", field="user_id")
    user_id = user_id.strip()
    if len(user_id) > 255:
        raise ValidationError("User ID must be 255 characters or less", field="user_id")
    # Gateway subjects look like "auth0|64f1c2ab" or "google-oauth2|1234"; the id is
    # only ever used as an opaque storage key
    if CONTROL_CHARACTERS.search(user_id):
        raise ValidationError("User ID contains control characters", field="user_id")
    return user_id


def validate_usage_days(days: int) -> int:
    """Validate the trailing-window length for usage summaries.

    Raises:
        ValidationError: If days is outside 1..365.
    """
    if days < 1 or days > MAX_USAGE_DAYS:
        raise ValidationError(
            f"days must be between 1 and {MAX_USAGE_DAYS}",
            field="days",
        )
    return days
