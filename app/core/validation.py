"""
Input Validation Utilities

Provides validation for user inputs including:
- Subscriber email validation and masking for logs
- Subscriber name validation
- Subscription token format checks
- Text sanitization for newsletter content
"""
import re
import html
import unicodedata


class ValidationPatterns:
    """Regex patterns for validation"""

    # Pragmatic address check: one @, no whitespace, dotted domain, sane TLD
    EMAIL = re.compile(
        r"^[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+"
        r"@[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
        r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*"
        r"\.[A-Za-z]{2,63}$"
    )

    SUBSCRIPTION_TOKEN = re.compile(r"^[A-Za-z0-9]{25}$")

    NAME_FORBIDDEN_CHARACTERS = frozenset('/()"<>\\{}')


class EmailValidator:
    """Subscriber email validation and masking"""

    MAX_LENGTH = 254

    @staticmethod
    def validate(email: str) -> bool:
        """
        Validate email format.

        Args:
            email: Address to validate

        Returns:
            True if valid, False otherwise
        """
        if not email or len(email) > EmailValidator.MAX_LENGTH:
            return False
        return bool(ValidationPatterns.EMAIL.match(email))

    @staticmethod
    def normalize(email: str) -> str:
        """Trim whitespace and lowercase the domain part"""
        email = email.strip()
        local, sep, domain = email.rpartition("@")
        if not sep:
            return email
        return f"{local}@{domain.lower()}"

    @staticmethod
    def mask(email: str) -> str:
        """
        Mask an address for logging (privacy).

        Returns:
            Masked address (e.g., a***@example.com)
        """
        local, sep, domain = email.rpartition("@")
        if not sep or not local:
            return "***"
        return f"{local[0]}***@{domain}"


class SubscriberNameValidator:
    """Subscriber display name rules"""

    MAX_LENGTH = 256
    # Raw code points, bounds storage of names heavy with combining marks
    MAX_CODE_POINTS = 1024

    # Combining marks (accents, variation selectors) render on the previous character
    _MARK_CATEGORIES = frozenset({"Mn", "Mc", "Me"})
    _ZERO_WIDTH_JOINER = "\u200d"

    @staticmethod
    def visible_length(name: str) -> int:
        """
        Length in user-perceived characters.

        Combining marks do not count, and a zero width joiner glues the next
        character onto the previous one (emoji sequences). Regional-indicator
        flags still count as two.
        """
        count = 0
        joined = False
        for ch in name:
            if ch == SubscriberNameValidator._ZERO_WIDTH_JOINER:
                joined = True
                continue
            if unicodedata.category(ch) in SubscriberNameValidator._MARK_CATEGORIES:
                continue
            if joined:
                joined = False
                continue
            count += 1
        return count

    @staticmethod
    def validate(name: str) -> tuple[bool, str]:
        """
        Validate a subscriber name.

        Returns:
            Tuple of (is_valid, error_message)
        """
        if not name or not name.strip():
            return False, "Name must not be empty"

        if (
            len(name) > SubscriberNameValidator.MAX_CODE_POINTS
            or SubscriberNameValidator.visible_length(name) > SubscriberNameValidator.MAX_LENGTH
        ):
            return False, f"Name must be at most {SubscriberNameValidator.MAX_LENGTH} characters"

        if any(ch in ValidationPatterns.NAME_FORBIDDEN_CHARACTERS for ch in name):
            return False, "Name contains forbidden characters"

        return True, ""


class SubscriptionTokenValidator:

    @staticmethod
    def validate(token: str) -> bool:
        return bool(token) and bool(ValidationPatterns.SUBSCRIPTION_TOKEN.match(token))


class TextSanitizer:
    """Text sanitization for security"""

    @staticmethod
    def sanitize(text: str, max_length: int = 1000) -> str:
        """
        Sanitize text input for safe storage.

        Note: This does NOT HTML escape - that should be done at display time
        using sanitize_for_html(). This function only:
        - Trims whitespace
        - Enforces max length
        - Removes null bytes

        Args:
            text: Text to sanitize
            max_length: Maximum allowed length

        Returns:
            Sanitized text
        """
        if not text:
            return ""

        sanitized = text.strip()
        sanitized = sanitized[:max_length]
        sanitized = sanitized.replace("\x00", "")

        return sanitized

    @staticmethod
    def sanitize_for_html(text: str) -> str:
        """HTML-escape text for safe display"""
        if not text:
            return ""

        return html.escape(text)
