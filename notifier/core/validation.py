"""
Input Validation Utilities

Validation for webhook subscription input:
- Destination URL validation (rejected synchronously, before persisting)
- Custom header names/values
- Event names against the catalog
- Truncation helpers for stored diagnostics
"""
import ipaddress
import re
from urllib.parse import urlsplit, urlunsplit

from notifier.domain.events import is_known_event


class ValidationPatterns:
    """Regex patterns for validation"""

    # RFC 7230 token
    HEADER_NAME = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]{1,100}$")

    # Visible ASCII plus space/tab, no CR/LF (header injection)
    HEADER_VALUE = re.compile(r"^[\t\x20-\x7e]{0,1000}$")

    HOSTNAME = re.compile(
        r"^(?=.{1,253}$)(?:[A-Za-z0-9](?:[A-Za-z0-9\-]{0,61}[A-Za-z0-9])?\.)*"
        r"[A-Za-z0-9](?:[A-Za-z0-9\-]{0,61}[A-Za-z0-9])?\.?$"
    )


class WebhookUrlValidator:
    """Destination URL validation"""

    MAX_LENGTH = 2048
    ALLOWED_SCHEMES = ("http", "https")
    LOCAL_HOSTNAMES = ("localhost", "localhost.localdomain")

    @staticmethod
    def validate(url: str, allow_private: bool = False) -> tuple[bool, str | None]:
        """
        Validate a webhook destination.

        Args:
            url: Absolute URL the deliveries will be POSTed to
            allow_private: Accept loopback / private-network hosts

        Returns:
            Tuple of (is_valid, error_message)
        """
        if not url or not url.strip():
            return False, "URL is required"

        url = url.strip()
        if len(url) > WebhookUrlValidator.MAX_LENGTH:
            return False, f"URL too long (maximum {WebhookUrlValidator.MAX_LENGTH} characters)"

        try:
            parts = urlsplit(url)
            port = parts.port
        except ValueError:
            return False, "URL is not well-formed"

        if parts.scheme.lower() not in WebhookUrlValidator.ALLOWED_SCHEMES:
            return False, "URL must use http or https"

        host = parts.hostname
        if not host:
            return False, "URL must include a host"

        if port is not None and port == 0:
            return False, "URL port is invalid"

        try:
            address = ipaddress.ip_address(host)
        except ValueError:
            address = None

        if address is None and not ValidationPatterns.HOSTNAME.match(host):
            return False, "URL host is not a valid hostname"

        if not allow_private:
            if host.lower() in WebhookUrlValidator.LOCAL_HOSTNAMES:
                return False, "URL must not point to localhost"
            if address is not None and (
                address.is_private
                or address.is_loopback
                or address.is_link_local
                or address.is_reserved
                or address.is_multicast
                or address.is_unspecified
            ):
                return False, "URL must not point to a private or reserved address"

        return True, None

    @staticmethod
    def mask(url: str) -> str:
        """
        Strip credentials, query and fragment for logging.

        Subscriber URLs sometimes embed tokens (``?token=...``), which must not
        end up in log sinks.
        """
        try:
            parts = urlsplit(url)
        except ValueError:
            return "<invalid url>"
        netloc = parts.hostname or ""
        if parts.port:
            netloc = f"{netloc}:{parts.port}"
        return urlunsplit((parts.scheme, netloc, parts.path, "", ""))


class HeaderValidator:
    """Custom header validation"""

    MAX_HEADERS = 20

    # Managed by the HTTP client; a custom value would corrupt the request
    FORBIDDEN = frozenset({
        "host",
        "content-length",
        "transfer-encoding",
        "connection",
        "keep-alive",
        "upgrade",
        "te",
        "trailer",
    })

    @staticmethod
    def validate(headers: dict[str, str]) -> tuple[bool, str | None]:
        if len(headers) > HeaderValidator.MAX_HEADERS:
            return False, f"Too many custom headers (maximum {HeaderValidator.MAX_HEADERS})"

        for name, value in headers.items():
            if not isinstance(name, str) or not ValidationPatterns.HEADER_NAME.match(name):
                return False, f"Invalid header name: {name!r}"
            if name.lower() in HeaderValidator.FORBIDDEN:
                return False, f"Header '{name}' cannot be overridden"
            if not isinstance(value, str) or not ValidationPatterns.HEADER_VALUE.match(value):
                return False, f"Invalid value for header '{name}'"

        return True, None


class TextSanitizer:
    """Helpers for bounded diagnostic strings"""

    @staticmethod
    def remove_control_characters(text: str) -> str:
        """Keep newlines and tabs, remove other control chars (e.g. NUL, rejected by PostgreSQL)."""
        if not text:
            return ""
        return "".join(
            char for char in text
            if char >= " " or char in "\n\r\t"
        )

    @staticmethod
    def diagnostic(text: str | None, max_length: int) -> str | None:
        """Clean and truncate a string that came from a remote server."""
        if text is None:
            return None
        return TextSanitizer.remove_control_characters(text)[:max_length]


# Pydantic field validators for reuse
def webhook_url_validator(v: str | None, allow_private: bool = False) -> str | None:
    """Pydantic field validator for destination URLs"""
    if v is None:
        return None
    is_valid, error = WebhookUrlValidator.validate(v, allow_private=allow_private)
    if not is_valid:
        raise ValueError(error)
    return v.strip()


def headers_validator(v: dict[str, str] | None) -> dict[str, str] | None:
    """Pydantic field validator for custom headers"""
    if v is None:
        return None
    is_valid, error = HeaderValidator.validate(v)
    if not is_valid:
        raise ValueError(error)
    return v


def events_validator(v: list[str] | None) -> list[str] | None:
    """Pydantic field validator for subscribed event names (deduplicated, order kept)"""
    if v is None:
        return None
    if not v:
        raise ValueError("At least one event is required")
    unknown = [name for name in v if not is_known_event(name)]
    if unknown:
        raise ValueError(f"Unknown events: {', '.join(sorted(set(unknown)))}")
    return list(dict.fromkeys(v))
