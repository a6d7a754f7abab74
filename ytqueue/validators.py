"""Validation of user-supplied values."""
from urllib.parse import urlsplit

from .exceptions import ValidationError

ALLOWED_SCHEMES = ('http', 'https', 'ftp', 'ftps')


def validate_url(url) -> str:
    """
    Returns the trimmed URL.

    Raises:
        ValidationError: If the URL is missing, blank, or not an http(s)/ftp(s) URL with a host.
    """
    if not url or not isinstance(url, str):
        raise ValidationError("URL is required")

    trimmed_url = url.strip()
    if not trimmed_url:
        raise ValidationError("URL cannot be empty")

    try:
        parsed = urlsplit(trimmed_url)
    except ValueError:
        raise ValidationError("Please enter a valid URL") from None
    if parsed.scheme.lower() not in ALLOWED_SCHEMES or not parsed.netloc:
        raise ValidationError("Please enter a valid URL")

    return trimmed_url


def validate_filename(filename) -> str:
    """
    Returns the trimmed filename.

    Raises:
        ValidationError: If the name is missing, blank, or contains a path component.
    """
    if not filename or not isinstance(filename, str):
        raise ValidationError("Filename is required")

    trimmed_filename = filename.strip()
    if not trimmed_filename:
        raise ValidationError("Filename cannot be empty")

    if '..' in trimmed_filename or '/' in trimmed_filename or '\\' in trimmed_filename:
        raise ValidationError("Invalid filename provided")

    return trimmed_filename
