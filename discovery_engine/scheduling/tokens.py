"""Date token resolution for path and filename patterns.

Recognized tokens are exactly ``{yyyy}``, ``{yy}``, ``{mm}`` and ``{dd}``. Anything
else in braces (including upper-case variants) is literal text.
"""

import logging
import re
from datetime import datetime
from typing import Optional
from urllib.parse import urlsplit

from discovery_engine.errors import InvalidTokenPlacement
from discovery_engine.utils.timeutils import as_utc

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"\{(yyyy|yy|mm|dd)\}")
BRACED_PATTERN = re.compile(r"\{[^{}]*\}")


def resolve(pattern: str, at: datetime) -> str:
    """
    Substitute date tokens in pattern using at normalized to UTC.

    Args:
        pattern: Path or filename pattern
        at: Reference timestamp (naive values are treated as UTC)

    Returns:
        Pattern with every recognized token replaced
    """
    moment = as_utc(at)
    values = {
        "yyyy": f"{moment.year:04d}",
        "yy": f"{moment.year % 100:02d}",
        "mm": f"{moment.month:02d}",
        "dd": f"{moment.day:02d}",
    }
    return TOKEN_PATTERN.sub(lambda match: values[match.group(1)], pattern)


def contains_tokens(value: Optional[str]) -> bool:
    return bool(value) and TOKEN_PATTERN.search(value) is not None


def unrecognized_placeholders(pattern: str) -> list[str]:
    """Braced segments that will be kept as literal text."""
    return [
        match.group(0)
        for match in BRACED_PATTERN.finditer(pattern)
        if not TOKEN_PATTERN.fullmatch(match.group(0))
    ]


def validate_pattern(pattern: str, field_name: str = "pattern") -> None:
    """
    Reject patterns that place tokens in the host/authority component.

    Absolute URLs (``scheme://authority/path``) and protocol-relative
    ``//authority/path`` values are split; plain paths have no authority.

    Raises:
        InvalidTokenPlacement: If a token appears in the authority
    """
    if not pattern:
        return

    # urlsplit does not cope with braces in the port position, so fall back
    # to a manual split of the authority.
    if "://" in pattern or pattern.startswith("//"):
        try:
            authority = urlsplit(pattern).netloc
        except ValueError:
            authority = pattern.split("//", 1)[1].split("/", 1)[0]
        if contains_tokens(authority) or BRACED_PATTERN.search(authority):
            raise InvalidTokenPlacement(
                f"{field_name}: date tokens are not allowed in the host "
                f"'{authority}'"
            )

    literal = unrecognized_placeholders(pattern)
    if literal:
        logger.warning(
            "%s contains unrecognized placeholders kept as literal text: %s",
            field_name,
            ", ".join(literal),
        )


def validate_host(value: Optional[str], field_name: str) -> None:
    """Reject tokens in a setting that names a host, endpoint or bucket."""
    if value and (contains_tokens(value) or BRACED_PATTERN.search(value)):
        raise InvalidTokenPlacement(
            f"{field_name}: date tokens are not allowed in '{value}'"
        )
