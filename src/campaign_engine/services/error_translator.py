"""Translate platform errors into messages an advertiser can act on."""

import re
from dataclasses import dataclass

from campaign_engine.domain.enums import ErrorCategory

RATE_LIMIT_CODES = {4, 17, 613, 80004}
PERMISSION_CODES = {190, 200}
ACCOUNT_RESTRICTED_CODE = 2635
POLICY_CODE = 1487741
INVALID_PARAM_CODE = 100

MAX_MESSAGE_LENGTH = 200


@dataclass(frozen=True)
class TranslatedError:
    """User-facing view of a platform error."""

    user_friendly_message: str
    error_code: str
    category: ErrorCategory
    is_technical: bool


def _as_int(code: int | str | None) -> int | None:
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


def simplify_message(message: str) -> str:
    """Strip error codes and stack references, and cap the length."""
    simplified = re.sub(r"\(#\d+\)", "", message)
    simplified = re.sub(r"\bat\s+[\w.]+:\d+:\d+", "", simplified)
    simplified = re.sub(r"\bError:\s*", "", simplified).strip()
    if len(simplified) > MAX_MESSAGE_LENGTH:
        simplified = simplified[: MAX_MESSAGE_LENGTH - 3] + "..."
    return simplified


def translate_error(
    code: int | str | None, message: str | None, network: bool = False
) -> TranslatedError:
    """Map a platform error code and message to a category and friendly text."""
    number = _as_int(code)
    text = message or "Unknown error"
    lowered = text.lower()
    code_str = str(code) if code is not None else "UNKNOWN"

    def result(msg: str, category: ErrorCategory, technical: bool = False) -> TranslatedError:
        return TranslatedError(msg, code_str, category, technical)

    if network:
        return result(
            "Connection to the ad platform timed out. The request is retried automatically.",
            ErrorCategory.NETWORK,
        )
    if number in RATE_LIMIT_CODES:
        return result(
            "Ad platform rate limit reached. Creation continues with automatic retries, "
            "please wait a few minutes.",
            ErrorCategory.RATE_LIMIT,
        )
    if number == INVALID_PARAM_CODE and "budget" in lowered:
        return result(
            "Budget settings are invalid. Check that the daily or lifetime budget meets "
            "the platform minimum.",
            ErrorCategory.BUDGET,
        )
    if number == INVALID_PARAM_CODE and ("targeting" in lowered or "audience" in lowered):
        return result(
            "Targeting is too narrow or invalid. Adjust location, age or interests.",
            ErrorCategory.TARGETING,
        )
    if number in PERMISSION_CODES:
        return result(
            "Access token expired or permissions are missing. Reconnect the ad account.",
            ErrorCategory.PERMISSIONS,
        )
    if number == ACCOUNT_RESTRICTED_CODE:
        return result(
            "The ad account has spending restrictions. Check the ad account settings.",
            ErrorCategory.ACCOUNT,
        )
    if any(word in lowered for word in ("image", "video", "media")):
        return result(
            "Media upload failed. Check file size, format and dimensions.",
            ErrorCategory.MEDIA,
        )
    if number == POLICY_CODE or "policy" in lowered or "prohibited" in lowered:
        return result(
            "The ad violates advertising policies. Review ad text, images and targeting.",
            ErrorCategory.POLICY,
        )
    if "pixel" in lowered or "conversion" in lowered:
        return result(
            "Pixel or conversion tracking setup is invalid. Check the pixel configuration.",
            ErrorCategory.PIXEL,
        )
    if "placement" in lowered:
        return result(
            "Invalid placement settings. Check the selected placements.",
            ErrorCategory.PLACEMENT,
        )
    if number == INVALID_PARAM_CODE:
        return result(
            f"Invalid settings: {simplify_message(text)}",
            ErrorCategory.INVALID_PARAM,
            technical=True,
        )
    return result(
        f"Ad platform error: {simplify_message(text)}",
        ErrorCategory.UNKNOWN,
        technical=True,
    )


def is_retryable(code: int | str | None) -> bool:
    """Whether an error with this code may succeed on a later attempt."""
    number = _as_int(code)
    if number in RATE_LIMIT_CODES:
        return True
    if number is not None and 500 <= number < 600:
        return True
    if number in PERMISSION_CODES or number == POLICY_CODE:
        return False
    return True
