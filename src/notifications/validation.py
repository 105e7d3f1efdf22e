"""Push token format validation and health scoring.

Validation is pure: it reads nothing but the token string, so the same
input always yields an equal result. Health scoring reads the record's
timestamps against an injectable ``now``.
"""

import re
from datetime import datetime, timezone
from typing import Iterable, Optional

from src.notifications.config import (
    APNS_TOKEN_LENGTH,
    FCM_ANDROID_MIN_LENGTH,
    FCM_WEB_MIN_LENGTH,
    MAX_TOKEN_LENGTH,
    MIN_TOKEN_LENGTH,
    UNREGISTERED_MARKER,
    TokenFormat,
)
from src.notifications.models import PushToken, TokenMetadata, TokenValidationResult

ALLOWED_CHARS = re.compile(r"^[A-Za-z0-9_\-\[\]]+$")
EXPO_LEGACY = re.compile(r"^ExponentPushToken\[([A-Za-z0-9_-]+)\]$")
EXPO_MODERN = re.compile(r"^ExpoPushToken\[([A-Za-z0-9_-]+)\]$")
FCM_FLAT = re.compile(r"^[A-Za-z0-9_-]+$")
APNS_HEX = re.compile(r"^[A-Fa-f0-9]{%d}$" % APNS_TOKEN_LENGTH)

# (max_age_days, points); the last bucket catches everything older
_AGE_BUCKETS = ((7, 20), (30, 15), (90, 10))
_OLDEST_BUCKET_POINTS = 5


def _invalid(error: str, fmt: TokenFormat = TokenFormat.UNKNOWN,
             metadata: Optional[TokenMetadata] = None) -> TokenValidationResult:
    return TokenValidationResult(
        is_valid=False,
        format=fmt,
        errors=(error,),
        metadata=metadata or TokenMetadata(),
    )


def _bucket_points(days: float) -> int:
    for limit, points in _AGE_BUCKETS:
        if days < limit:
            return points
    return _OLDEST_BUCKET_POINTS


def _days_between(earlier: Optional[datetime], now: datetime) -> float:
    if earlier is None:
        return float("inf")
    if earlier.tzinfo is None:
        earlier = earlier.replace(tzinfo=timezone.utc)
    return (now - earlier).total_seconds() / 86400


class TokenValidator:
    """Validates push token syntax and scores stored token health."""

    def validate(self, token: object) -> TokenValidationResult:
        """Validate a single push token.

        Checks, in order: type/emptiness, length bounds, character
        whitelist, then the three format families (Expo bracketed,
        FCM flat, APNs hex). Exactly one family can match.
        """
        if not isinstance(token, str) or not token:
            return _invalid("Token is null, empty, or not a string")

        if len(token) < MIN_TOKEN_LENGTH:
            return _invalid(f"Token too short (minimum {MIN_TOKEN_LENGTH} characters)")

        if len(token) > MAX_TOKEN_LENGTH:
            return _invalid(f"Token too long (maximum {MAX_TOKEN_LENGTH} characters)")

        if not ALLOWED_CHARS.match(token):
            return _invalid("Token contains invalid characters")

        for pattern, token_type, is_legacy in (
            (EXPO_LEGACY, "ExponentPushToken", True),
            (EXPO_MODERN, "ExpoPushToken", False),
        ):
            match = pattern.match(token)
            if match:
                metadata = TokenMetadata(token_type=token_type, is_legacy=is_legacy)
                if match.group(1).upper() == UNREGISTERED_MARKER:
                    return _invalid("Token is unregistered", TokenFormat.EXPO, metadata)
                return TokenValidationResult(True, TokenFormat.EXPO, (), metadata)

        if FCM_FLAT.match(token) and len(token) >= FCM_ANDROID_MIN_LENGTH:
            platform = "web" if len(token) >= FCM_WEB_MIN_LENGTH else "android"
            return TokenValidationResult(
                True,
                TokenFormat.FCM,
                (),
                TokenMetadata(token_type="FCM", platform=platform),
            )

        if APNS_HEX.match(token):
            return TokenValidationResult(
                True,
                TokenFormat.APNS,
                (),
                TokenMetadata(token_type="APNS", platform="ios"),
            )

        return _invalid("Token format not recognized")

    def is_valid(self, token: object) -> bool:
        return self.validate(token).is_valid

    def batch_validate(self, tokens: Iterable[str]) -> dict[str, TokenValidationResult]:
        """Validate many tokens; duplicates are validated once."""
        results: dict[str, TokenValidationResult] = {}
        for token in tokens:
            if token not in results:
                results[token] = self.validate(token)
        return results

    def calculate_health_score(
        self,
        record: PushToken,
        validation: TokenValidationResult,
        now: Optional[datetime] = None,
    ) -> int:
        """Score a stored token from 0 (dead) to 100 (fresh and complete).

        Components: validity (40), token age (5-20), recency of use (5-20),
        Expo format modernity (5-10) and device metadata completeness (0-10).
        """
        now = now or datetime.now(timezone.utc)
        score = 40 if validation.is_valid else 0

        score += _bucket_points(_days_between(record.created_at, now))
        score += _bucket_points(_days_between(record.last_used, now))

        if validation.metadata.is_legacy is False:
            score += 10
        elif validation.metadata.is_legacy is True:
            score += 5

        if record.device_id and record.device_name:
            score += 10
        elif record.device_id or record.device_name:
            score += 5

        return max(0, min(100, score))


def validate_token(token: object) -> TokenValidationResult:
    """Module-level shortcut for one-off validation."""
    return _DEFAULT_VALIDATOR.validate(token)


_DEFAULT_VALIDATOR = TokenValidator()
