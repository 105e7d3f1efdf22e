"""Tests for push token validation and health scoring."""

from datetime import datetime, timedelta, timezone

import pytest

from src.notifications.config import TokenFormat
from src.notifications.validation import TokenValidator, validate_token

from conftest import make_token

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)
FCM_ANDROID = "a" * 140
FCM_WEB = "b" * 160
APNS = "0123456789abcdef" * 4


class TestFormatRecognition:
    """Tests for the three token families."""

    def setup_method(self):
        self.validator = TokenValidator()

    def test_expo_legacy(self):
        result = self.validator.validate("ExponentPushToken[xxxxxxxxxxxxxxxxxxxxxx]")
        assert result.is_valid
        assert result.format == TokenFormat.EXPO
        assert result.metadata.token_type == "ExponentPushToken"
        assert result.metadata.is_legacy is True
        assert result.errors == ()

    def test_expo_modern(self):
        result = self.validator.validate("ExpoPushToken[abc123-def_456]")
        assert result.is_valid
        assert result.format == TokenFormat.EXPO
        assert result.metadata.is_legacy is False

    def test_fcm_android(self):
        result = self.validator.validate(FCM_ANDROID)
        assert result.is_valid
        assert result.format == TokenFormat.FCM
        assert result.metadata.platform == "android"

    def test_fcm_web(self):
        result = self.validator.validate(FCM_WEB)
        assert result.format == TokenFormat.FCM
        assert result.metadata.platform == "web"

    def test_apns_hex(self):
        result = self.validator.validate(APNS)
        assert result.is_valid
        assert result.format == TokenFormat.APNS
        assert result.metadata.platform == "ios"

    def test_deterministic(self):
        token = "ExponentPushToken[abcdefghij]"
        assert self.validator.validate(token) == self.validator.validate(token)

    def test_module_shortcut(self):
        assert validate_token(APNS).is_valid


class TestInvalidTokens:
    """Every rejection carries at least one descriptive error."""

    def setup_method(self):
        self.validator = TokenValidator()

    @pytest.mark.parametrize("token", [None, "", 12345, ["ExponentPushToken[abc]"]])
    def test_missing_or_not_string(self, token):
        result = self.validator.validate(token)
        assert not result.is_valid
        assert result.format == TokenFormat.UNKNOWN
        assert "not a string" in result.errors[0]

    def test_too_short(self):
        result = self.validator.validate("abc123")
        assert not result.is_valid
        assert "too short" in result.errors[0]

    def test_too_long(self):
        result = self.validator.validate("a" * 5000)
        assert "too long" in result.errors[0]

    def test_invalid_characters(self):
        result = self.validator.validate("not-a-valid-token!!")
        assert not result.is_valid
        assert "invalid characters" in result.errors[0]

    def test_unregistered_expo(self):
        result = self.validator.validate("ExponentPushToken[UNREGISTERED]")
        assert not result.is_valid
        assert result.format == TokenFormat.EXPO
        assert "unregistered" in result.errors[0]

    def test_unrecognized_format(self):
        # flat but shorter than any FCM token and not 64 hex chars
        result = self.validator.validate("abcdefghijklmnop")
        assert not result.is_valid
        assert result.errors == ("Token format not recognized",)

    def test_short_hex_is_not_apns(self):
        assert not self.validator.is_valid("abcdef0123456789")


class TestBatchValidate:

    def test_deduplicates(self):
        validator = TokenValidator()
        results = validator.batch_validate([APNS, APNS, "bad!token!!"])
        assert len(results) == 2
        assert results[APNS].is_valid
        assert not results["bad!token!!"].is_valid


class TestHealthScore:
    """Tests for the 0-100 health score."""

    def setup_method(self):
        self.validator = TokenValidator()

    def _score(self, token, **kwargs):
        record = make_token("u1", token, **kwargs)
        return self.validator.calculate_health_score(record, self.validator.validate(token), now=NOW)

    def test_fresh_legacy_token_with_device(self):
        score = self._score(
            "ExponentPushToken[abcdefghij]",
            device_id="dev-1",
            device_name="Pixel",
            created_at=NOW,
            last_used=NOW,
        )
        # 40 valid + 20 age + 20 recency + 5 legacy + 10 device
        assert score == 95

    def test_modern_token_scores_higher_than_legacy(self):
        legacy = self._score("ExponentPushToken[abcdefghij]", created_at=NOW, last_used=NOW)
        modern = self._score("ExpoPushToken[abcdefghij]", created_at=NOW, last_used=NOW)
        assert modern > legacy

    def test_invalid_token_loses_validity_points(self):
        score = self._score("bad!token!!", created_at=NOW, last_used=NOW)
        assert score == 40

    def test_score_decreases_with_inactivity(self):
        scores = [
            self._score(APNS, created_at=NOW, last_used=NOW - timedelta(days=days))
            for days in (0, 10, 45, 200)
        ]
        assert scores == sorted(scores, reverse=True)
        assert scores[0] - scores[-1] == 15

    def test_score_bounded(self):
        score = self._score(
            "ExpoPushToken[abcdefghij]",
            device_id="d",
            device_name="n",
            created_at=NOW,
            last_used=NOW,
        )
        assert 0 <= score <= 100
