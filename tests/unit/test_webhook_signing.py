"""
Unit tests for webhook signing, backoff and retry configuration
"""

import base64
import hashlib
import hmac

import pytest

from refresh.webhooks import backoff_delay, sign_payload, verify_signature
from schemas.webhook import RetryConfig


class TestSignature:
    """HMAC-SHA256 payload signatures"""
    
    def test_signature_matches_hmac_sha256(self):
        body = b'{"event":"refresh.completed"}'
        expected = base64.b64encode(hmac.new(b"s3cret", body, hashlib.sha256).digest()).decode()
        
        assert sign_payload(body, "s3cret") == expected
    
    def test_verify(self):
        body = b'{"a":1}'
        signature = sign_payload(body, "key")
        
        assert verify_signature(body, "key", signature)
        assert not verify_signature(body, "other", signature)
        assert not verify_signature(b'{"a":2}', "key", signature)
        assert not verify_signature(body, "key", "")


class TestBackoff:
    """Backoff schedule lookup"""
    
    def test_schedule_steps_then_repeats_last(self):
        schedule = [5, 30, 300]
        assert [backoff_delay(i, schedule) for i in range(5)] == [5, 30, 300, 300, 300]
    
    def test_retry_config_merges_over_defaults(self):
        default = RetryConfig(max_attempts=3, backoff_seconds=[5, 30, 300])
        
        merged = RetryConfig.from_raw({"max_attempts": 5}, default)
        
        assert merged.max_attempts == 5
        assert merged.backoff_seconds == [5, 30, 300]
        assert RetryConfig.from_raw(None, default) == default
    
    def test_empty_schedule_rejected(self):
        with pytest.raises(ValueError):
            RetryConfig(backoff_seconds=[])
