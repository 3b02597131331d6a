import hmac
import hashlib
import json
from typing import Any, Mapping, Union


def hmac_sha256_hex(secret: str, message: Union[bytes, str]) -> str:
    """
    Return hex-encoded HMAC SHA256 of message under secret.
    """
    if secret is None:
        raise ValueError("secret required for signing")
    if isinstance(message, str):
        message = message.encode("utf-8")
    mac = hmac.new(secret.encode("utf-8"), message, hashlib.sha256)
    return mac.hexdigest()


def constant_time_hex_equals(expected_hex: str, received: str | None) -> bool:
    """
    Compare two hex digests without leaking timing.
    A missing, non-hex or wrong-length value is a mismatch, never an exception.
    """
    if not received:
        return False
    try:
        received_bytes = bytes.fromhex(received.strip())
        expected_bytes = bytes.fromhex(expected_hex)
    except ValueError:
        return False
    if len(received_bytes) != len(expected_bytes):
        return False
    return hmac.compare_digest(expected_bytes, received_bytes)


def verify_body_signature(raw_body: Union[bytes, str], secret: str, signature: str | None) -> bool:
    """
    Verify signature == hex(HMAC_SHA256(secret, raw_body)).
    """
    return constant_time_hex_equals(hmac_sha256_hex(secret, raw_body), signature)


def _canonical_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), sort_keys=True, ensure_ascii=False)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def sorted_query_string(data: Mapping[str, Any]) -> str:
    """
    Build "k1=v1&k2=v2" with keys sorted, the data form checksum-signed gateways hash.
    None becomes "" and nested values are JSON encoded.
    """
    return "&".join(f"{k}={_canonical_value(data[k])}" for k in sorted(data.keys()))


def sign_sorted_data(data: Mapping[str, Any], secret: str) -> str:
    return hmac_sha256_hex(secret, sorted_query_string(data))
