from __future__ import annotations

from tradeledger.security.redaction import REDACTED, redact_value, sanitize_mapping, sanitize_text


def test_sanitize_mapping_masks_sensitive_keys() -> None:
    sanitized = sanitize_mapping(
        {"BYBIT_API_KEY": "abcd1234efgh5678", "category": "linear", "sign": None}
    )

    assert sanitized["BYBIT_API_KEY"] == "abcd********5678"
    assert sanitized["category"] == "linear"
    assert sanitized["sign"] == REDACTED


def test_sanitize_text_masks_headers_and_known_secrets() -> None:
    text = "X-BAPI-SIGN: 0123456789abcdef X-BAPI-API-KEY=mykey value=topsecretvalue"

    sanitized = sanitize_text(text, known_secrets=["topsecretvalue"])

    assert "0123456789abcdef" not in sanitized
    assert "mykey" not in sanitized
    assert "topsecretvalue" not in sanitized


def test_redact_value_walks_nested_containers() -> None:
    payload = {"request": {"params": [{"api_secret": "shhh-very-secret"}]}, "count": 3}

    redacted = redact_value(payload)

    assert redacted["count"] == 3
    assert "shhh-very-secret" not in str(redacted)
