from src.app.application.pii import PiiCensor


def test_tokenize_replaces_known_patterns() -> None:
    censor = PiiCensor()

    text = censor.tokenize(
        "task-1", "Mail alice@example.com from 10.0.0.12, SSN 123-45-6789, call (555) 123-4567"
    )

    assert "alice@example.com" not in text
    assert "[PII_EMAIL_1]" in text
    assert "[PII_IPADDRESS_" in text
    assert "[PII_SSN_" in text
    assert "[PII_PHONE_" in text


def test_same_value_gets_same_placeholder_and_round_trips() -> None:
    censor = PiiCensor()
    data = {"to": ["bob@example.org", "bob@example.org"], "count": 2, "note": None}

    tokenized = censor.tokenize("task-1", data)

    assert tokenized == {"to": ["[PII_EMAIL_1]", "[PII_EMAIL_1]"], "count": 2, "note": None}
    assert censor.detokenize("task-1", tokenized) == data
    assert censor.stats("task-1") == {"token_count": 1, "types": {"EMAIL": 1}}


def test_sessions_are_isolated() -> None:
    censor = PiiCensor()
    censor.tokenize("task-1", "carol@example.com")

    assert censor.detokenize("task-2", "[PII_EMAIL_1]") == "[PII_EMAIL_1]"

    censor.clear_session("task-1")
    assert censor.detokenize("task-1", "[PII_EMAIL_1]") == "[PII_EMAIL_1]"
    assert censor.stats("task-1") == {"token_count": 0, "types": {}}


def test_custom_pattern_and_disabled_censor() -> None:
    censor = PiiCensor(patterns={})
    censor.add_pattern("employee-id", r"EMP\d{4}")

    assert censor.pattern_names == ["EMPLOYEEID"]
    assert censor.tokenize("task-1", "owner EMP0042") == "owner [PII_EMPLOYEEID_1]"

    disabled = PiiCensor(enabled=False)
    assert disabled.tokenize("task-1", "dave@example.com") == "dave@example.com"
