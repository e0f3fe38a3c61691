from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Any, Pattern

logger = logging.getLogger(__name__)

DEFAULT_PATTERNS: dict[str, str] = {
    "email": r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b",
    "creditcard": r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b",
    "ssn": r"\b\d{3}-\d{2}-\d{4}\b",
    "ipaddress": r"\b(?:\d{1,3}\.){3}\d{1,3}\b",
    "phone": r"(?<![\w+])(?:\+\d{1,3}[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b",
}

_PLACEHOLDER = re.compile(r"\[PII_([A-Z0-9]+)_(\d+)\]")


class _Session:
    __slots__ = ("by_token", "by_value", "types")

    def __init__(self) -> None:
        self.by_token: dict[str, str] = {}
        self.by_value: dict[str, str] = {}
        self.types: Counter = Counter()


class PiiCensor:
    """
    Replaces personal data in tool traffic with stable placeholders.

    Each session (one per task) keeps its own placeholder table, so the
    sandbox only ever sees ``[PII_EMAIL_1]`` while the tool receives the real
    value back. Strings are scanned recursively through dicts and lists; other
    values pass through untouched.
    """

    def __init__(self, patterns: dict[str, str] | None = None, enabled: bool = True) -> None:
        self.enabled = enabled
        self._patterns: dict[str, Pattern[str]] = {}
        self._sessions: dict[str, _Session] = {}
        for name, regex in (patterns or DEFAULT_PATTERNS).items():
            self.add_pattern(name, regex)

    def add_pattern(self, name: str, regex: str | Pattern[str]) -> None:
        label = re.sub(r"[^A-Za-z0-9]", "", name).upper()
        if not label:
            raise ValueError(f"Pattern name {name!r} has no usable characters")
        self._patterns[label] = re.compile(regex) if isinstance(regex, str) else regex
        logger.debug("Registered PII pattern %s", label)

    @property
    def pattern_names(self) -> list[str]:
        return list(self._patterns)

    def tokenize(self, session_id: str, data: Any) -> Any:
        if not self.enabled or data is None:
            return data
        session = self._sessions.setdefault(session_id, _Session())
        return self._walk(data, lambda text: self._tokenize_text(session, text))

    def detokenize(self, session_id: str, data: Any) -> Any:
        if not self.enabled or data is None:
            return data
        session = self._sessions.get(session_id)
        if session is None or not session.by_token:
            return data

        def restore(text: str) -> str:
            return _PLACEHOLDER.sub(lambda m: session.by_token.get(m.group(0), m.group(0)), text)

        return self._walk(data, restore)

    def clear_session(self, session_id: str) -> None:
        if self._sessions.pop(session_id, None) is not None:
            logger.debug("Cleared PII session", extra={"task_id": session_id})

    def stats(self, session_id: str) -> dict[str, Any]:
        session = self._sessions.get(session_id)
        if session is None:
            return {"token_count": 0, "types": {}}
        return {"token_count": len(session.by_token), "types": dict(session.types)}

    def _tokenize_text(self, session: _Session, text: str) -> str:
        for label, pattern in self._patterns.items():
            text = pattern.sub(lambda m: self._placeholder(session, label, m.group(0)), text)
        return text

    @staticmethod
    def _placeholder(session: _Session, label: str, value: str) -> str:
        if _PLACEHOLDER.fullmatch(value):
            return value
        token = session.by_value.get(value)
        if token is None:
            token = f"[PII_{label}_{len(session.by_token) + 1}]"
            session.by_token[token] = value
            session.by_value[value] = token
            session.types[label] += 1
        return token

    def _walk(self, data: Any, convert) -> Any:
        if isinstance(data, str):
            return convert(data)
        if isinstance(data, dict):
            return {key: self._walk(value, convert) for key, value in data.items()}
        if isinstance(data, (list, tuple)):
            return [self._walk(item, convert) for item in data]
        return data
