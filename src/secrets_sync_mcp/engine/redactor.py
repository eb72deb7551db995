"""Credential redaction for logs, audit metadata and error messages.

Every string that leaves the engine towards a log handler or the audit
trail passes through a ``Redactor``. Three layers are applied:

1. Known values: plaintext values the engine is currently distributing
   (registered with ``add_secret``) are replaced wherever they occur.
2. Pattern table: one compiled, priority-ordered alternation of credential
   shapes (platform tokens, cloud keys, JWTs, bearer headers, URL
   passwords, ``key=value`` assignments). The first matching kind at each
   position wins.
3. Entropy heuristic: residual long tokens that look random are masked.

Dictionaries are also redacted by key: values stored under sensitive keys
(``password``, ``token``, ``authorization`` ...) are masked whatever they
contain.

Example:
    >>> redactor = Redactor()
    >>> redactor.redact_text("token=ghp_" + "a" * 36)
    'token=***REDACTED***'
    >>> redactor.redact({"password": "hunter22", "user": "admin"})
    {'password': '***REDACTED***', 'user': 'admin'}
"""

from __future__ import annotations

import logging
import math
import re
from collections import Counter
from dataclasses import dataclass
from typing import Any

# Ordered: earlier entries win when several kinds could match at one position.
PATTERN_TABLE: tuple[tuple[str, str], ...] = (
    ("github_token", r"\b(?:ghp|gho|ghu|ghs|ghr)_[A-Za-z0-9]{36,}\b"),
    ("github_fine_grained_token", r"\bgithub_pat_[A-Za-z0-9_]{22,}\b"),
    ("aws_access_key", r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b"),
    ("stripe_key", r"\b(?:sk|rk|pk)_(?:live|test)_[A-Za-z0-9]{16,}\b"),
    ("neon_key", r"\bneon_[A-Za-z0-9_]{16,}\b"),
    ("jwt", r"\beyJ[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}"),
    ("bearer_token", r"(?i:\bbearer\s+)[A-Za-z0-9._~+/=-]{8,}"),
    ("url_credentials", r"(?<=://)[^:/\s@]+:[^@\s/]+(?=@)"),
    (
        "assignment",
        r"(?i:\b(?:password|passwd|pwd|secret|token|api[_-]?key|client[_-]?secret"
        r"|refresh[_-]?token|access[_-]?token|private[_-]?key)\b)\s*[:=]\s*"
        r"[^\s,;&\"']+",
    ),
    ("high_entropy", r"\b[A-Za-z0-9+_=-]{24,}\b"),
)

SENSITIVE_KEYS = frozenset(
    {
        "password",
        "pass",
        "secret",
        "token",
        "accesstoken",
        "refreshtoken",
        "apikey",
        "authorization",
        "auth",
        "bearer",
        "privatekey",
        "clientsecret",
        "codeverifier",
        "value",
        "encryptedvalue",
    }
)

_UUID = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I)
_SECRET_NAME_SHAPE = re.compile(r"^[A-Z][A-Z0-9_]*$")
_ASSIGNMENT_PREFIX = re.compile(r"^(.*?[:=]\s*)", re.S)


@dataclass(frozen=True)
class RedactionMatch:
    """A credential-shaped substring found in a text."""

    kind: str
    span: tuple[int, int]


def shannon_entropy(text: str) -> float:
    """Bits per character of ``text``."""
    if not text:
        return 0.0
    length = len(text)
    return -sum((n / length) * math.log2(n / length) for n in Counter(text).values())


def _looks_random(token: str) -> bool:
    if _UUID.match(token) or _SECRET_NAME_SHAPE.match(token):
        return False
    if not (re.search(r"\d", token) and re.search(r"[A-Za-z]", token)):
        return False
    if len(set(token)) < min(6, math.ceil(len(token) / 4)):
        return False
    return shannon_entropy(token) >= 3.2


class Redactor:
    """Masks credentials in strings and nested data structures.

    Attributes:
        MIN_SECRET_LENGTH: Shortest known value that is registered (8)
        REDACTION_MARKER: Replacement text ("***REDACTED***")
    """

    MIN_SECRET_LENGTH = 8
    REDACTION_MARKER = "***REDACTED***"

    def __init__(self) -> None:
        self._known_values: set[str] = set()
        self._known_pattern: re.Pattern[str] | None = None
        self._kinds = [kind for kind, _ in PATTERN_TABLE]
        self._table = re.compile(
            "|".join(f"(?P<{kind}>{pattern})" for kind, pattern in PATTERN_TABLE)
        )

    def add_secret(self, value: str) -> None:
        """Register a plaintext value so it is masked wherever it appears.

        Values shorter than MIN_SECRET_LENGTH are ignored to avoid masking
        common short strings.
        """
        if len(value) < self.MIN_SECRET_LENGTH or value in self._known_values:
            return

        self._known_values.add(value)
        # Longest first so a value is never partially masked by its own prefix
        ordered = sorted(self._known_values, key=len, reverse=True)
        self._known_pattern = re.compile("|".join(re.escape(v) for v in ordered))

    @property
    def known_value_count(self) -> int:
        return len(self._known_values)

    def find(self, text: str) -> list[RedactionMatch]:
        """Return the credential-shaped spans of ``text`` in order.

        Known values are not reported here; they are masked unconditionally
        by ``redact_text``.
        """
        matches = []
        for m in self._table.finditer(text):
            kind = self._kind_of(m)
            if kind == "high_entropy" and not _looks_random(m.group(0)):
                continue
            matches.append(RedactionMatch(kind=kind, span=m.span()))
        return matches

    def redact_text(self, text: str) -> str:
        if self._known_pattern is not None:
            text = self._known_pattern.sub(self.REDACTION_MARKER, text)
        return self._table.sub(self._replace, text)

    def redact(self, data: Any) -> Any:  # noqa: ANN401
        """Redact credentials from any data structure, preserving its shape."""
        if isinstance(data, str):
            return self.redact_text(data)

        if isinstance(data, dict):
            return {key: self._redact_item(key, value) for key, value in data.items()}

        if isinstance(data, list):
            return [self.redact(item) for item in data]

        if isinstance(data, tuple):
            return tuple(self.redact(item) for item in data)

        return data

    def _redact_item(self, key: Any, value: Any) -> Any:  # noqa: ANN401
        if isinstance(key, str) and value not in (None, ""):
            normalized = re.sub(r"[^a-z]", "", key.lower())
            if normalized in SENSITIVE_KEYS and not isinstance(value, (dict, list, bool)):
                return self.REDACTION_MARKER
        return self.redact(value)

    def _kind_of(self, match: re.Match[str]) -> str:
        return next(kind for kind in self._kinds if match.group(kind) is not None)

    def _replace(self, match: re.Match[str]) -> str:
        kind = self._kind_of(match)
        token = match.group(0)

        if kind == "high_entropy" and not _looks_random(token):
            return token

        if kind == "assignment":
            # Keep "password=" so the log line stays readable
            prefix = _ASSIGNMENT_PREFIX.match(token)
            if prefix:
                return prefix.group(1) + self.REDACTION_MARKER

        if kind == "bearer_token":
            return token.split(None, 1)[0] + " " + self.REDACTION_MARKER

        return self.REDACTION_MARKER


class RedactingFilter(logging.Filter):
    """Logging filter that redacts the rendered message of every record."""

    def __init__(self, redactor: Redactor) -> None:
        super().__init__()
        self.redactor = redactor

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self.redactor.redact_text(record.getMessage())
        record.args = None
        if record.exc_info and not record.exc_text:
            record.exc_text = self.redactor.redact_text(
                logging.Formatter().formatException(record.exc_info)
            )
        return True


def install_log_redaction(redactor: Redactor, logger: logging.Logger | None = None) -> None:
    """Attach a RedactingFilter to every handler of ``logger`` (root by default).

    Filters on handlers also see records propagated from child loggers.
    """
    target = logger or logging.getLogger()
    for handler in target.handlers:
        if not any(isinstance(f, RedactingFilter) for f in handler.filters):
            handler.addFilter(RedactingFilter(redactor))


__all__ = [
    "PATTERN_TABLE",
    "SENSITIVE_KEYS",
    "RedactionMatch",
    "Redactor",
    "RedactingFilter",
    "install_log_redaction",
    "shannon_entropy",
]
