"""Sensitive value wrapper and redaction registry."""

import hashlib
import json
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable

REDACTED = "(sensitive)"
DIGEST_KEY = "__sensitive_digest__"

# Shorter strings would redact common words out of unrelated log lines
MIN_SECRET_LENGTH = 4


class SecretRegistry:
    """Process-wide set of plaintext secrets to scrub from text."""

    def __init__(self):
        self._secrets: set = set()
        self._lock = threading.Lock()

    def register(self, value: Any) -> None:
        """Register every string found in value."""
        for text in _iter_strings(value):
            if len(text) >= MIN_SECRET_LENGTH:
                with self._lock:
                    self._secrets.add(text)

    def redact(self, text: str) -> str:
        """Replace every registered secret in text with the redaction marker."""
        if not text:
            return text
        with self._lock:
            secrets = sorted(self._secrets, key=len, reverse=True)
        for secret in secrets:
            if secret in text:
                text = text.replace(secret, REDACTED)
        return text

    def is_secret(self, text: str) -> bool:
        with self._lock:
            return text in self._secrets

    def clear(self) -> None:
        with self._lock:
            self._secrets.clear()


secret_registry = SecretRegistry()


@dataclass(frozen=True)
class Sensitive:
    """A value that must never be displayed, logged or persisted."""

    value: Any

    def __post_init__(self):
        secret_registry.register(self.value)

    def __repr__(self) -> str:
        return f"Sensitive({REDACTED})"

    def __str__(self) -> str:
        return REDACTED

    def digest(self) -> str:
        return digest_value(unwrap(self.value))


def _iter_strings(value: Any) -> Iterable[str]:
    if isinstance(value, Sensitive):
        yield from _iter_strings(value.value)
    elif isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _iter_strings(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _iter_strings(item)
    elif value is not None and not isinstance(value, bool):
        yield str(value)


def redact(text: str) -> str:
    """Scrub registered secrets from text."""
    return secret_registry.redact(text)


def digest_value(value: Any) -> str:
    """Stable SHA-256 digest of a plaintext value."""
    payload = json.dumps(value, sort_keys=True, default=str)
    return "sha256:" + hashlib.sha256(payload.encode("utf-8")).hexdigest()


def is_digest_marker(value: Any) -> bool:
    return isinstance(value, dict) and set(value) == {DIGEST_KEY}


def is_sensitive(value: Any) -> bool:
    """Check whether value is, or contains, a sensitive value."""
    if isinstance(value, Sensitive) or is_digest_marker(value):
        return True
    if isinstance(value, dict):
        return any(is_sensitive(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(is_sensitive(v) for v in value)
    return False


def unwrap(value: Any) -> Any:
    """Return value with every Sensitive wrapper replaced by its plaintext."""
    if isinstance(value, Sensitive):
        return unwrap(value.value)
    if isinstance(value, dict):
        return {k: unwrap(v) for k, v in value.items()}
    if isinstance(value, list):
        return [unwrap(v) for v in value]
    return value


def mask(value: Any) -> Any:
    """Return value with sensitive parts replaced by the redaction marker."""
    if isinstance(value, Sensitive) or is_digest_marker(value):
        return REDACTED
    if isinstance(value, dict):
        return {k: mask(v) for k, v in value.items()}
    if isinstance(value, list):
        return [mask(v) for v in value]
    return value


def to_persisted(value: Any) -> Any:
    """Return value with sensitive parts replaced by digest markers."""
    if isinstance(value, Sensitive):
        return {DIGEST_KEY: value.digest()}
    if isinstance(value, dict):
        return {k: to_persisted(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_persisted(v) for v in value]
    return value


def carry_sensitivity(attributes: Dict[str, Any], template: Dict[str, Any]) -> Dict[str, Any]:
    """Wrap attributes whose counterpart in template is sensitive.

    Providers hand back plaintext; the template (desired or previously stored
    attributes) says which top-level keys have to stay wrapped.
    """
    result = dict(attributes)
    for key, like in template.items():
        if key in result and is_sensitive(like) and not isinstance(result[key], Sensitive):
            if is_digest_marker(result[key]):
                continue
            result[key] = Sensitive(result[key])
    return result
