"""Read-only checks for step SQL and scrubbing of database text for prompts.

A step's statement is tested against a fixed set of mutating keywords before
any executor sees it. The keyword may appear anywhere in the text, in any
case; only whole words count, so ``updated_at`` or ``created_by`` pass.
String literals are not exempt: ``WHERE note = 'drop'`` is rejected too.
"""

import re
from dataclasses import dataclass
from typing import NamedTuple

from stepsql.errors import UnsafeQueryError

MUTATING_KEYWORDS = ("INSERT", "UPDATE", "DELETE", "DROP", "ALTER", "EXEC", "CREATE")

# Phrases in result data that read like instructions to the model
_INJECTION_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"(ignore|disregard|forget)\s+(previous|all|above)\s+instructions?",
        r"new\s+instructions?:",
        r"\b(system|assistant|user)\s*:",
        r"\[/?INST\]",
        r"<\|im_(start|end)\|>",
        r"<</?SYS>>",
    )
)

FILTERED = "[FILTERED]"


class ValidationResult(NamedTuple):
    """Outcome of the read-only check."""

    is_valid: bool
    error: str | None = None
    blocked_keywords: list[str] | None = None


@dataclass
class GuardrailConfig:
    """Keyword list and prompt-text limits."""

    blocked_keywords: tuple[str, ...] = MUTATING_KEYWORDS
    max_prompt_text_length: int = 1000

    def keyword_pattern(self) -> re.Pattern:
        alternation = "|".join(re.escape(keyword) for keyword in self.blocked_keywords)
        return re.compile(rf"\b({alternation})\b", re.IGNORECASE)


DEFAULT_CONFIG = GuardrailConfig()
_DEFAULT_KEYWORD_RE = DEFAULT_CONFIG.keyword_pattern()


def detect_dangerous_keywords(sql: str, config: GuardrailConfig | None = None) -> list[str]:
    """Mutating keywords found in ``sql``, upper-cased, in order of first appearance."""
    pattern = _DEFAULT_KEYWORD_RE if config is None else config.keyword_pattern()
    found: list[str] = []
    for match in pattern.finditer(sql):
        keyword = match.group(1).upper()
        if keyword not in found:
            found.append(keyword)
    return found


def validate_sql(sql: str | None, config: GuardrailConfig | None = None) -> ValidationResult:
    if sql is None or not sql.strip():
        return ValidationResult(is_valid=False, error="Empty SQL query")

    blocked = detect_dangerous_keywords(sql, config)
    if not blocked:
        return ValidationResult(is_valid=True)
    return ValidationResult(
        is_valid=False,
        error=f"Blocked keyword(s) detected: {', '.join(blocked)}",
        blocked_keywords=blocked,
    )


def check_read_only(sql: str | None, config: GuardrailConfig | None = None) -> str:
    """Return ``sql`` unchanged, or raise ``UnsafeQueryError`` if it fails the check."""
    validation = validate_sql(sql, config)
    if validation.is_valid:
        return sql
    raise UnsafeQueryError(
        validation.error or "Unsafe SQL",
        sql=sql or "",
        keywords=validation.blocked_keywords,
    )


def sanitize_for_prompt_injection(text: str, config: GuardrailConfig | None = None) -> str:
    """Neutralize instruction-like phrases in ``text`` and cap its length.

    Result rows come from the user's database and are pasted into narrator
    and refinement prompts verbatim, so they are treated as untrusted.
    """
    if not text:
        return ""
    limit = (config or DEFAULT_CONFIG).max_prompt_text_length

    for pattern in _INJECTION_PATTERNS:
        text = pattern.sub(FILTERED, text)
    if len(text) > limit:
        text = text[:limit] + "... [truncated]"
    return text


def sanitize_rows(rows: list[dict]) -> list[dict]:
    """Apply ``sanitize_for_prompt_injection`` to every string value."""
    cleaned = []
    for row in rows:
        cleaned.append({
            key: sanitize_for_prompt_injection(value) if isinstance(value, str) else value
            for key, value in row.items()
        })
    return cleaned
