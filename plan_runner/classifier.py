"""
Failure classification for task attempts.

The agent's narration is not trusted: an attempt is judged by scanning the
tool output it produced. Two tables drive this:

- TRANSIENT_PATTERNS: failures expected to clear on retry (rate limits,
  timeouts, connection resets, 5xx). The whole attempt is retried.
- FAILURE_SIGNATURES: terminal failures (failing tests, compiler and type
  errors, nonzero exit codes, generic error tokens). A match overrides any
  claim of success from the model.

An attempt is transient when it matches a transient pattern and nothing more
specific than the generic signatures (a rate-limit message usually carries an
"Error:" token and a nonzero exit as well). Failing tests or compiler errors
alongside a timeout are terminal.

Only command output and tool errors are judged. File contents the agent read
are source text, where "timeout=10" or "rate limit" mean nothing.
"""

import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

FAILURE_SIGNATURES: list[tuple[str, re.Pattern]] = [
    # test runners
    ("test failure", re.compile(r"^\s*FAIL(?:ED)?\b|\bFAIL:\s|\b[1-9]\d* (?:tests? )?failed\b|\bTests?:\s+[1-9]\d* failed", re.MULTILINE)),
    ("assertion failure", re.compile(r"\bAssertionError\b")),
    # compilers / type checkers
    ("type error", re.compile(r"\berror TS\d+\b|\bTypeError:|: error: .+\[[\w-]+\]$", re.MULTILINE)),
    ("compile error", re.compile(r"\bSyntaxError:|\berror\[E\d{4}\]|\bcompilation failed\b|\bbuild failed\b", re.IGNORECASE)),
    # process exit status
    ("nonzero exit", re.compile(
        r"\bexit(?:ed)?(?: with)? (?:code|status)[:\s]+(?!0\b)\d+|\breturn(?:ed)? code[:\s]+(?!0\b)\d+",
        re.IGNORECASE,
    )),
    # generic
    ("traceback", re.compile(r"Traceback \(most recent call last\)")),
    ("error", re.compile(r"^\s*(?:Error|ERROR|FATAL|fatal):|\bnpm ERR!|\bcommand not found\b", re.MULTILINE)),
]

TRANSIENT_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("rate limit", re.compile(r"\brate[ _-]?limit(?:ed|ing)?\b|\btoo many requests\b|\b(?:HTTP|status|code|error)\W{0,3}429\b", re.IGNORECASE)),
    ("timeout", re.compile(r"\btimed?[ _-]?out\b|\bETIMEDOUT\b|\bdeadline exceeded\b", re.IGNORECASE)),
    ("connection reset", re.compile(
        r"\bECONNRESET\b|\bconnection (?:reset|refused|aborted)\b|\bECONNREFUSED\b|\bsocket hang up\b",
        re.IGNORECASE,
    )),
    ("server error", re.compile(
        r"\b(?:HTTP|status)(?: code)?[:\s]+5\d\d\b"
        r"|\b5\d\d (?:Internal Server Error|Bad Gateway|Service Unavailable|Gateway Timeout)\b"
        r"|\b(?:service unavailable|bad gateway|overloaded)\b",
        re.IGNORECASE,
    )),
]

# Signatures that a transient failure commonly produces as a side effect.
GENERIC_SIGNATURES = {"nonzero exit", "traceback", "error"}

SNIPPET_RADIUS = 200
SNIPPET_LIMIT = 500


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    TRANSIENT = "transient"
    FAILED = "failed"


@dataclass
class FailureMatch:
    signature: str
    snippet: str


@dataclass
class Classification:
    outcome: AttemptOutcome
    signature: Optional[str] = None
    snippet: str = ""


def snippet(text: str, start: int, end: int, radius: int = SNIPPET_RADIUS, limit: int = SNIPPET_LIMIT) -> str:
    """Context around ``text[start:end]``, trimmed to ``limit`` chars."""
    lo = max(0, start - radius)
    hi = min(len(text), end + radius)
    excerpt = text[lo:hi].strip()
    if len(excerpt) > limit:
        excerpt = excerpt[:limit].rstrip()
    prefix = "…" if lo > 0 else ""
    suffix = "…" if hi < len(text) else ""
    return f"{prefix}{excerpt}{suffix}"


def _first_match(text: str, table: list[tuple[str, re.Pattern]]) -> Optional[FailureMatch]:
    best = None
    for name, pattern in table:
        match = pattern.search(text)
        if match and (best is None or match.start() < best[1].start()):
            best = (name, match)
    if best is None:
        return None
    name, match = best
    return FailureMatch(signature=name, snippet=snippet(text, match.start(), match.end()))


def find_failure(transcript: str) -> Optional[FailureMatch]:
    """Earliest terminal failure signature in ``transcript``."""
    return _first_match(transcript, FAILURE_SIGNATURES)


def find_transient(text: str) -> Optional[FailureMatch]:
    return _first_match(text, TRANSIENT_PATTERNS)


def is_transient(text: str) -> bool:
    return find_transient(text) is not None


def classify_attempt(transcript: str) -> Classification:
    transient = find_transient(transcript)
    specific = [
        (name, pattern) for name, pattern in FAILURE_SIGNATURES if name not in GENERIC_SIGNATURES
    ]
    if transient and _first_match(transcript, specific) is None:
        return Classification(AttemptOutcome.TRANSIENT, transient.signature, transient.snippet)
    failure = find_failure(transcript)
    if failure:
        return Classification(AttemptOutcome.FAILED, failure.signature, failure.snippet)
    return Classification(AttemptOutcome.SUCCESS)


def classify_results(results: list[tuple[str, str]]) -> Classification:
    """
    Judge an attempt from its checked tool results, in call order.

    ``results`` holds ``(tool name, output)`` pairs. A transient result is
    dropped when a later call of the same tool came back clean, since the
    model already retried past it. Terminal failures are never dropped.
    """
    outcomes = [classify_attempt(output).outcome for _, output in results]
    kept = []
    for i, (name, output) in enumerate(results):
        if outcomes[i] == AttemptOutcome.TRANSIENT and any(
            later_name == name and outcomes[j] == AttemptOutcome.SUCCESS
            for j, (later_name, _) in enumerate(results[i + 1:], start=i + 1)
        ):
            continue
        kept.append(f"$ {name}\n{output}")
    return classify_attempt("\n\n".join(kept))


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    factor: float = 2.0

    def delay(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based): 1s, 2s, 4s, ..."""
        return self.base_delay * (self.factor ** (attempt - 1))


async def backoff(
    policy: RetryPolicy,
    attempt: int,
    token=None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> None:
    """Wait before the next attempt, checking cancellation on both sides of the wait."""
    if token is not None:
        token.raise_if_cancelled()
    await sleep(policy.delay(attempt))
    if token is not None:
        token.raise_if_cancelled()
