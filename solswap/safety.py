"""Inbound text sanitization and outbound secret redaction.

Every chat turn passes the raw text through ``sanitize_input`` before anything
else looks at it, and every reply passes through ``filter_response`` as the last
step before it leaves the conversation engine.
"""

from __future__ import annotations

import re
from typing import List, Pattern

from .errors import InputRejected

MAX_MESSAGE_LENGTH = 1000
REDACTION_MARKER = "[REDACTED]"
REJECTION_REPLY = "I cannot process that request. Please try again with a different message."

DANGEROUS_PATTERNS: List[Pattern[str]] = [
    # Credential and secret markers
    re.compile(r"PRIVATE_KEY", re.IGNORECASE),
    re.compile(r"SECRET", re.IGNORECASE),
    re.compile(r"API_KEY", re.IGNORECASE),
    re.compile(r"PASSWORD", re.IGNORECASE),
    # Script injection
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    # Destructive SQL
    re.compile(r"DROP\s+TABLE", re.IGNORECASE),
    re.compile(r"DELETE\s+FROM", re.IGNORECASE),
    # Destructive shell
    re.compile(r"rm\s+-rf", re.IGNORECASE),
]

SECRET_PATTERNS: List[Pattern[str]] = [
    re.compile(r"AIza[0-9A-Za-z\-_]{35}"),  # Google API keys
    re.compile(r"sk-[A-Za-z0-9]{48}"),  # OpenAI keys
    re.compile(r"pk_[A-Za-z0-9]{24}"),  # Stripe publishable keys
    re.compile(r"[A-Fa-f0-9]{64}"),  # hex private keys
]


def sanitize_input(raw: str) -> str:
    """Purpose: Reject dangerous chat text and return a trimmed, length-capped copy.
    Inputs/Outputs: Input is the raw message; output is the cleaned message.
    Side Effects / State: None; pure function.
    Dependencies: Uses DANGEROUS_PATTERNS and MAX_MESSAGE_LENGTH.
    Failure Modes: Raises InputRejected when any dangerous pattern matches. Overlong
        text is truncated silently and is never an error.
    If Removed: Injection payloads and pasted secrets reach the classifier, the store
        and the language model.
    Testing Notes: Check each pattern family rejects and 2000-char input yields 1000.
    """
    # Screen the full raw text first so truncation cannot hide a marker.
    text = raw or ""
    for pattern in DANGEROUS_PATTERNS:
        if pattern.search(text):
            raise InputRejected("Blocked potentially dangerous input")
    return text[:MAX_MESSAGE_LENGTH].strip()


def filter_response(text: str) -> str:
    """Purpose: Redact secret-shaped substrings from an outgoing reply.
    Inputs/Outputs: Input is reply text; output is the redacted text.
    Side Effects / State: None.
    Dependencies: Uses SECRET_PATTERNS and REDACTION_MARKER.
    Failure Modes: None; returns empty string for falsy input.
    If Removed: A model hallucinating or echoing a key would leak it to the user.
    Testing Notes: Feed a Google key and a 64-char hex string; both become markers.
    """
    # Apply each pattern in turn; earlier, more specific shapes win.
    if not text:
        return ""
    filtered = text
    for pattern in SECRET_PATTERNS:
        filtered = pattern.sub(REDACTION_MARKER, filtered)
    return filtered
