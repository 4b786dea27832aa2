"""Content-pattern analysis: keyword, casing, repetition and shortener heuristics.

All checks are synchronous, make no external call and feed one additive
``spam`` signal.
"""

from __future__ import annotations

import re

from chatguard.detection.models import IndicatorType, SignalSource, ThreatKind, ThreatSignal

# ---------------------------------------------------------------------------
# Pattern tables
# ---------------------------------------------------------------------------

PHISHING_KEYWORDS: tuple[str, ...] = (
    "free nitro",
    "discord nitro free",
    "claim your nitro",
    "verify your account",
    "click here to verify",
    "you won",
    "congratulations you",
    "steam gift",
    "free robux",
)

URL_SHORTENERS: tuple[str, ...] = ("bit.ly", "tinyurl.com", "t.co", "goo.gl")

KEYWORD_SCORE = 20
EXCESSIVE_CAPS_SCORE = 10
REPEATED_CHARS_SCORE = 15
SHORTENER_SCORE = 10

CAPS_RATIO_THRESHOLD = 0.7
CAPS_MIN_LENGTH = 20

_REPEATED_CHARS_RE = re.compile(r"(.)\1{10,}", re.DOTALL)
_UPPERCASE_RE = re.compile(r"[A-Z]")

# Match shorteners as whole host names so "t.co" does not fire on "microsoft.com"
_SHORTENER_RES: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (name, re.compile(rf"(?<![a-z0-9.-]){re.escape(name)}(?![a-z0-9-]|\.[a-z])"))
    for name in URL_SHORTENERS
)

_INDICATOR_PREVIEW_CHARS = 100


def caps_ratio(text: str) -> float:
    """Share of ASCII uppercase letters among all characters of *text*."""
    if not text:
        return 0.0
    return len(_UPPERCASE_RE.findall(text)) / len(text)


def detect_patterns(text: str) -> tuple[int, list[str]]:
    """Run every content heuristic against *text*.

    Returns:
        ``(raw_score, detected_patterns)``; the raw score is not capped.
    """
    score = 0
    detected: list[str] = []
    lowered = text.lower()

    for keyword in PHISHING_KEYWORDS:
        if keyword in lowered:
            score += KEYWORD_SCORE
            detected.append(f"phishing_keyword:{keyword}")

    if len(text) >= CAPS_MIN_LENGTH and caps_ratio(text) > CAPS_RATIO_THRESHOLD:
        score += EXCESSIVE_CAPS_SCORE
        detected.append("excessive_caps")

    if _REPEATED_CHARS_RE.search(text):
        score += REPEATED_CHARS_SCORE
        detected.append("repeated_characters")

    for name, pattern in _SHORTENER_RES:
        if pattern.search(lowered):
            score += SHORTENER_SCORE
            detected.append(f"url_shortener:{name}")

    return score, detected


def analyze_content(text: str | None) -> ThreatSignal | None:
    """Score *text* against the content heuristics.

    Keyword matches add 20 each, excessive capitals 10, a run of eleven or
    more identical characters 15 and each known URL shortener 10.  The sum
    is capped at 100.

    Args:
        text: Message text.

    Returns:
        One ``spam`` signal listing every detected pattern, or ``None`` when
        nothing matched.
    """
    if not text:
        return None

    score, detected = detect_patterns(text)
    if score <= 0:
        return None

    return ThreatSignal(
        kind=ThreatKind.SPAM,
        score=float(min(score, 100)),
        indicator=text[:_INDICATOR_PREVIEW_CHARS],
        indicator_type=IndicatorType.MESSAGE_CONTENT,
        source=SignalSource.PATTERN_MATCHING,
        description="Suspicious content patterns detected",
        metadata={
            "detected_patterns": detected,
            "caps_ratio": round(caps_ratio(text), 2),
            "content_length": len(text),
        },
    )
