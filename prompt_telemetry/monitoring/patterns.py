"""
Rule tables used by the issue detector.

Kept separate from the detector so the vocabularies can be tuned without
touching detection logic.
"""
import re
from dataclasses import dataclass
from typing import List, Pattern

from .models import IssueType, IssueSeverity


@dataclass(frozen=True)
class IssuePattern:
    """Regex rule matched case-insensitively against log content"""
    name: str
    pattern: Pattern
    type: IssueType
    severity: IssueSeverity
    description: str
    confidence: float


def _rule(name: str, regex: str, issue_type: IssueType, severity: IssueSeverity,
          description: str, confidence: float) -> IssuePattern:
    return IssuePattern(
        name=name,
        pattern=re.compile(regex, re.IGNORECASE),
        type=issue_type,
        severity=severity,
        description=description,
        confidence=confidence
    )


ISSUE_PATTERNS: List[IssuePattern] = [
    # Hallucination patterns
    _rule("self_correction",
          r"i apologize|i'm sorry|i don't actually|i cannot actually|i shouldn't have",
          IssueType.HALLUCINATION, IssueSeverity.MEDIUM,
          "AI model expressing uncertainty or correcting itself", 0.7),
    _rule("self_reference",
          r"as an ai|i am an ai|i'm an artificial intelligence",
          IssueType.HALLUCINATION, IssueSeverity.LOW,
          "AI model breaking character or revealing its nature", 0.6),

    # Error patterns
    _rule("error_keywords",
          r"error|exception|failed|timeout|crashed",
          IssueType.ACCURACY_ISSUE, IssueSeverity.HIGH,
          "Error indicators in response", 0.9),
    _rule("null_values",
          r"\b(?:null|undefined|nan|infinity)\b",
          IssueType.STRUCTURE_ERROR, IssueSeverity.MEDIUM,
          "Programming error values in response", 0.8),

    # Contradiction patterns: opposing answers no more than 50 characters apart
    _rule("contradiction",
          r"\b(?:yes\b.{0,50}\bno|no\b.{0,50}\byes|true\b.{0,50}\bfalse|false\b.{0,50}\btrue)\b",
          IssueType.HALLUCINATION, IssueSeverity.HIGH,
          "Self-contradictory statements detected", 0.8),

    # Incomplete response patterns
    _rule("incomplete_response",
          r"\.\.\.|to be continued|more details later|will update",
          IssueType.ACCURACY_ISSUE, IssueSeverity.MEDIUM,
          "Incomplete or placeholder response", 0.7),

    # Suspicious confidence patterns
    _rule("mixed_confidence",
          r"definitely.*probably|certainly.*maybe|absolutely.*might",
          IssueType.HALLUCINATION, IssueSeverity.MEDIUM,
          "Contradictory confidence levels", 0.8),
]


CONFIDENCE_MARKERS = [
    "definitely", "absolutely", "certainly", "without a doubt",
    "guaranteed", "always", "never", "impossible", "proven fact",
]

UNCERTAIN_TOPICS = [
    "future events", "stock prices", "lottery numbers", "personal information",
    "medical diagnosis", "legal advice", "real-time data", "breaking news",
]

PLACEHOLDER_URL_MARKERS = ["example.com", "placeholder", "dummy", "[", "insert_"]

URL_PATTERN = re.compile(r"https?://[^\s]+", re.IGNORECASE)

# Content that makes factual claims is worth a model-assisted check
FACTUAL_INDICATORS = [
    re.compile(r"\d{4}"),
    re.compile(r"\$\d+"),
    re.compile(r"\d+%"),
    re.compile(r"according to", re.IGNORECASE),
    re.compile(r"studies show", re.IGNORECASE),
    re.compile(r"research indicates", re.IGNORECASE),
    re.compile(r"data shows", re.IGNORECASE),
    re.compile(r"statistics reveal", re.IGNORECASE),
    re.compile(r"proven that", re.IGNORECASE),
]

MARKUP_TAG_PATTERN = re.compile(r"<(/?)([A-Za-z][\w:.-]*)[^<>]*?(/?)>")

# Elements that never take a closing tag
VOID_ELEMENTS = frozenset({
    "area", "base", "br", "col", "embed", "hr", "img", "input",
    "link", "meta", "param", "source", "track", "wbr",
})

CODE_FENCE = "```"
