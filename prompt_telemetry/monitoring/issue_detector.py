"""
Issue detection for AI execution logs.

Detection runs in two phases. The fast phase applies regex rules, performance
limits, structural validation and accuracy heuristics synchronously. The
optional model phase asks an LLM to review factual-looking content and is
bounded by a timeout; it never fails the overall detection.
"""
import asyncio
import json
from typing import List, Optional, Tuple

import structlog

from .exceptions import DetectionError
from .models import DetectedIssue, DetectionThresholds, IssueSeverity, IssueType, LogEntry
from .patterns import (
    CODE_FENCE, CONFIDENCE_MARKERS, FACTUAL_INDICATORS, ISSUE_PATTERNS, MARKUP_TAG_PATTERN,
    PLACEHOLDER_URL_MARKERS, UNCERTAIN_TOPICS, URL_PATTERN, VOID_ELEMENTS
)
from ..llm.client import LLMClient


logger = structlog.get_logger(__name__)


HIGH_TOKEN_COUNT = 8000
LOW_TOKEN_COUNT = 10
LOW_TOKEN_CONTENT_LENGTH = 100

MODEL_MIN_CONTENT_LENGTH = 100
MODEL_MAX_CONTENT_LENGTH = 5000

DETECTION_FAILED_DESCRIPTION = "Issue detection failed - manual review recommended"

MODEL_PROMPT_TEMPLATE = """You review AI responses for hallucinations and inaccuracies.
Analyze the following response:

Response: "{content}"

Look for:
1. Factual contradictions within the response
2. Confident statements about uncertain topics
3. Made-up facts, dates, or references
4. Self-contradictory statements
5. Nonsensical or illogical content

Reply with JSON only, in this format:
{{
  "has_issues": true,
  "issues": [
    {{
      "type": "hallucination|accuracy_issue",
      "severity": "low|medium|high|critical",
      "description": "specific description",
      "confidence": 0.0,
      "evidence": "quote from the response"
    }}
  ]
}}"""

_CLOSERS = {"{": "}", "[": "]"}


class IssueDetector:
    """Detects quality issues in AI response logs"""

    def __init__(self, llm_client: Optional[LLMClient] = None, model_timeout: float = 15.0):
        self.llm_client = llm_client
        self.model_timeout = model_timeout

    async def detect_issues(self, entry: LogEntry,
                            thresholds: Optional[DetectionThresholds] = None) -> List[DetectedIssue]:
        """Run both detection phases and return deduplicated, ranked issues.

        Never raises: an unexpected failure yields a single low-severity issue
        asking for manual review.
        """
        thresholds = thresholds or DetectionThresholds()
        try:
            issues = self.detect_fast_issues(entry, thresholds)

            if self.llm_client is not None and self.should_run_model_detection(entry):
                issues.extend(await self.detect_model_issues(entry, thresholds))

            return self.rank_issues(issues, thresholds)

        except Exception as e:
            logger.error("Issue detection failed",
                         tenant_id=entry.tenant_id,
                         app_id=entry.app_id,
                         error=str(e))
            return [DetectedIssue(
                type=IssueType.ACCURACY_ISSUE,
                severity=IssueSeverity.LOW,
                description=DETECTION_FAILED_DESCRIPTION,
                confidence=0.5,
                metadata={"error": str(e)}
            )]

    def detect_fast_issues(self, entry: LogEntry,
                           thresholds: DetectionThresholds) -> List[DetectedIssue]:
        issues: List[DetectedIssue] = []
        issues.extend(self._detect_pattern_issues(entry))
        issues.extend(self._detect_performance_issues(entry, thresholds))
        issues.extend(self._detect_structure_issues(entry))
        issues.extend(self._detect_accuracy_issues(entry))
        return issues

    def should_run_model_detection(self, entry: LogEntry) -> bool:
        """Only substantial content that makes factual claims is worth a model call"""
        content = entry.content
        if len(content) < MODEL_MIN_CONTENT_LENGTH or len(content) > MODEL_MAX_CONTENT_LENGTH:
            return False
        return any(indicator.search(content) for indicator in FACTUAL_INDICATORS)

    async def detect_model_issues(self, entry: LogEntry,
                                  thresholds: DetectionThresholds) -> List[DetectedIssue]:
        if self.llm_client is None:
            return []

        try:
            return await asyncio.wait_for(
                self._query_model(entry, thresholds),
                timeout=self.model_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Model-assisted detection timed out",
                           app_id=entry.app_id, timeout=self.model_timeout)
        except Exception as e:
            # any model-side failure drops only this pass; CancelledError is not an Exception
            logger.warning("Model-assisted detection failed",
                           app_id=entry.app_id,
                           error_type=type(e).__name__,
                           error=str(e))
        return []

    async def _query_model(self, entry: LogEntry,
                           thresholds: DetectionThresholds) -> List[DetectedIssue]:
        reply = await self.llm_client.complete(MODEL_PROMPT_TEMPLATE.format(content=entry.content))

        start = reply.find("{")
        end = reply.rfind("}")
        if start == -1 or end <= start:
            raise DetectionError("Model reply did not contain a JSON object")

        analysis = json.loads(reply[start:end + 1])
        if not isinstance(analysis, dict):
            raise DetectionError("Model reply JSON is not an object")

        raw_issues = analysis.get("issues")
        if not analysis.get("has_issues") or not isinstance(raw_issues, list):
            return []

        issues = []
        for raw in raw_issues:
            if not isinstance(raw, dict):
                continue
            try:
                confidence = float(raw.get("confidence", 0.0))
            except (TypeError, ValueError):
                continue
            if confidence < thresholds.hallucination_confidence:
                continue

            issues.append(DetectedIssue(
                type=_coerce_issue_type(raw.get("type")),
                severity=_coerce_severity(raw.get("severity")),
                description=str(raw.get("description") or "Potential inaccuracy flagged by model review"),
                confidence=confidence,
                metadata={"evidence": raw.get("evidence"), "model_detection": True}
            ))

        logger.debug("Model-assisted detection complete", app_id=entry.app_id, issues=len(issues))
        return issues

    def rank_issues(self, issues: List[DetectedIssue],
                    thresholds: DetectionThresholds) -> List[DetectedIssue]:
        """Dedupe on (type, description), drop low-confidence issues, order by severity then confidence"""
        seen = set()
        unique = []
        for issue in issues:
            if issue.dedupe_key in seen:
                continue
            seen.add(issue.dedupe_key)
            unique.append(issue)

        confident = [i for i in unique if i.confidence >= thresholds.hallucination_confidence]
        return sorted(confident, key=lambda i: (-i.severity.rank, -i.confidence))

    def _detect_pattern_issues(self, entry: LogEntry) -> List[DetectedIssue]:
        content = entry.content.lower()
        issues = []
        for rule in ISSUE_PATTERNS:
            match = rule.pattern.search(content)
            if match:
                issues.append(DetectedIssue(
                    type=rule.type,
                    severity=rule.severity,
                    description=rule.description,
                    confidence=rule.confidence,
                    metadata={"pattern": rule.pattern.pattern, "matched_text": match.group(0)}
                ))
        return issues

    def _detect_performance_issues(self, entry: LogEntry,
                                   thresholds: DetectionThresholds) -> List[DetectedIssue]:
        context = entry.context
        if context is None:
            return []

        issues = []
        limit = thresholds.performance_threshold_ms
        response_time = context.response_time_ms
        if response_time and response_time > limit:
            issues.append(DetectedIssue(
                type=IssueType.PERFORMANCE_DEGRADATION,
                severity=IssueSeverity.HIGH if response_time > limit * 2 else IssueSeverity.MEDIUM,
                description=f"Response time {response_time}ms exceeds threshold {limit}ms",
                confidence=0.9,
                metadata={"response_time_ms": response_time, "threshold_ms": limit}
            ))

        token_count = context.token_count
        if token_count:
            if token_count > HIGH_TOKEN_COUNT:
                issues.append(DetectedIssue(
                    type=IssueType.PERFORMANCE_DEGRADATION,
                    severity=IssueSeverity.MEDIUM,
                    description=f"Unusually high token count: {token_count}",
                    confidence=0.8,
                    metadata={"token_count": token_count}
                ))
            if token_count < LOW_TOKEN_COUNT and len(entry.content) > LOW_TOKEN_CONTENT_LENGTH:
                issues.append(DetectedIssue(
                    type=IssueType.ACCURACY_ISSUE,
                    severity=IssueSeverity.MEDIUM,
                    description="Token count does not match response length",
                    confidence=0.7,
                    metadata={"token_count": token_count, "content_length": len(entry.content)}
                ))
        return issues

    def _detect_structure_issues(self, entry: LogEntry) -> List[DetectedIssue]:
        content = entry.content
        issues = []

        for candidate in _json_candidates(content):
            try:
                json.loads(candidate)
            except ValueError as e:
                issues.append(DetectedIssue(
                    type=IssueType.STRUCTURE_ERROR,
                    severity=IssueSeverity.HIGH,
                    description="Invalid JSON structure detected",
                    confidence=0.95,
                    metadata={"json_error": str(e), "malformed_json": candidate[:200]}
                ))

        unclosed = find_unclosed_tags(content)
        if unclosed:
            issues.append(DetectedIssue(
                type=IssueType.STRUCTURE_ERROR,
                severity=IssueSeverity.MEDIUM,
                description=f"Unclosed markup tags detected: {', '.join(unclosed)}",
                confidence=0.8,
                metadata={"unclosed_tags": unclosed}
            ))

        fence_count = content.count(CODE_FENCE)
        if fence_count % 2 != 0:
            issues.append(DetectedIssue(
                type=IssueType.STRUCTURE_ERROR,
                severity=IssueSeverity.MEDIUM,
                description="Unclosed code block detected",
                confidence=0.9,
                metadata={"code_fence_count": fence_count}
            ))
        return issues

    def _detect_accuracy_issues(self, entry: LogEntry) -> List[DetectedIssue]:
        content = entry.content.lower()
        issues = []

        for marker in CONFIDENCE_MARKERS:
            if marker not in content:
                continue
            for topic in UNCERTAIN_TOPICS:
                if topic in content:
                    issues.append(DetectedIssue(
                        type=IssueType.ACCURACY_ISSUE,
                        severity=IssueSeverity.HIGH,
                        description=f'High confidence statement about uncertain topic: "{marker}" + "{topic}"',
                        confidence=0.8,
                        metadata={"confidence_marker": marker, "uncertain_topic": topic}
                    ))

        for url in URL_PATTERN.findall(content):
            if any(marker in url for marker in PLACEHOLDER_URL_MARKERS):
                issues.append(DetectedIssue(
                    type=IssueType.HALLUCINATION,
                    severity=IssueSeverity.MEDIUM,
                    description="Placeholder or example URL provided as real reference",
                    confidence=0.9,
                    metadata={"suspicious_url": url}
                ))
        return issues


def _coerce_issue_type(value) -> IssueType:
    try:
        return IssueType(value)
    except ValueError:
        return IssueType.HALLUCINATION


def _coerce_severity(value) -> IssueSeverity:
    try:
        return IssueSeverity(value)
    except ValueError:
        return IssueSeverity.MEDIUM


def _looks_structured(candidate: str) -> bool:
    body = candidate[1:]
    if candidate.startswith("{"):
        return '"' in body or ":" in body
    return '"' in body or "{" in body or "," in body


def _json_candidates(content: str) -> List[str]:
    """Return top-level bracketed spans that look like JSON.

    Mismatched or unterminated spans are returned as-is so they fail to parse.
    """
    candidates = []
    stack: List[str] = []
    start = 0
    in_string = False
    escaped = False

    for index, char in enumerate(content):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"' and stack:
            in_string = True
        elif char in _CLOSERS:
            if not stack:
                start = index
            stack.append(_CLOSERS[char])
        elif char in ("}", "]") and stack:
            expected = stack.pop()
            if char != expected:
                stack.clear()
            if not stack:
                candidates.append(content[start:index + 1])

    if stack:
        candidates.append(content[start:])

    return [c for c in candidates if _looks_structured(c)]


def find_unclosed_tags(content: str) -> List[str]:
    """Stack-based scan for markup tags left open or closed out of order"""
    stack: List[Tuple[str, str]] = []
    unclosed: List[str] = []

    for match in MARKUP_TAG_PATTERN.finditer(content):
        closing, name, self_closing = match.group(1), match.group(2).lower(), match.group(3)
        if name in VOID_ELEMENTS or self_closing:
            continue

        if closing:
            open_names = [open_name for open_name, _ in stack]
            if name not in open_names:
                unclosed.append(f"/{name}")
                continue
            # everything opened after the matching tag was never closed
            while stack:
                open_name, raw = stack.pop()
                if open_name == name:
                    break
                unclosed.append(raw)
        else:
            stack.append((name, match.group(2)))

    unclosed.extend(raw for _, raw in stack)

    deduped = []
    for tag in unclosed:
        if tag not in deduped:
            deduped.append(tag)
    return deduped
