"""
bastion-orchestrator — content filter

File: src/bastion_orchestrator/security/content_filter.py
Last updated: 2026-10-19

Purpose
- Scan text and code for policy-violating categories with deterministic regex rules and
  a per-category confidence score.

Functional requirements
- A block-list phrase denies immediately (harmful_instructions, confidence 1.0).
- An allow-list phrase allows immediately (safe, confidence 1.0).
- Otherwise each enabled category scores ``min(0.5 + matches / word_count, 1.0)`` and
  the content is denied when any score meets its threshold while blocking is enabled.
- Denied content gets a redacted copy with matched spans replaced by ``[REDACTED]``.
- Each scan writes one moderation log (content hash, never the content) unless reporting
  is disabled, and one content-verdict audit record when a recorder is attached.
- Code scans are reported the same way as text scans.
- Analysis errors and failed audit writes fail closed with reason
  ``Error analyzing content safety``.

Non-functional requirements
- Rules ship as a YAML pack; an alternative pack can be loaded from ``rules_path``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final, Protocol, cast

import structlog
import yaml

from bastion_orchestrator.constants import PII_REDACTED_PLACEHOLDER, REDACTED_PLACEHOLDER
from bastion_orchestrator.domain.ids import generate_scan_id
from bastion_orchestrator.domain.models import (
    AuditKind,
    CategoryScore,
    ContentCategory,
    ContentSafetyResult,
    ModerationLog,
    utc_now,
)
from bastion_orchestrator.utils.hashing import sha256_text

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence
    from datetime import datetime

    from bastion_orchestrator.security.audit import AuditRecorder

DEFAULT_RULES_PATH: Final[Path] = Path(__file__).resolve().parent / "rules" / "content_rules.yaml"

REASON_BLOCKED_PHRASE: Final[str] = "Content contains blocked phrases"
REASON_ANALYSIS_ERROR: Final[str] = "Error analyzing content safety"
REASON_MALICIOUS_CODE: Final[str] = "Code contains potentially malicious patterns"

_DEFAULT_THRESHOLD: Final[float] = 0.5


class ModerationLogSink(Protocol):
    def add(self, log: ModerationLog) -> ModerationLog: ...


@dataclass(frozen=True, slots=True)
class ContentRules:
    """Compiled rule pack."""

    categories: Mapping[ContentCategory, tuple[re.Pattern[str], ...]]
    code_languages: Mapping[str, tuple[re.Pattern[str], ...]]
    general_code_confidence: float
    language_code_confidence: float

    def patterns_for(self, category: ContentCategory) -> tuple[re.Pattern[str], ...]:
        return self.categories.get(category, ())


@dataclass(frozen=True, slots=True)
class FilterConfig:
    enabled_categories: tuple[ContentCategory, ...] = (
        ContentCategory.HATE_SPEECH,
        ContentCategory.HARMFUL_INSTRUCTIONS,
        ContentCategory.MALICIOUS_CODE,
        ContentCategory.PII,
    )
    thresholds: Mapping[ContentCategory, float] = field(
        default_factory=lambda: {
            ContentCategory.PROFANITY: 0.7,
            ContentCategory.HATE_SPEECH: 0.5,
            ContentCategory.VIOLENCE: 0.6,
            ContentCategory.SEXUAL: 0.6,
            ContentCategory.HARMFUL_INSTRUCTIONS: 0.5,
            ContentCategory.PII: 0.5,
            ContentCategory.MALICIOUS_CODE: 0.5,
        }
    )
    block_list: tuple[str, ...] = ()
    allow_list: tuple[str, ...] = ()
    redaction_enabled: bool = True
    report_moderation_results: bool = True
    block_high_risk_content: bool = True

    def threshold_for(self, category: ContentCategory) -> float:
        return self.thresholds.get(category, _DEFAULT_THRESHOLD)

    @classmethod
    def from_config(cls, section: Mapping[str, Any]) -> FilterConfig:
        """Build from the validated ``content_filter`` config section."""

        defaults = cls()
        thresholds = section.get("thresholds")
        return cls(
            enabled_categories=tuple(
                ContentCategory(item)
                for item in section.get(
                    "enabled_categories", [c.value for c in defaults.enabled_categories]
                )
            ),
            thresholds=(
                dict(defaults.thresholds)
                if thresholds is None
                else {ContentCategory(key): float(value) for key, value in thresholds.items()}
            ),
            block_list=tuple(section.get("block_list", ())),
            allow_list=tuple(section.get("allow_list", ())),
            redaction_enabled=bool(section.get("redaction_enabled", True)),
            report_moderation_results=bool(section.get("report_moderation_results", True)),
            block_high_risk_content=bool(section.get("block_high_risk_content", True)),
        )


def load_content_rules(path: str | Path | None = None) -> ContentRules:
    """Load and compile a YAML rule pack; defaults to the packaged one."""

    source = DEFAULT_RULES_PATH if path is None else Path(path)
    try:
        with source.open("r", encoding="utf-8") as handle:
            loaded = cast("object", yaml.safe_load(handle))
    except yaml.YAMLError as exc:
        raise ValueError(f"{source}: invalid YAML ({exc})") from exc

    if not isinstance(loaded, dict):
        raise ValueError(f"{source}: expected top-level mapping, got {type(loaded).__name__}")

    raw_categories = loaded.get("categories", {})
    if not isinstance(raw_categories, dict):
        raise ValueError(f"{source}: categories must be a mapping")
    categories: dict[ContentCategory, tuple[re.Pattern[str], ...]] = {}
    for name, block in raw_categories.items():
        try:
            category = ContentCategory(name)
        except ValueError as exc:
            raise ValueError(f"{source}: unknown content category {name!r}") from exc
        categories[category] = _compile_block(block, f"{source.name}:categories.{name}")

    code_scan = loaded.get("code_scan", {})
    if not isinstance(code_scan, dict):
        raise ValueError(f"{source}: code_scan must be a mapping")
    raw_languages = code_scan.get("languages", {})
    if not isinstance(raw_languages, dict):
        raise ValueError(f"{source}: code_scan.languages must be a mapping")
    languages = {
        str(name).lower(): _compile_block(block, f"{source.name}:code_scan.languages.{name}")
        for name, block in raw_languages.items()
    }

    return ContentRules(
        categories=categories,
        code_languages=languages,
        general_code_confidence=_confidence(code_scan.get("general_confidence", 0.7), source),
        language_code_confidence=_confidence(code_scan.get("language_confidence", 0.8), source),
    )


class ContentFilter:
    """Deterministic pattern-based content classifier."""

    def __init__(
        self,
        config: FilterConfig | None = None,
        *,
        rules: ContentRules | None = None,
        moderation_log: ModerationLogSink | None = None,
        audit: AuditRecorder | None = None,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        self._config = config if config is not None else FilterConfig()
        self._rules = rules if rules is not None else load_content_rules()
        self._moderation_log = moderation_log
        self._audit = audit
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def config(self) -> FilterConfig:
        return self._config

    def update_config(self, **changes: Any) -> FilterConfig:
        self._config = replace(self._config, **changes)
        return self._config

    def analyze_content(self, content: str, principal_id: str | None = None) -> ContentSafetyResult:
        try:
            result = self._analyze(content)
        except Exception as exc:  # noqa: BLE001 - analysis failures deny
            self._logger.error("content_analysis_failed", error=str(exc))
            result = ContentSafetyResult(
                id=generate_scan_id(),
                is_allowed=False,
                reason=REASON_ANALYSIS_ERROR,
                timestamp=self._clock(),
            )
            return self._audit_verdict(result, principal_id)

        result = self._report(result, content, principal_id)
        self._logger.info(
            "content_analyzed",
            scan_id=result.id,
            principal_id=principal_id,
            is_allowed=result.is_allowed,
            categories=[score.category.value for score in result.categories],
        )
        return result

    def detect_and_redact_pii(self, text: str) -> str:
        redacted = text
        for pattern in self._rules.patterns_for(ContentCategory.PII):
            redacted = pattern.sub(PII_REDACTED_PLACEHOLDER, redacted)
        return redacted

    def scan_code_for_malicious_patterns(
        self, code: str, language: str, principal_id: str | None = None
    ) -> ContentSafetyResult:
        scores: list[CategoryScore] = []
        for pattern in self._rules.patterns_for(ContentCategory.MALICIOUS_CODE):
            if pattern.search(code):
                scores.append(
                    CategoryScore(
                        ContentCategory.MALICIOUS_CODE, self._rules.general_code_confidence
                    )
                )
        for pattern in self._rules.code_languages.get(language.strip().lower(), ()):
            if pattern.search(code):
                scores.append(
                    CategoryScore(
                        ContentCategory.MALICIOUS_CODE, self._rules.language_code_confidence
                    )
                )

        blocked = bool(scores) and self._config.block_high_risk_content
        result = ContentSafetyResult(
            id=generate_scan_id(),
            is_allowed=not blocked,
            categories=tuple(scores),
            reason=REASON_MALICIOUS_CODE if blocked else None,
            timestamp=self._clock(),
        )
        if blocked:
            self._logger.warning(
                "malicious_code_detected", scan_id=result.id, language=language, hits=len(scores)
            )
        return self._report(result, code, principal_id)

    def _analyze(self, content: str) -> ContentSafetyResult:
        scan_id = generate_scan_id()
        now = self._clock()
        config = self._config

        if any(phrase in content for phrase in config.block_list):
            return ContentSafetyResult(
                id=scan_id,
                is_allowed=False,
                categories=(CategoryScore(ContentCategory.HARMFUL_INSTRUCTIONS, 1.0),),
                reason=REASON_BLOCKED_PHRASE,
                timestamp=now,
            )
        if any(phrase in content for phrase in config.allow_list):
            return ContentSafetyResult(
                id=scan_id,
                is_allowed=True,
                categories=(CategoryScore(ContentCategory.SAFE, 1.0),),
                timestamp=now,
            )

        word_count = max(1, len(content.split(" ")))
        scores: list[CategoryScore] = []
        reason: str | None = None
        for category in config.enabled_categories:
            matches = sum(
                len(pattern.findall(content)) for pattern in self._rules.patterns_for(category)
            )
            if matches == 0:
                continue
            confidence = min(0.5 + matches / word_count, 1.0)
            scores.append(CategoryScore(category, confidence))
            if confidence >= config.threshold_for(category) and config.block_high_risk_content:
                reason = (
                    f"Content potentially contains {category.value} "
                    f"(confidence: {confidence:.2f})"
                )

        is_allowed = reason is None
        redacted: str | None = None
        if not is_allowed and config.redaction_enabled:
            redacted = self._redact(content, scores)
        return ContentSafetyResult(
            id=scan_id,
            is_allowed=is_allowed,
            categories=tuple(scores),
            redacted_content=redacted,
            reason=reason,
            timestamp=now,
        )

    def _redact(self, content: str, scores: Sequence[CategoryScore]) -> str:
        redacted = content
        for score in scores:
            if score.confidence < self._config.threshold_for(score.category):
                continue
            for pattern in self._rules.patterns_for(score.category):
                redacted = pattern.sub(REDACTED_PLACEHOLDER, redacted)
        return redacted

    def _record_moderation(
        self, result: ContentSafetyResult, content: str, principal_id: str | None
    ) -> None:
        assert self._moderation_log is not None
        log = ModerationLog.from_result(
            result, content_hash=sha256_text(content), principal_id=principal_id
        )
        try:
            self._moderation_log.add(log)
        except Exception as exc:  # noqa: BLE001 - the verdict stands without its log
            self._logger.error("moderation_log_write_failed", scan_id=result.id, error=str(exc))

    def _report(
        self, result: ContentSafetyResult, content: str, principal_id: str | None
    ) -> ContentSafetyResult:
        if self._config.report_moderation_results and self._moderation_log is not None:
            self._record_moderation(result, content, principal_id)
        return self._audit_verdict(result, principal_id)

    def _audit_verdict(
        self, result: ContentSafetyResult, principal_id: str | None
    ) -> ContentSafetyResult:
        if self._audit is None:
            return result
        try:
            self._audit.record(
                AuditKind.CONTENT_VERDICT,
                "allow" if result.is_allowed else "deny",
                principal_id=principal_id,
                reason=result.reason,
                details={
                    "scan_id": result.id,
                    "categories": [score.to_dict() for score in result.categories],
                },
            )
        except Exception as exc:  # noqa: BLE001 - an unaudited verdict is a denial
            self._logger.error(
                "content_audit_failed",
                scan_id=result.id,
                principal_id=principal_id,
                error=str(exc),
            )
            return replace(result, is_allowed=False, reason=REASON_ANALYSIS_ERROR)
        return result


def _compile_block(block: object, location: str) -> tuple[re.Pattern[str], ...]:
    if not isinstance(block, dict):
        raise ValueError(f"{location}: expected mapping with 'patterns'")
    patterns = block.get("patterns", [])
    if not isinstance(patterns, list) or not all(isinstance(item, str) for item in patterns):
        raise ValueError(f"{location}.patterns: expected list of strings")
    flags = re.IGNORECASE if block.get("ignore_case", False) else 0
    compiled: list[re.Pattern[str]] = []
    for index, raw in enumerate(patterns):
        try:
            compiled.append(re.compile(raw, flags))
        except re.error as exc:
            raise ValueError(f"{location}.patterns[{index}]: invalid regex ({exc})") from exc
    return tuple(compiled)


def _confidence(value: object, source: Path) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{source}: code_scan confidence must be a number")
    if not 0.0 <= float(value) <= 1.0:
        raise ValueError(f"{source}: code_scan confidence must be within [0, 1]")
    return float(value)


__all__ = [
    "DEFAULT_RULES_PATH",
    "REASON_ANALYSIS_ERROR",
    "REASON_BLOCKED_PHRASE",
    "REASON_MALICIOUS_CODE",
    "ContentFilter",
    "ContentRules",
    "FilterConfig",
    "ModerationLogSink",
    "load_content_rules",
]
