"""Quality gate for finished articles.

Scores an article with eight structural checks and combines them into a
0-100 weighted score:

    word_count 0.20, keyword_usage 0.15, heading_structure 0.15,
    readability 0.10, meta_quality 0.15, content_structure 0.10,
    image_alt_text 0.05, internal_links 0.10

The article passes iff the score meets the threshold (QUALITY_THRESHOLD
setting, default 70).
Independently, every failing check with severity "error" is a blocker:
the article must not be published even if the score clears the
threshold. Warning messages are returned as suggestions.

Verdicts are data; evaluate() never raises for a bad article.
"""

import logging
import math
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Literal

from jobengine.core.config import settings
from jobengine.services.article_statistics import (
    analyze_article,
    extract_internal_links,
)

logger = logging.getLogger(__name__)

Severity = Literal["error", "warning", "info"]

# =============================================================================
# Constants
# =============================================================================

DEFAULT_WEIGHTS: Mapping[str, float] = {
    "word_count": 0.20,
    "keyword_usage": 0.15,
    "heading_structure": 0.15,
    "readability": 0.10,
    "meta_quality": 0.15,
    "content_structure": 0.10,
    "image_alt_text": 0.05,
    "internal_links": 0.10,
}

_MIN_WORD_RATIO = 0.8
_MAX_WORD_RATIO = 1.5

_MIN_KEYWORD_COUNT = 3
_MIN_KEYWORD_DENSITY = 0.5
_MAX_KEYWORD_DENSITY = 3.0

_MIN_H2_COUNT = 3

_MIN_READING_EASE = 30.0
_GOOD_READING_EASE = 60.0
_MAX_GRADE = 12.0
_GOOD_GRADE = 8.0

_TITLE_LENGTH = (30, 70)
_DESCRIPTION_LENGTH = (100, 160)

_MIN_PARAGRAPHS = 5

_NO_IMAGES_SCORE = 80.0
_MIN_ALT_PERCENTAGE = 80.0

_MIN_INTERNAL_LINKS = 2
_MAX_INTERNAL_LINKS = 10

_H1_PATTERN = re.compile(r"<h1[\s>]", re.IGNORECASE)
_H2_PATTERN = re.compile(r"<h2[\s>]", re.IGNORECASE)
_H3_PATTERN = re.compile(r"<h3[\s>]", re.IGNORECASE)
_P_PATTERN = re.compile(r"<p[\s>]", re.IGNORECASE)
_LIST_PATTERN = re.compile(r"<(?:ul|ol)[\s>]", re.IGNORECASE)
_BLOCKQUOTE_PATTERN = re.compile(r"<blockquote[\s>]", re.IGNORECASE)
_IMG_PATTERN = re.compile(r"<img\b[^>]*>", re.IGNORECASE)
_ALT_PATTERN = re.compile(
    r"""(?<![\w-])alt\s*=\s*(["'])\s*[^"'\s][^"']*\1""", re.IGNORECASE
)


# =============================================================================
# Data Structures
# =============================================================================


@dataclass(frozen=True)
class ArticleContent:
    """Writer output the gate inspects.

    Attributes:
        html: Article body HTML.
        word_count: Words (Latin words plus CJK characters).
        keyword_count: Focus keyword occurrences.
        keyword_density: Occurrences per 100 words.
        flesch_reading_ease: Flesch Reading Ease.
        flesch_kincaid_grade: Flesch-Kincaid Grade Level.
        internal_links: Internal link targets in the article.
    """

    html: str
    word_count: int
    keyword_count: int
    keyword_density: float
    flesch_reading_ease: float
    flesch_kincaid_grade: float
    internal_links: tuple[str, ...] = ()

    @classmethod
    def from_html(
        cls, html: str, keyword: str, site_host: str | None = None
    ) -> "ArticleContent":
        """Measure raw HTML with ``article_statistics``."""
        stats = analyze_article(html, keyword)
        return cls(
            html=html,
            word_count=stats.word_count,
            keyword_count=stats.keyword_count,
            keyword_density=stats.keyword_density,
            flesch_reading_ease=stats.flesch_reading_ease,
            flesch_kincaid_grade=stats.flesch_kincaid_grade,
            internal_links=tuple(extract_internal_links(html, site_host)),
        )


@dataclass(frozen=True)
class ArticleMeta:
    """SEO metadata produced for the article."""

    title: str
    description: str


@dataclass(frozen=True)
class QualityGateInput:
    """Everything one evaluation needs.

    Attributes:
        article: Writer output.
        meta: SEO metadata, or None when the meta step produced nothing.
        target_word_count: Requested article length.
        quality_threshold: Per-evaluation threshold override.
    """

    article: ArticleContent
    meta: ArticleMeta | None
    target_word_count: int
    quality_threshold: float | None = None


@dataclass(frozen=True)
class QualityCheckResult:
    """Outcome of one check.

    Attributes:
        name: Check identifier (a key of the weight table).
        passed: Whether the check's pass policy holds.
        score: 0-100.
        message: Human-readable outcome.
        severity: "error" blocks publishing when failed; "warning" is
            advisory; "info" means nothing to report.
    """

    name: str
    passed: bool
    score: float
    message: str
    severity: Severity


@dataclass(frozen=True)
class QualityVerdict:
    """Aggregate result of one evaluation.

    Attributes:
        passed: score >= threshold.
        score: Weighted score, 0-100.
        checks: Individual check results in evaluation order.
        suggestions: Messages of warning-severity checks.
        blockers: Messages of failed error-severity checks.
        threshold: Threshold applied.
    """

    passed: bool
    score: float
    checks: tuple[QualityCheckResult, ...]
    suggestions: tuple[str, ...]
    blockers: tuple[str, ...]
    threshold: float

    @property
    def publishable(self) -> bool:
        """Passed with no blockers."""
        return self.passed and not self.blockers


@dataclass(frozen=True)
class QualityGateConfig:
    """Gate defaults.

    Attributes:
        threshold: Minimum weighted score to pass; defaults to the
            quality_threshold setting.
        weights: Weight per check name; non-negative, summing to 1.0.
    """

    threshold: float = field(default_factory=lambda: settings.quality_threshold)
    weights: Mapping[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))

    def __post_init__(self) -> None:
        if not 0 <= self.threshold <= 100:
            raise ValueError(f"threshold must be within [0, 100], got {self.threshold}")
        unknown = set(self.weights) - set(DEFAULT_WEIGHTS)
        if unknown:
            raise ValueError(f"Unknown quality checks in weights: {sorted(unknown)}")
        if any(w < 0 for w in self.weights.values()):
            raise ValueError("Quality check weights must be non-negative")
        if not math.isclose(sum(self.weights.values()), 1.0, abs_tol=1e-9):
            raise ValueError("Quality check weights must sum to 1.0")


# =============================================================================
# Checks
# =============================================================================


def _clamp(score: float) -> float:
    return max(0.0, min(100.0, score))


def check_word_count(data: QualityGateInput) -> QualityCheckResult:
    """At least 80% of target; above 150% is a warning only."""
    words = data.article.word_count
    target = max(data.target_word_count, 1)
    min_words = math.floor(target * _MIN_WORD_RATIO)
    max_words = math.ceil(target * _MAX_WORD_RATIO)

    passed = words >= min_words
    score = min(100.0, words / target * 100) if passed else 50.0

    if not passed:
        message = f"Word count too low: {words} words, at least {min_words} required"
        severity: Severity = "error"
    elif words > max_words:
        message = f"Word count too high: {words} words, keep it under {max_words}"
        severity = "warning"
    else:
        message = f"Word count OK: {words} words"
        severity = "info"
    return QualityCheckResult("word_count", passed, _clamp(score), message, severity)


def check_keyword_usage(data: QualityGateInput) -> QualityCheckResult:
    """At least 3 occurrences and density within [0.5%, 3.0%]."""
    count = data.article.keyword_count
    density = data.article.keyword_density
    density_ok = _MIN_KEYWORD_DENSITY <= density <= _MAX_KEYWORD_DENSITY
    count_ok = count >= _MIN_KEYWORD_COUNT
    passed = density_ok and count_ok
    score = (50.0 if density_ok else 0.0) + (50.0 if count_ok else 0.0)

    if not count_ok:
        message = (
            f"Keyword appears only {count} times, "
            f"use it at least {_MIN_KEYWORD_COUNT} times"
        )
    elif density < _MIN_KEYWORD_DENSITY:
        message = (
            f"Keyword density too low: {density:.2f}%, "
            f"aim for {_MIN_KEYWORD_DENSITY}-{_MAX_KEYWORD_DENSITY}%"
        )
    elif density > _MAX_KEYWORD_DENSITY:
        message = f"Keyword density too high: {density:.2f}%, possible over-optimization"
    else:
        message = f"Keyword usage OK: {count} times, density {density:.2f}%"
    return QualityCheckResult(
        "keyword_usage", passed, score, message, "info" if passed else "warning"
    )


def check_heading_structure(data: QualityGateInput) -> QualityCheckResult:
    """Exactly one <h1> and at least three <h2>."""
    html = data.article.html
    h1 = len(_H1_PATTERN.findall(html))
    h2 = len(_H2_PATTERN.findall(html))
    h3 = len(_H3_PATTERN.findall(html))
    one_h1 = h1 == 1
    enough_h2 = h2 >= _MIN_H2_COUNT
    passed = one_h1 and enough_h2
    # h3 headings are optional; the last 20 points are always granted
    score = (40.0 if one_h1 else 0.0) + (40.0 if enough_h2 else 0.0) + 20.0

    if h1 == 0:
        message = "Missing H1 heading"
    elif h1 > 1:
        message = f"Too many H1 headings: {h1}, there must be exactly one"
    elif not enough_h2:
        message = f"Not enough H2 headings: {h2}, use at least {_MIN_H2_COUNT}"
    else:
        message = f"Heading structure OK: H1={h1}, H2={h2}, H3={h3}"

    if not one_h1:
        severity: Severity = "error"
    elif not enough_h2:
        severity = "warning"
    else:
        severity = "info"
    return QualityCheckResult("heading_structure", passed, score, message, severity)


def check_readability(data: QualityGateInput) -> QualityCheckResult:
    """Reading Ease >= 30 and Grade <= 12."""
    ease = data.article.flesch_reading_ease
    grade = data.article.flesch_kincaid_grade
    ease_ok = ease >= _MIN_READING_EASE
    grade_ok = grade <= _MAX_GRADE
    passed = ease_ok and grade_ok

    score = 0.0
    if ease >= _GOOD_READING_EASE:
        score += 50
    elif ease_ok:
        score += 30
    if grade <= _GOOD_GRADE:
        score += 50
    elif grade_ok:
        score += 30

    if not ease_ok:
        message = f"Readability low: Flesch Reading Ease {ease:.1f}, aim above 30"
    elif not grade_ok:
        message = f"Reading level too high: grade {grade:.1f}, aim below 12"
    else:
        message = f"Readability OK: ease {ease:.1f}, grade {grade:.1f}"
    return QualityCheckResult(
        "readability", passed, score, message, "info" if passed else "warning"
    )


def check_meta_quality(data: QualityGateInput) -> QualityCheckResult:
    """Title 30-70 characters and description 100-160 characters."""
    if data.meta is None:
        return QualityCheckResult(
            "meta_quality", False, 0.0, "Missing meta data", "error"
        )

    title_len = len(data.meta.title)
    desc_len = len(data.meta.description)
    title_ok = _TITLE_LENGTH[0] <= title_len <= _TITLE_LENGTH[1]
    desc_ok = _DESCRIPTION_LENGTH[0] <= desc_len <= _DESCRIPTION_LENGTH[1]
    passed = title_ok and desc_ok
    score = (50.0 if title_ok else 0.0) + (50.0 if desc_ok else 0.0)

    if not title_ok:
        message = (
            f"Meta title length {title_len} characters, "
            f"aim for {_TITLE_LENGTH[0]}-{_TITLE_LENGTH[1]}"
        )
    elif not desc_ok:
        message = (
            f"Meta description length {desc_len} characters, "
            f"aim for {_DESCRIPTION_LENGTH[0]}-{_DESCRIPTION_LENGTH[1]}"
        )
    else:
        message = f"Meta data OK: title {title_len}, description {desc_len} characters"
    return QualityCheckResult(
        "meta_quality", passed, score, message, "info" if passed else "warning"
    )


def check_content_structure(data: QualityGateInput) -> QualityCheckResult:
    """At least five paragraphs; lists and blockquotes add credit."""
    html = data.article.html
    paragraphs = len(_P_PATTERN.findall(html))
    lists = len(_LIST_PATTERN.findall(html))
    blockquotes = len(_BLOCKQUOTE_PATTERN.findall(html))
    passed = paragraphs >= _MIN_PARAGRAPHS
    score = (
        (60.0 if passed else 0.0)
        + (25.0 if lists else 0.0)
        + (15.0 if blockquotes else 0.0)
    )

    if not passed:
        message = f"Too few paragraphs: {paragraphs}, use at least {_MIN_PARAGRAPHS}"
    elif not lists:
        message = "Consider adding a list to improve scannability"
    else:
        message = (
            f"Content structure OK: {paragraphs} paragraphs, "
            f"{lists} lists, {blockquotes} blockquotes"
        )
    return QualityCheckResult(
        "content_structure", passed, score, message, "info" if passed else "warning"
    )


def check_image_alt_text(data: QualityGateInput) -> QualityCheckResult:
    """At least 80% of images carry non-empty alt text."""
    images = _IMG_PATTERN.findall(data.article.html)
    if not images:
        return QualityCheckResult(
            "image_alt_text", True, _NO_IMAGES_SCORE, "Article has no images", "info"
        )

    with_alt = sum(1 for img in images if _ALT_PATTERN.search(img))
    percentage = with_alt / len(images) * 100
    passed = percentage >= _MIN_ALT_PERCENTAGE
    if percentage < 100:
        message = (
            f"Some images lack alt text: {with_alt}/{len(images)} "
            f"({percentage:.0f}%)"
        )
    else:
        message = f"All {len(images)} images have alt text"
    return QualityCheckResult(
        "image_alt_text", passed, percentage, message, "info" if passed else "warning"
    )


def check_internal_links(data: QualityGateInput) -> QualityCheckResult:
    """At least two internal links; more than ten is excessive."""
    count = len(data.article.internal_links)
    passed = count >= _MIN_INTERNAL_LINKS
    if _MIN_INTERNAL_LINKS <= count <= _MAX_INTERNAL_LINKS:
        score = 100.0
    elif count > 0:
        score = 50.0
    else:
        score = 0.0

    if not passed:
        message = (
            f"Too few internal links: {count}, use at least {_MIN_INTERNAL_LINKS}"
        )
        severity: Severity = "warning"
    elif count > _MAX_INTERNAL_LINKS:
        message = f"Too many internal links: {count}, this may hurt user experience"
        severity = "warning"
    else:
        message = f"Internal links OK: {count}"
        severity = "info"
    return QualityCheckResult("internal_links", passed, score, message, severity)


CHECKS: tuple[Callable[[QualityGateInput], QualityCheckResult], ...] = (
    check_word_count,
    check_keyword_usage,
    check_heading_structure,
    check_readability,
    check_meta_quality,
    check_content_structure,
    check_image_alt_text,
    check_internal_links,
)


# =============================================================================
# Gate
# =============================================================================


def weighted_score(
    checks: tuple[QualityCheckResult, ...], weights: Mapping[str, float]
) -> float:
    """Weighted average of check scores, 0 when no weight applies."""
    total_weight = 0.0
    weighted_sum = 0.0
    for check in checks:
        weight = weights.get(check.name, 0.0)
        weighted_sum += check.score * weight
        total_weight += weight
    if total_weight <= 0:
        return 0.0
    return _clamp(weighted_sum / total_weight)


class QualityGate:
    """Evaluates finished articles.

    Args:
        config: Threshold and weight table.
    """

    def __init__(self, config: QualityGateConfig | None = None) -> None:
        self.config = config or QualityGateConfig()

    def evaluate(self, data: QualityGateInput) -> QualityVerdict:
        """Run all checks and aggregate them into a verdict."""
        threshold = (
            data.quality_threshold
            if data.quality_threshold is not None
            else self.config.threshold
        )
        checks = tuple(check(data) for check in CHECKS)
        score = weighted_score(checks, self.config.weights)
        blockers = tuple(
            c.message for c in checks if c.severity == "error" and not c.passed
        )
        suggestions = tuple(c.message for c in checks if c.severity == "warning")
        passed = score >= threshold

        logger.info(
            "Quality gate: score %.1f/100 (threshold %.1f), passed=%s, "
            "%d blockers, %d suggestions",
            score,
            threshold,
            passed,
            len(blockers),
            len(suggestions),
        )
        return QualityVerdict(
            passed=passed,
            score=score,
            checks=checks,
            suggestions=suggestions,
            blockers=blockers,
            threshold=threshold,
        )
