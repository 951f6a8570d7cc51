"""Article statistics for the quality gate.

Derives word, sentence and paragraph counts, keyword usage and Flesch
readability from generated article HTML, so a gate input can be built
from raw writer output.

Counting rules:
    - Each CJK ideograph counts as one word and one syllable.
    - Latin words are runs of letters/digits, joined by ' or -.
    - Syllables of a Latin word are its vowel groups, minus a silent
      trailing "e", at least one.
    - Keyword density = occurrences / words * 100.
"""

import html as html_lib
import math
import re
from dataclasses import dataclass
from urllib.parse import urlparse

# =============================================================================
# Constants
# =============================================================================

WORDS_PER_MINUTE: int = 400
"""Reading speed used for the reading-time estimate."""

_SCRIPT_STYLE_PATTERN = re.compile(
    r"<(script|style)\b[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL
)
_BLOCK_END_PATTERN = re.compile(
    r"</(p|h[1-6]|li|blockquote|div|section|td|th)>|<br\s*/?>", re.IGNORECASE
)
_TAG_PATTERN = re.compile(r"<[^>]+>")
_CJK_PATTERN = re.compile(r"[\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff]")
_LATIN_WORD_PATTERN = re.compile(
    r"[A-Za-z0-9\u00c0-\u024f]+(?:['\u2019-][A-Za-z0-9\u00c0-\u024f]+)*"
)
_SENTENCE_SPLIT_PATTERN = re.compile(r"[.!?。！？]+")
_VOWEL_GROUP_PATTERN = re.compile(r"[aeiouy]+")
_PARAGRAPH_PATTERN = re.compile(r"<p[\s>]", re.IGNORECASE)
_HREF_PATTERN = re.compile(r"""<a\s[^>]*href=["']([^"']+)["']""", re.IGNORECASE)


@dataclass(frozen=True)
class ArticleStatistics:
    """Measured properties of one article.

    Attributes:
        word_count: Latin words plus CJK characters.
        paragraph_count: Number of <p> elements.
        sentence_count: Non-empty sentences in the visible text.
        syllable_count: Estimated syllables.
        keyword_count: Case-insensitive keyword occurrences.
        keyword_density: keyword_count / word_count * 100.
        flesch_reading_ease: Clamped to [0, 100].
        flesch_kincaid_grade: Clamped to >= 0.
        reading_time_minutes: ceil(word_count / 400).
    """

    word_count: int
    paragraph_count: int
    sentence_count: int
    syllable_count: int
    keyword_count: int
    keyword_density: float
    flesch_reading_ease: float
    flesch_kincaid_grade: float
    reading_time_minutes: int


# =============================================================================
# Text Helpers
# =============================================================================


def html_to_text(html: str) -> str:
    """Visible text of an HTML fragment, one line per block element."""
    text = _SCRIPT_STYLE_PATTERN.sub(" ", html)
    text = _BLOCK_END_PATTERN.sub("\n", text)
    text = _TAG_PATTERN.sub(" ", text)
    return html_lib.unescape(text)


def count_syllables(word: str) -> int:
    """Estimate syllables in one Latin word."""
    word = word.lower()
    if not any(c.isalpha() for c in word):
        return 1
    groups = len(_VOWEL_GROUP_PATTERN.findall(word))
    if word.endswith("e") and not word.endswith("le") and groups > 1:
        groups -= 1
    return max(1, groups)


def _tokens(text: str) -> tuple[list[str], int]:
    """Latin words and the number of CJK characters in ``text``."""
    cjk_count = len(_CJK_PATTERN.findall(text))
    latin_words = _LATIN_WORD_PATTERN.findall(_CJK_PATTERN.sub(" ", text))
    return latin_words, cjk_count


def count_words(text: str) -> int:
    """Latin words plus CJK characters."""
    latin_words, cjk_count = _tokens(text)
    return len(latin_words) + cjk_count


def count_sentences(text: str) -> int:
    """Non-empty segments between sentence terminators."""
    return sum(1 for s in _SENTENCE_SPLIT_PATTERN.split(text) if s.strip())


def count_keyword(text: str, keyword: str) -> int:
    """Case-insensitive, non-overlapping occurrences of ``keyword``."""
    keyword = keyword.strip()
    if not keyword:
        return 0
    return len(re.findall(re.escape(keyword), text, re.IGNORECASE))


def flesch_scores(words: int, sentences: int, syllables: int) -> tuple[float, float]:
    """Flesch Reading Ease and Flesch-Kincaid Grade.

    Returns:
        (ease clamped to [0, 100], grade clamped to >= 0); (0.0, 0.0) for
        empty text.
    """
    if words == 0 or sentences == 0:
        return 0.0, 0.0
    words_per_sentence = words / sentences
    syllables_per_word = syllables / words
    ease = 206.835 - 1.015 * words_per_sentence - 84.6 * syllables_per_word
    grade = 0.39 * words_per_sentence + 11.8 * syllables_per_word - 15.59
    return max(0.0, min(100.0, ease)), max(0.0, grade)


def extract_internal_links(html: str, site_host: str | None = None) -> list[str]:
    """Hrefs pointing inside the site.

    Relative links always count; absolute links count when their host
    equals ``site_host``.
    """
    links: list[str] = []
    for href in _HREF_PATTERN.findall(html):
        parsed = urlparse(href)
        if parsed.scheme in ("mailto", "tel", "javascript") or href.startswith("#"):
            continue
        if not parsed.netloc:
            links.append(href)
        elif site_host and parsed.netloc.lower() == site_host.lower():
            links.append(href)
    return links


# =============================================================================
# Public API
# =============================================================================


def analyze_article(html: str, keyword: str) -> ArticleStatistics:
    """Measure an article.

    Args:
        html: Article body HTML.
        keyword: Focus keyword.

    Returns:
        ArticleStatistics for the visible text.
    """
    text = html_to_text(html)
    latin_words, cjk_count = _tokens(text)
    word_count = len(latin_words) + cjk_count
    syllables = sum(count_syllables(w) for w in latin_words) + cjk_count
    sentences = count_sentences(text)
    keyword_count = count_keyword(text, keyword)
    density = keyword_count / word_count * 100 if word_count else 0.0
    ease, grade = flesch_scores(word_count, sentences, syllables)

    return ArticleStatistics(
        word_count=word_count,
        paragraph_count=len(_PARAGRAPH_PATTERN.findall(html)),
        sentence_count=sentences,
        syllable_count=syllables,
        keyword_count=keyword_count,
        keyword_density=density,
        flesch_reading_ease=ease,
        flesch_kincaid_grade=grade,
        reading_time_minutes=math.ceil(word_count / WORDS_PER_MINUTE),
    )
