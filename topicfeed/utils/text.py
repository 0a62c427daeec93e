"""
Text matching utilities for topicfeed.
"""
import re
from datetime import datetime, timezone
from functools import lru_cache
from typing import Iterable, List, Optional, Pattern, Set
from urllib.parse import urlparse

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_FRACTION = re.compile(r'\.(\d+)')


def normalize_term(term: str) -> str:
    """Lowercase a vocabulary term and collapse its whitespace."""
    return ' '.join(str(term or '').lower().split())


@lru_cache(maxsize=2048)
def term_pattern(term: str) -> Pattern:
    """
    Compile a boundary-aware pattern for a vocabulary term.

    The term must not be glued to other word characters on either side, so
    "art" does not match "party" but "st. mary's" still matches at a full stop.
    Inner whitespace of multi-word terms matches any run of whitespace.

    Args:
        term: Keyword, landmark or organization name

    Returns:
        Compiled case-insensitive pattern
    """
    pieces = [re.escape(piece) for piece in normalize_term(term).split(' ')]
    return re.compile(r'(?<!\w)' + r'\s+'.join(pieces) + r'(?!\w)', re.IGNORECASE)


def matches_term(text: str, term: str) -> bool:
    """Check whether text contains term on word/phrase boundaries."""
    if not text or not normalize_term(term):
        return False
    return term_pattern(term).search(text) is not None


def count_term(text: str, term: str) -> int:
    """Count boundary-aware occurrences of term in text."""
    if not text or not normalize_term(term):
        return 0
    return len(term_pattern(term).findall(text))


def matched_terms(text: str, vocabulary: Iterable[str]) -> Set[str]:
    """
    Find the vocabulary terms present in a text.

    Args:
        text: Text blob to search
        vocabulary: Terms to look for

    Returns:
        Normalized (lowercase) terms that matched
    """
    found = set()
    for term in vocabulary:
        normalized = normalize_term(term)
        if normalized and normalized not in found and matches_term(text, normalized):
            found.add(normalized)
    return found


def combined_text(title: Optional[str], contents: Iterable[Optional[str]]) -> str:
    """Build the lowercase title + slide text blob used for matching."""
    parts = [title or '']
    parts.extend(content or '' for content in contents)
    return ' '.join(parts).lower()


def extract_domain(url: Optional[str]) -> Optional[str]:
    """
    Extract the source domain from a canonical URL.

    Args:
        url: Article URL, possibly missing or a '#' placeholder

    Returns:
        Lowercase host without a leading 'www.', or None
    """
    if not url or url == '#':
        return None
    parsed = urlparse(url if '://' in url else f'//{url}')
    host = (parsed.hostname or '').lower()
    if host.startswith('www.'):
        host = host[4:]
    return host or None


def normalize_domain(value: str) -> str:
    """Normalize a user-selected source so it compares equal to extract_domain()."""
    value = (value or '').strip().lower()
    if '/' in value or ':' in value:
        return extract_domain(value) or value
    return value[4:] if value.startswith('www.') else value


def parse_date(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO 8601 timestamp into an aware datetime.

    Naive timestamps are taken as UTC.

    Args:
        value: Timestamp string, e.g. '2024-05-01T10:00:00Z'

    Returns:
        Aware datetime, or None when the value is missing or unparsable
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith('Z') or text.endswith('z'):
        text = text[:-1] + '+00:00'
    # Postgres emits 1-6 fractional digits; older fromisoformat wants 3 or 6
    text = _FRACTION.sub(lambda m: '.' + m.group(1)[:6].ljust(6, '0'), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def sort_timestamp(value: Optional[str]) -> float:
    """Ordering key for content dates; unparsable dates sort as oldest."""
    parsed = parse_date(value)
    return (parsed or EPOCH).timestamp()


def unique_terms(terms: Iterable[str]) -> List[str]:
    """Drop empty and case-insensitive duplicate terms, keeping first spelling."""
    seen = set()
    result = []
    for term in terms:
        cleaned = ' '.join(str(term or '').split())
        key = cleaned.lower()
        if cleaned and key not in seen:
            seen.add(key)
            result.append(cleaned)
    return result
