"""
Data models for topicfeed.
"""
from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from topicfeed.utils.text import (
    combined_text,
    extract_domain,
    matches_term,
    normalize_domain,
    normalize_term,
    unique_terms,
)

# Filter categories
KEYWORD = 'keyword'
LANDMARK = 'landmark'
ORGANIZATION = 'organization'
SOURCE = 'source'
TERM_CATEGORIES = (KEYWORD, LANDMARK, ORGANIZATION)
FILTER_CATEGORIES = TERM_CATEGORIES + (SOURCE,)

_SELECTION_FIELDS = {
    KEYWORD: 'keywords',
    LANDMARK: 'landmarks',
    ORGANIZATION: 'organizations',
    SOURCE: 'sources',
}

STORY = 'story'
PARLIAMENTARY_MENTION = 'parliamentary_mention'


@dataclass
class Topic:
    """
    A topic and its filter vocabulary.
    """
    id: str
    slug: str
    name: str
    topic_type: str = 'keyword'  # 'regional' | 'keyword'
    keywords: List[str] = field(default_factory=list)
    landmarks: List[str] = field(default_factory=list)
    organizations: List[str] = field(default_factory=list)
    region: Optional[str] = None
    description: str = ''
    is_public: bool = True
    parliamentary_tracking_enabled: bool = False
    donation_enabled: bool = False
    branding_config: Dict[str, Any] = field(default_factory=dict)

    def terms(self, category: str) -> List[str]:
        """Vocabulary of one term category."""
        return list(getattr(self, _SELECTION_FIELDS[category]))

    @property
    def vocabulary(self) -> List[str]:
        """Keywords, landmarks and organizations without duplicates."""
        return unique_terms(self.keywords + self.landmarks + self.organizations)

    def vocabulary_signature(self) -> Tuple[Tuple[str, ...], ...]:
        """Comparable form of the vocabulary; differs only on material changes."""
        return tuple(
            tuple(sorted({normalize_term(term) for term in self.terms(category) if normalize_term(term)}))
            for category in TERM_CATEGORIES
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Topic':
        return cls(
            id=str(data['id']),
            slug=data.get('slug') or '',
            name=data.get('name') or '',
            topic_type=data.get('topic_type') or 'keyword',
            keywords=unique_terms(data.get('keywords') or []),
            landmarks=unique_terms(data.get('landmarks') or []),
            organizations=unique_terms(data.get('organizations') or []),
            region=data.get('region'),
            description=data.get('description') or '',
            is_public=bool(data.get('is_public', True)),
            parliamentary_tracking_enabled=bool(data.get('parliamentary_tracking_enabled', False)),
            donation_enabled=bool(data.get('donation_enabled', False)),
            branding_config=dict(data.get('branding_config') or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'slug': self.slug,
            'name': self.name,
            'topic_type': self.topic_type,
            'keywords': list(self.keywords),
            'landmarks': list(self.landmarks),
            'organizations': list(self.organizations),
            'region': self.region,
            'description': self.description,
            'is_public': self.is_public,
            'parliamentary_tracking_enabled': self.parliamentary_tracking_enabled,
            'donation_enabled': self.donation_enabled,
            'branding_config': dict(self.branding_config),
        }


@dataclass
class Slide:
    """
    One slide of a story.
    """
    id: str
    story_id: str
    slide_number: int
    content: str = ''
    word_count: int = 0
    links: Optional[List[Dict[str, str]]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], story_id: Optional[str] = None) -> 'Slide':
        return cls(
            id=str(data['id']),
            story_id=str(story_id or data.get('story_id') or ''),
            slide_number=int(data.get('slide_number') or 0),
            content=data.get('content') or '',
            word_count=int(data.get('word_count') or 0),
            links=data.get('links'),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'story_id': self.story_id,
            'slide_number': self.slide_number,
            'content': self.content,
            'word_count': self.word_count,
        }
        if self.links:
            data['links'] = self.links
        return data


@dataclass
class Story:
    """
    A content record: a story and its ordered slides.

    ``defects`` lists data-integrity problems found while assembling the
    record; a story with defects is still shown but is not complete.
    """
    id: str
    title: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    author: str = 'Unknown'
    publication_name: str = ''
    source_url: Optional[str] = None
    published_at: Optional[str] = None
    region: Optional[str] = None
    cover_illustration_url: Optional[str] = None
    is_parliamentary: bool = False
    mp_names: List[str] = field(default_factory=list)
    popularity: Optional[Dict[str, Any]] = None
    slides: List[Slide] = field(default_factory=list)
    defects: List[str] = field(default_factory=list)

    @property
    def content_date(self) -> Optional[str]:
        """Ordering date: the article's publication date, else creation date."""
        return self.published_at or self.created_at

    @property
    def text(self) -> str:
        """Lowercase title + slide text used for term matching."""
        return combined_text(self.title, (slide.content for slide in self.slides))

    @property
    def source_domain(self) -> Optional[str]:
        return extract_domain(self.source_url)

    @property
    def is_complete(self) -> bool:
        """Slides present, numbered 1..N without gaps or duplicates."""
        return bool(self.slides) and not self.defects

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Story':
        story_id = str(data['id'])
        return cls(
            id=story_id,
            title=data.get('title') or '',
            created_at=data.get('created_at'),
            updated_at=data.get('updated_at'),
            author=data.get('author') or 'Unknown',
            publication_name=data.get('publication_name') or '',
            source_url=data.get('source_url'),
            published_at=data.get('published_at'),
            region=data.get('region'),
            cover_illustration_url=data.get('cover_illustration_url'),
            is_parliamentary=bool(data.get('is_parliamentary', False)),
            mp_names=list(data.get('mp_names') or []),
            popularity=data.get('popularity'),
            slides=[Slide.from_dict(slide, story_id) for slide in data.get('slides') or []],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
            'author': self.author,
            'publication_name': self.publication_name,
            'source_url': self.source_url,
            'published_at': self.published_at,
            'region': self.region,
            'cover_illustration_url': self.cover_illustration_url,
            'is_parliamentary': self.is_parliamentary,
            'mp_names': list(self.mp_names),
            'popularity': self.popularity,
            'slides': [slide.to_dict() for slide in self.slides],
        }


@dataclass
class FeedContentItem:
    """
    Typed envelope over a story in the feed.

    ``content_date`` is fixed when the item is created so that unrelated
    edits never move a story within the feed.
    """
    id: str
    content_date: Optional[str]
    story: Story
    type: str = STORY

    @classmethod
    def from_story(cls, story: Story) -> 'FeedContentItem':
        return cls(
            id=story.id,
            content_date=story.content_date,
            story=story,
            type=PARLIAMENTARY_MENTION if story.is_parliamentary else STORY,
        )


@dataclass(frozen=True)
class FilterIndexEntry:
    """Derived per-story filter data: source domain and matched vocabulary terms."""
    story_id: str
    source_domain: Optional[str]
    terms: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class FilterSelection:
    """
    The active filter selection.

    Keywords, landmarks and organizations together form the term dimension
    and sources form the source dimension. A story is visible when it matches
    any selected term (or none are selected) AND its source is one of the
    selected sources (or none are selected).
    """
    keywords: Tuple[str, ...] = ()
    landmarks: Tuple[str, ...] = ()
    organizations: Tuple[str, ...] = ()
    sources: Tuple[str, ...] = ()

    def get(self, category: str) -> Tuple[str, ...]:
        return getattr(self, _SELECTION_FIELDS[category])

    @property
    def terms(self) -> Tuple[str, ...]:
        """Selected keywords, landmarks and organizations, in that order."""
        return tuple(unique_terms(self.keywords + self.landmarks + self.organizations))

    @property
    def is_empty(self) -> bool:
        return not (self.keywords or self.landmarks or self.organizations or self.sources)

    @property
    def active_categories(self) -> List[str]:
        return [category for category in FILTER_CATEGORIES if self.get(category)]

    def toggled(self, category: str, value: str) -> 'FilterSelection':
        """
        Return a selection with value added to or removed from category.

        Adding a term removes it from the other term categories so the
        per-category sets stay disjoint.
        """
        if category not in _SELECTION_FIELDS:
            raise ValueError(f"Unknown filter category: {category}")
        value = normalize_domain(value) if category == SOURCE else ' '.join(str(value or '').split())
        if not value:
            return self

        current = list(self.get(category))
        lowered = [item.lower() for item in current]
        changes = {}
        if value.lower() in lowered:
            current.pop(lowered.index(value.lower()))
        else:
            current.append(value)
            if category != SOURCE:
                for other in TERM_CATEGORIES:
                    if other != category:
                        kept = tuple(item for item in self.get(other) if item.lower() != value.lower())
                        changes[_SELECTION_FIELDS[other]] = kept
        changes[_SELECTION_FIELDS[category]] = tuple(current)
        return replace(self, **changes)

    def matches(self, text: str, source_domain: Optional[str] = None, is_parliamentary: bool = False) -> bool:
        """Evaluate the selection against a story's text and source domain."""
        terms = self.terms
        if terms:
            if is_parliamentary:
                return False
            if not any(matches_term(text, term) for term in terms):
                return False
        if self.sources:
            if not source_domain or source_domain not in self.sources:
                return False
        return True

    def matches_entry(self, entry: FilterIndexEntry, is_parliamentary: bool = False) -> bool:
        """Evaluate the selection against a prebuilt index entry."""
        terms = self.terms
        if terms:
            if is_parliamentary:
                return False
            if not any(normalize_term(term) in entry.terms for term in terms):
                return False
        if self.sources:
            if not entry.source_domain or entry.source_domain not in self.sources:
                return False
        return True

    def cache_key(self) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
        """Order-insensitive identity of what the remote query would return."""
        return (
            tuple(sorted({normalize_term(term) for term in self.terms})),
            tuple(sorted(set(self.sources))),
        )


@dataclass
class CachedFeedEntry:
    """
    Last-known-good snapshot of a topic's feed for cold starts.
    """
    topic_slug: str
    topic: Topic
    stories: List[Story]
    timestamp: float
    version: int = 1

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CachedFeedEntry':
        return cls(
            topic_slug=data['topic_slug'],
            topic=Topic.from_dict(data['topic']),
            stories=[Story.from_dict(story) for story in data['stories']],
            timestamp=float(data['timestamp']),
            version=int(data['version']),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'timestamp': self.timestamp,
            'topic_slug': self.topic_slug,
            'topic': self.topic.to_dict(),
            'stories': [story.to_dict() for story in self.stories],
        }
