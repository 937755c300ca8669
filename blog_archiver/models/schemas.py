"""Data models for blog_archiver.

This module defines the core data structures for blogs, articles, import jobs
and the transient records importers pass around.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class SourceKind(str, Enum):
    """Where an import pulls its posts from."""

    WAYBACK = "wayback"
    HISTORY_API = "history_api"
    FILE = "file"


class JobStatus(str, Enum):
    """Lifecycle of an import job. RUNNING is the only non-terminal state."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.RUNNING


class ReadingStatus(str, Enum):
    UNREAD = "unread"
    IN_PROGRESS = "in_progress"
    READ = "read"


@dataclass
class Blog:
    """Represents an imported blog."""

    id: str
    title: str
    description: Optional[str]
    feed_url: Optional[str]
    site_url: Optional[str]
    post_count: int
    earliest_date: Optional[str]
    latest_date: Optional[str]
    imported_at: str
    import_source: Optional[str]
    total_word_count: int


@dataclass
class Article:
    """Represents a persisted post belonging to a blog."""

    id: str
    blog_id: str
    title: str
    link: Optional[str]
    author: Optional[str]
    pubdate: Optional[str]
    summary: Optional[str]
    word_count: int
    reading_time_minutes: int
    is_full_text: bool
    status: ReadingStatus = ReadingStatus.UNREAD
    tags: List[str] = field(default_factory=list)


@dataclass
class DiscoveredPost:
    """A post found by an importer, not yet persisted.

    Posts are keyed by link; one without a link cannot be deduplicated and is
    dropped before persistence.
    """

    title: str
    link: str
    published: Optional[str] = None
    author: Optional[str] = None
    categories: List[str] = field(default_factory=list)
    content: Optional[str] = None
    # Pre-extracted text and server-side flags, when the source supplies them
    content_text: Optional[str] = None
    is_full_text: Optional[bool] = None
    summary: Optional[str] = None


@dataclass
class ImportProgress:
    """One progress event emitted by an importer."""

    phase: str
    total_items: int
    imported_items: int
    message: str
    discovered_title: Optional[str] = None


@dataclass
class ImportJob:
    """In-memory state of one tracked import, owned by the orchestrator."""

    id: str
    blog_id: Optional[str]
    title: str
    source: SourceKind
    status: JobStatus
    phase: str
    total_items: int
    imported_items: int
    message: str
    error: Optional[str]
    started_at: str
    completed_at: Optional[str] = None
    log: List[str] = field(default_factory=list)


@dataclass
class ImportResult:
    """What an importer resolves with on success."""

    blog_id: str
    total_items: int
    imported_items: int
