"""Services for blog_archiver.

Importers and the text analysis engine live in the importers and nlp
subpackages; this package holds the helpers they share.
"""

from .feed_parser import FeedParseError, ParsedFeed, looks_like_xml, parse_feed_text
from .text_utils import count_words, generate_id, reading_time_minutes, strip_html

__all__ = [
    "FeedParseError",
    "ParsedFeed",
    "looks_like_xml",
    "parse_feed_text",
    "count_words",
    "generate_id",
    "reading_time_minutes",
    "strip_html",
]
