"""Source importers for blog_archiver."""

from typing import Dict, Type

from blog_archiver.models.schemas import SourceKind
from blog_archiver.services.importers.base import BaseImporter, ProgressSink
from blog_archiver.services.importers.file_importer import FileImporter
from blog_archiver.services.importers.history_api import HistoryApiImporter, list_feeds
from blog_archiver.services.importers.wayback_importer import WaybackImporter

IMPORTERS: Dict[SourceKind, Type[BaseImporter]] = {
    SourceKind.WAYBACK: WaybackImporter,
    SourceKind.HISTORY_API: HistoryApiImporter,
    SourceKind.FILE: FileImporter,
}

__all__ = [
    "IMPORTERS",
    "BaseImporter",
    "FileImporter",
    "HistoryApiImporter",
    "ProgressSink",
    "WaybackImporter",
    "list_feeds",
]
