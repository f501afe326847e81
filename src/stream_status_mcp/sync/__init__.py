"""Stream definition import from project plan files."""

from .importer import (
    StreamFileError,
    StreamFileImporter,
    SyncResult,
    order_by_blockers,
    parse_stream_file,
)
from .models import StreamDefinition

__all__ = [
    "StreamDefinition",
    "StreamFileError",
    "StreamFileImporter",
    "SyncResult",
    "order_by_blockers",
    "parse_stream_file",
]
