# =============================================================================
# Importer Module
# =============================================================================
# The destination side of the shuttle: where accepted messages are sent.
# =============================================================================

from mailshuttle.importer.client import (
    Importer,
    ImapAppendImporter,
    ImportFailure,
)

__all__ = [
    "Importer",
    "ImapAppendImporter",
    "ImportFailure",
]
