"""
JSON export of association results.
"""

import dataclasses
from datetime import datetime, timezone
from typing import Optional

from .types import AssociationStats, NoteAssociation


def build_association_export(
    associations: list[NoteAssociation],
    stats: AssociationStats,
    filtered_by: Optional[str] = None,
) -> dict:
    """
    Build a JSON-serializable snapshot of associations and index stats.

    `filtered_by` records the note the associations were narrowed to.
    """
    meta = {"exported_at": datetime.now(timezone.utc).isoformat()}
    if filtered_by:
        meta["filtered_by"] = filtered_by
    return {
        "meta": meta,
        "stats": dataclasses.asdict(stats),
        "associations": [
            {
                "source_note_id": a.source_note_id,
                "target_note_id": a.target_note_id,
                "shared_concepts": list(a.shared_concepts),
                "confidence": a.confidence,
                "discovered_at": a.discovered_at.isoformat(),
            }
            for a in associations
        ],
    }
