"""
Tests for the JSON association export.
"""

import json
from datetime import datetime, timezone

from memoecho.exporter import build_association_export
from memoecho.types import AssociationStats, NoteAssociation


def test_export_shape():
    stats = AssociationStats(3, 4, 3, 2.0, 1.5)
    assoc = NoteAssociation(
        "kafka.md", "order.md", ["Event sourcing"], 0.95,
        discovered_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
    )
    data = build_association_export([assoc], stats)

    assert "filtered_by" not in data["meta"]
    assert data["stats"]["total_associations"] == 3
    assert data["associations"] == [{
        "source_note_id": "kafka.md",
        "target_note_id": "order.md",
        "shared_concepts": ["Event sourcing"],
        "confidence": 0.95,
        "discovered_at": "2024-05-01T12:00:00+00:00",
    }]
    json.dumps(data)


def test_export_records_filter():
    data = build_association_export([], AssociationStats(0, 0, 0, 0.0, 0.0), "kafka.md")
    assert data["meta"]["filtered_by"] == "kafka.md"
    assert data["associations"] == []
