"""Shared-event detection.

Several sections running the same activity each hold their own event
row. Events are matched on ``(name, start_date)``; every instance in a
group of two or more is marked shared, with the lowest section id as
owner and the participating sections listed in ascending order.
"""

import logging
from typing import Dict, Iterable, List, Tuple

from ..storage import RecordStore
from ..types import Event, SharedEventMetadata

logger = logging.getLogger(__name__)

GroupKey = Tuple[str, str]


def _group_key(event: Event) -> GroupKey:
    return (event.name, event.start_date)


def group_shared_events(events: Iterable[Event]) -> Dict[GroupKey, List[Event]]:
    """Groups of two or more events sharing an exact name and start date."""
    groups: Dict[GroupKey, List[Event]] = {}
    for event in events:
        if not event.name or not event.start_date:
            continue
        groups.setdefault(_group_key(event), []).append(event)

    shared = {}
    for key, members in groups.items():
        if len(members) < 2:
            continue
        shared[key] = sorted(members, key=lambda e: (e.section_id, e.event_id))
    return shared


def shared_metadata_for(events: Iterable[Event]) -> List[SharedEventMetadata]:
    """Metadata rows for every instance of every shared group."""
    out = []
    for members in group_shared_events(events).values():
        sections = sorted({e.section_id for e in members})
        for event in members:
            out.append(
                SharedEventMetadata(
                    event_id=event.event_id,
                    is_shared=True,
                    owner_section_id=sections[0],
                    sections=list(sections),
                )
            )
    out.sort(key=lambda m: m.event_id)
    return out


def detect_shared_events(store: RecordStore) -> List[SharedEventMetadata]:
    """Scan every stored event and upsert shared-event metadata.

    Existing metadata whose content is unchanged is left untouched.
    """
    saved = [store.save_shared_event_metadata(meta) for meta in shared_metadata_for(store.get_events())]
    if saved:
        logger.info(f"Detected {len(saved)} shared event instances")
    return saved
