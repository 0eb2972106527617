"""
Change detection between draft snapshots.
Decides whether an edit is worth a remote write.
"""

import copy
import logging
from typing import Any, Dict, Optional, Union

from data_models import Draft

logger = logging.getLogger(__name__)

TRACKED_META_FIELDS = (
    "title", "theme", "target_age", "literary_style",
    "central_message", "additional_details"
)


def persistence_snapshot(draft: Draft) -> Dict[str, Any]:
    """Deep copy of the fields that give the remote record its meaning"""
    snapshot = {name: getattr(draft.meta, name) for name in TRACKED_META_FIELDS}
    snapshot["dedicatoria"] = copy.deepcopy(draft.meta.dedicatoria)
    snapshot["characters"] = copy.deepcopy(draft.characters)
    return snapshot


def has_real_changes(current: Union[Draft, Dict[str, Any]],
                     previous: Optional[Union[Draft, Dict[str, Any]]]) -> bool:
    """Return True when a tracked field differs between the two snapshots"""
    if previous is None:
        return True

    if isinstance(current, Draft):
        current = persistence_snapshot(current)
    if isinstance(previous, Draft):
        previous = persistence_snapshot(previous)

    for name in TRACKED_META_FIELDS:
        if current.get(name) != previous.get(name):
            logger.debug(f"Change detected in {name}: {previous.get(name)!r} -> {current.get(name)!r}")
            return True

    # Dataclass equality compares nested fields structurally
    if current.get("dedicatoria") != previous.get("dedicatoria"):
        logger.debug("Change detected in dedicatoria")
        return True

    if current.get("characters") != previous.get("characters"):
        logger.debug("Change detected in characters")
        return True

    return False
