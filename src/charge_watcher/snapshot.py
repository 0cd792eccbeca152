"""Atomic JSON snapshots of the pattern collection on local disk."""
import json
import logging
import os
from pathlib import Path

from .patterns import ClusterStore

logger = logging.getLogger(__name__)


def load_patterns(path: Path) -> ClusterStore:
    """Load a snapshot; a missing file yields an empty collection."""
    if not path.exists():
        logger.debug("No pattern snapshot at %s", path)
        return ClusterStore()
    with path.open(encoding="utf-8") as f:
        data = json.load(f)
    store = ClusterStore.from_dicts(data)
    logger.info("Loaded %d charging patterns from %s", len(store), path)
    return store


def save_patterns(path: Path, store: ClusterStore) -> None:
    """Write the snapshot aside and swap it into place.

    A crash mid-write leaves the previous snapshot untouched. Errors
    propagate so the caller can keep its in-memory state and retry.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    payload = json.dumps(store.to_dicts(), indent=2)
    with tmp.open("w", encoding="utf-8") as f:
        f.write(payload)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)
    logger.info("Saved %d charging patterns to %s", len(store), path)
