from second_brain.chunks import ChunkScratch, scratch
from second_brain.config import settings
from second_brain.metrics import scratch_entries_swept_total


def cleanup_once(area: ChunkScratch | None = None, now: float | None = None) -> dict[str, int]:
    """Sweep staged uploads nobody has touched within ``stale_upload_ttl_seconds``.

    Abandoned uploads only ever live in the scratch area, so this is the whole of
    the garbage collection.
    """
    target = area if area is not None else scratch
    stats = target.sweep(settings.stale_upload_ttl_seconds, now=now)
    scratch_entries_swept_total.inc(stats["stale_uploads_deleted"] + stats["stale_merged_files_deleted"])
    return stats
