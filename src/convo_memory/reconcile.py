"""
Bulk reconciliation: replay the durable log into the vector index.

Records are upserted under their record key, so running the job twice
leaves the index unchanged rather than duplicating entries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .log_store import LogCorruptionError, LogStore
from .store import ChromaIndex, VectorIndexError

logger = logging.getLogger(__name__)


@dataclass
class ReloadReport:
    loaded: int = 0
    #: Session files that could not be parsed or indexed.
    errors: int = 0
    #: Private records left out of the index by policy.
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"loaded": self.loaded, "errors": self.errors, "skipped": self.skipped}


async def reload_all_from_log(
    log_store: LogStore,
    index: ChromaIndex | None,
    private_json_only: bool = True,
) -> ReloadReport:
    report = ReloadReport()
    if index is None:
        logger.warning("Vector index not available; nothing reloaded")
        return report

    users = await log_store.list_users()
    files = [path for user in users for path in await log_store.session_files(user)]
    logger.info("Reloading %d session files into the vector index", len(files))

    for path in files:
        try:
            records = await log_store.read_session_file(path)
        except (OSError, LogCorruptionError) as exc:
            logger.error("Failed to parse %s: %s", path.name, exc)
            report.errors += 1
            continue

        try:
            for record in records:
                if record.is_private and private_json_only:
                    report.skipped += 1
                    continue
                await index.upsert(record.key, record.document, record.to_metadata())
                report.loaded += 1
        except VectorIndexError as exc:
            logger.error("Failed to index %s: %s", path.name, exc)
            report.errors += 1
            continue

        logger.debug("Loaded %d records from %s", len(records), path.name)

    logger.info(
        "Reload complete: %d loaded, %d errors, %d private skipped",
        report.loaded, report.errors, report.skipped,
    )
    return report
