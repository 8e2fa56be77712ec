"""
Import/Export -- whole-snapshot backup files.

File format (UTF-8 JSON, 2-space indent):

    {
      "data": {...},
      "exportedAt": "2026-10-18T09:30:00+00:00",
      "exportedBy": {"name": ..., "email": ..., "id": ...} | null,
      "version": "1.0"
    }

Only ``data`` is required on import; everything else is informational.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .errors import ImportFormatError
from .models import (
    EXPORT_VERSION,
    ExportedBy,
    ExportEnvelope,
    Snapshot,
    UserIdentity,
    utcnow,
)

logger = logging.getLogger("checksync.transfer")

INVALID_FORMAT_MESSAGE = "Invalid backup file format"


def export_filename(identity: Optional[UserIdentity] = None) -> str:
    """Default name: ``design-checklist-<given name|backup>-<date>.json``."""
    label = (identity.given_name if identity else None) or "backup"
    return f"design-checklist-{label}-{utcnow().date().isoformat()}.json"


def build_envelope(data: Snapshot, identity: Optional[UserIdentity] = None) -> ExportEnvelope:
    exported_by = None
    if identity is not None:
        exported_by = ExportedBy(name=identity.name, email=identity.email, id=identity.id)
    return ExportEnvelope(data=dict(data), exported_by=exported_by)


def dumps_envelope(envelope: ExportEnvelope) -> str:
    return json.dumps(
        envelope.model_dump(mode="json", by_alias=True),
        indent=2,
        ensure_ascii=False,
    )


def export_snapshot(
    data: Snapshot,
    target: Path,
    identity: Optional[UserIdentity] = None,
) -> Path:
    """Write ``data`` to a backup file.

    Args:
        data: Full snapshot to dump.
        target: File path, or a directory to place the default name in.
        identity: Exporter, stamped into ``exportedBy``.

    Returns:
        Path of the written file.
    """
    if target.is_dir():
        target = target / export_filename(identity)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(dumps_envelope(build_envelope(data, identity)), encoding="utf-8")
    logger.info("Exported %d item(s) to %s", len(data), target)
    return target


def parse_envelope(text: str) -> ExportEnvelope:
    """Parse backup file contents.

    Only ``data`` has to be valid; metadata that does not parse is
    dropped and the version is kept as text for the mismatch warning.

    Raises:
        ImportFormatError: If the text is not JSON or has no ``data`` object.
    """
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ImportFormatError(INVALID_FORMAT_MESSAGE) from exc

    if not isinstance(raw, dict) or not isinstance(raw.get("data"), dict):
        raise ImportFormatError(INVALID_FORMAT_MESSAGE)

    try:
        return ExportEnvelope.model_validate(raw)
    except ValidationError as exc:
        logger.warning("Ignoring unreadable backup metadata: %s", exc)

    version = raw.get("version")
    return ExportEnvelope(
        data=raw["data"],
        version=EXPORT_VERSION if version is None else str(version),
    )


def read_snapshot(source: Path) -> Snapshot:
    """Read the snapshot out of a backup file.

    Raises:
        ImportFormatError: If the file is unreadable or malformed.
    """
    try:
        text = source.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ImportFormatError(f"Cannot read {source}: {exc}") from exc

    envelope = parse_envelope(text)
    if envelope.version != EXPORT_VERSION:
        logger.warning("Importing backup with version %s", envelope.version)
    return envelope.data
