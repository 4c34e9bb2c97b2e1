"""Canonical note text, content fingerprints and the deduplication ledger."""

from __future__ import annotations

import hashlib
from datetime import timedelta
from typing import Any, Iterable, Mapping, Optional

import structlog

from notewatch.db.models import NoteCheckStatus
from notewatch.store import RecordStore
from notewatch.time_utils import Clock, utc_now

logger = structlog.get_logger(__name__)

HPI_ELEMENT = "HISTORY_OF_PRESENT_ILLNESS"
DEFAULT_STALENESS = timedelta(hours=6)


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def format_note_for_analysis(sections: Iterable[Mapping[str, Any]]) -> str:
    """Render progress note sections as the text the analysis sees.

    Sections keep their upstream order.  The HPI element contributes only its
    opening paragraph followed by the free-text note; other elements are
    included when they carry text.
    """

    parts = []
    for section in sections:
        parts.append(f"\n\n--- {_text(section.get('sectionType'))} ---\n")
        for item in section.get("items") or []:
            element = _text(item.get("elementType"))
            text = _text(item.get("text"))
            note = _text(item.get("note"))
            if element == HPI_ELEMENT:
                intro = text.split("\n\n")[0]
                parts.append(f"\n{element}:\n{intro}\n{note}\n")
            elif text.strip():
                parts.append(f"\n{element}:\n{text}\n")
                if note.strip():
                    parts.append(f"Note: {note}\n")
    return "".join(parts).strip()


def _rolling32(data: bytes) -> str:
    value = 0
    for byte in data:
        value = (value * 31 + byte) & 0xFFFFFFFF
    return f"{value:08x}"


def compute_fingerprint(text: str, algorithm: str = "sha256") -> str:
    """Return ``<algorithm>:<hex digest>`` of the UTF-8 encoded ``text``.

    ``rolling32`` is a 32-bit polynomial hash for local development only; it
    gives no real deduplication guarantee.
    """

    data = text.encode("utf-8")
    if algorithm == "sha256":
        return f"sha256:{hashlib.sha256(data).hexdigest()}"
    if algorithm == "rolling32":
        return f"rolling32:{_rolling32(data)}"
    raise ValueError(f"Unknown fingerprint algorithm {algorithm!r}")


class DedupLedger:
    """Decides whether an encounter's note needs (re-)analysis."""

    def __init__(
        self,
        records: RecordStore,
        *,
        staleness: timedelta = DEFAULT_STALENESS,
        clock: Clock = utc_now,
    ) -> None:
        self.records = records
        self.staleness = staleness
        self.clock = clock

    def should_check(self, encounter_id: str, fingerprint: Optional[str], force: bool = False) -> bool:
        """Return ``True`` when the encounter has to be analysed.

        ``fingerprint=None`` is used before the note has been fetched; the
        content comparison is then skipped and only record state and the
        staleness window decide.
        """

        if force:
            return True
        record = self.records.get_note_check(encounter_id)
        if record is None:
            return True
        if record.status != NoteCheckStatus.COMPLETED.value:
            return True
        if fingerprint is not None and record.content_fingerprint != fingerprint:
            return True
        if record.checked_at is None or self.clock() - record.checked_at > self.staleness:
            return True
        logger.debug("note_check_skipped", encounter_id=encounter_id)
        return False


__all__ = ["format_note_for_analysis", "compute_fingerprint", "DedupLedger", "DEFAULT_STALENESS"]
