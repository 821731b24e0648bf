"""
fact_ledger.py — Per-session in-memory fact ledger.

One FactLedger is owned by one project session. It holds the canonical
citation list the dashboard renders and enforces the slot invariant: at most
one citation per cite_type, except multi-instance types which hold one per
metadata key (member id, contract id, change id).

Persistence is the caller's job; the ledger never performs I/O. The
``merge_collections`` helper is what store flushes use to fold in-memory
facts into a freshly re-read persisted collection.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from app.models.fact_schema import Citation, Provenance, utc_now_iso
from app.services.errors import CitationNotFound, SourceUnavailable

logger = logging.getLogger("buildunion-ledger")

Slot = Tuple[str, Optional[str]]


class FactLedger:
    """Ordered, slot-unique citation collection for one project."""

    def __init__(self, project_id: str, citations: Iterable[Citation] = ()):
        self.project_id = project_id
        self._items: List[Citation] = []
        for citation in citations:
            self.upsert(citation)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, citation_id: str) -> bool:
        return self.get(citation_id) is not None

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def all(self) -> List[Citation]:
        return list(self._items)

    def snapshot(self) -> Tuple[Citation, ...]:
        return tuple(c.model_copy(deep=True) for c in self._items)

    def get(self, citation_id: str) -> Optional[Citation]:
        for citation in self._items:
            if citation.id == citation_id:
                return citation
        return None

    def find(self, cite_type: str, key: Optional[str] = None) -> Optional[Citation]:
        for citation in self._items:
            if citation.slot == (str(cite_type), key):
                return citation
        return None

    def of_type(self, cite_type: str) -> List[Citation]:
        return [c for c in self._items if c.cite_type == str(cite_type)]

    def has(self, cite_type: str, key: Optional[str] = None) -> bool:
        return self.find(cite_type, key) is not None

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def _index_of(self, citation: Citation) -> Optional[int]:
        for i, existing in enumerate(self._items):
            if existing.id == citation.id:
                return i
        for i, existing in enumerate(self._items):
            if existing.slot == citation.slot:
                return i
        return None

    def upsert(self, citation: Citation) -> Citation:
        """Replace by id, else by slot, else append."""
        index = self._index_of(citation)
        if index is None:
            self._items.append(citation)
        else:
            self._items[index] = citation
        return citation

    def update_by_id(self, citation_id: str, answer: str, value: Any = None) -> Citation:
        """
        Apply a human edit in place: same id, new answer/value, provenance
        becomes user_input. Raises CitationNotFound for an unknown id.
        """
        current = self.get(citation_id)
        if current is None:
            raise CitationNotFound(citation_id)
        updated = current.model_copy(update={
            "answer": answer,
            "value": answer if value is None else value,
            "timestamp": utc_now_iso(),
            "provenance": Provenance.USER_INPUT,
            "metadata": {**current.metadata, "edited_at": utc_now_iso()},
        })
        return self.upsert(updated)

    def replace_all(self, citations: Iterable[Citation]) -> None:
        self._items = []
        for citation in citations:
            self.upsert(citation)

    def to_records(self) -> List[Dict[str, Any]]:
        return [c.model_dump(mode="json") for c in self._items]


def merge_collections(
    persisted: Iterable[Citation],
    additions: Iterable[Citation],
    overwrite: bool = False,
) -> Tuple[List[Citation], List[Citation]]:
    """
    Fold ``additions`` into ``persisted`` keyed by id and slot.

    The persisted list is kept as stored: entries are replaced in place or
    appended, never collapsed, so legacy records that share a slot survive.
    Returns (merged, conflicts). With ``overwrite`` False an addition whose
    slot is already taken by a different citation is reported as a conflict
    and left out; with ``overwrite`` True it replaces that one persisted entry
    (used for explicit user edits, which target an id).
    """
    merged: List[Citation] = list(persisted)
    conflicts: List[Citation] = []
    for citation in additions:
        index = next((i for i, c in enumerate(merged) if c.id == citation.id), None)
        if index is None:
            index = next((i for i, c in enumerate(merged) if c.slot == citation.slot), None)
            if index is not None and not overwrite:
                conflicts.append(citation)
                continue
        if index is None:
            merged.append(citation)
        else:
            merged[index] = citation
    return merged, conflicts


async def persist_citations(store, project_id: str, citations: List[Citation], overwrite: bool = False) -> List[Citation]:
    """
    Read-modify-write of the persisted collection. Returns the citations that
    lost their slot to an already-persisted fact (never written).
    """
    persisted = await store.read_citations(project_id)
    merged, conflicts = merge_collections(persisted, citations, overwrite=overwrite)
    if len(conflicts) < len(citations):
        await store.write_citations(project_id, merged)
    return conflicts


class EditSession:
    """
    UI edit command contract: ``start`` → ``save`` | ``cancel``.

    ``save`` persists through the store first (read-modify-write of the whole
    collection) and only then commits to the in-memory ledger, so a failed
    write leaves the dashboard showing the last durable value.
    """

    def __init__(self, ledger: FactLedger, store, can_edit: bool):
        self.ledger = ledger
        self.store = store
        self.can_edit = can_edit
        self.editing_id: Optional[str] = None
        self.draft: str = ""

    def start(self, citation_id: str) -> bool:
        if not self.can_edit:
            return False
        citation = self.ledger.get(citation_id)
        if citation is None:
            raise CitationNotFound(citation_id)
        self.editing_id = citation_id
        self.draft = citation.answer
        return True

    def cancel(self) -> None:
        self.editing_id = None
        self.draft = ""

    async def save(self, answer: Optional[str] = None, value: Any = None) -> Optional[Citation]:
        if self.editing_id is None:
            return None
        text = self.draft if answer is None else answer
        if not text:
            self.cancel()
            return None

        preview = FactLedger(self.ledger.project_id, self.ledger.snapshot())
        updated = preview.update_by_id(self.editing_id, text, value)
        try:
            await persist_citations(self.store, self.ledger.project_id, [updated], overwrite=True)
        except SourceUnavailable:
            logger.error(
                "Citation edit not persisted",
                extra={"project_id": self.ledger.project_id, "cite_type": updated.cite_type},
            )
            raise
        finally:
            self.cancel()

        self.ledger.upsert(updated)
        return updated
