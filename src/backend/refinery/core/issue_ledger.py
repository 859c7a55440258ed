"""
Issue ledger — every issue a judge has raised, in exactly one of
open / fixed / superseded.

Issues are never removed. The only transitions are open -> fixed (a
verified fix) and open -> superseded (its section, or the whole lesson,
was regenerated). An issue that reappears after being fixed is recorded
as a new open entry.
"""
from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from refinery.core.aggregator import same_issue
from refinery.core.sections import resolve_locator
from refinery.models.schemas import Issue, IssueLedgerEntry, IssueStatus, LessonContent


class IssueLedger:
    def __init__(self, similarity_threshold: float = 0.6):
        self.similarity_threshold = similarity_threshold
        self._entries: List[IssueLedgerEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def find_open(self, issue: Issue) -> Optional[IssueLedgerEntry]:
        for entry in self._entries:
            if entry.status == IssueStatus.OPEN and same_issue(entry.issue, issue, self.similarity_threshold):
                return entry
        return None

    def observe(self, issues: Iterable[Issue], round_index: int) -> int:
        """Register reported issues. Returns how many were new."""
        added = 0
        for issue in issues:
            if self.find_open(issue) is None:
                self._entries.append(IssueLedgerEntry(
                    issue=issue, status=IssueStatus.OPEN, first_seen_round=round_index,
                ))
                added += 1
        return added

    def _close(self, entry: IssueLedgerEntry, status: IssueStatus, round_index: int) -> None:
        if entry.status != IssueStatus.OPEN:
            raise ValueError(f"Issue already {entry.status.value}: {entry.issue.description}")
        entry.status = status
        entry.resolved_round = round_index

    def mark_fixed(self, issues: Iterable[Issue], round_index: int) -> int:
        closed = 0
        for issue in issues:
            entry = self.find_open(issue)
            if entry is not None:
                self._close(entry, IssueStatus.FIXED, round_index)
                closed += 1
        return closed

    def supersede_sections(self, content: LessonContent, section_ids: Iterable[str], round_index: int) -> int:
        """Open issues located in regenerated sections become superseded."""
        targets = set(section_ids)
        closed = 0
        for entry in self._entries:
            if entry.status != IssueStatus.OPEN:
                continue
            if resolve_locator(content, entry.issue.location) in targets:
                self._close(entry, IssueStatus.SUPERSEDED, round_index)
                closed += 1
        return closed

    def supersede_all(self, round_index: int) -> int:
        closed = 0
        for entry in self._entries:
            if entry.status == IssueStatus.OPEN:
                self._close(entry, IssueStatus.SUPERSEDED, round_index)
                closed += 1
        return closed

    def entries(self, status: Optional[IssueStatus] = None) -> List[IssueLedgerEntry]:
        return [
            e.model_copy() for e in self._entries if status is None or e.status == status
        ]

    def counts(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in IssueStatus}
        for entry in self._entries:
            counts[entry.status.value] += 1
        return counts
