"""Test doubles for the record store and the classification backend."""

import asyncio
from datetime import datetime
from typing import List, Optional, Sequence

from membership.records import ANNOTATION_HEADER, MembershipRecord, merge_annotations

NOW = datetime(2025, 1, 1)


class FakeStore:
    """Record store double that keeps annotation rows in memory."""

    def __init__(self, records: Sequence[MembershipRecord] = (), fail_times: int = 0):
        self.records = list(records)
        self.rows: List[List[str]] = [list(ANNOTATION_HEADER)]
        self.calls: List[list] = []
        self.fail_times = fail_times
        self.invalidations = 0

    async def fetch_all(self):
        return merge_annotations(self.records, self.rows)

    async def fetch_annotations(self):
        return [list(r) for r in self.rows]

    async def write_annotations_batch(self, edits):
        self.calls.append(list(edits))
        if self.fail_times:
            self.fail_times -= 1
            raise ConnectionError("sheet unavailable")
        by_id = {row[0]: i for i, row in enumerate(self.rows)}
        for edit in edits:
            if edit.member_id in by_id:
                self.rows[by_id[edit.member_id]] = edit.to_row()
            else:
                self.rows.append(edit.to_row())

    def invalidate_annotations_cache(self):
        self.invalidations += 1

    async def search_annotations(self, term: str):
        needle = term.lower()
        return [self.rows[0]] + [r for r in self.rows[1:] if needle and any(needle in c.lower() for c in r[:5])]


class ScriptedBackend:
    """Returns canned answers in order; an Exception instance is raised."""

    def __init__(self, *answers, delay: float = 0.0):
        self.answers = list(answers)
        self.prompts: List[str] = []
        self.delay = delay

    async def classify(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        answer = self.answers.pop(0) if self.answers else '{"tags": ["Miscellaneous"], "confidence": 50}'
        if isinstance(answer, Exception):
            raise answer
        return answer


def ids(records: Optional[Sequence[MembershipRecord]]) -> List[str]:
    return [r.member_id for r in records or []]
