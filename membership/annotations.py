"""Staff annotations: debounced batch writes and annotation-sheet helpers.

``AnnotationQueue`` coalesces per-member edits and writes them to the record
store in one call once edits stop arriving for ``batch_delay`` seconds. The
last edit per member wins within a batch. A failed batch is retried
unchanged after ``retry_delay`` seconds; edits that arrive meanwhile form the
next batch. After ``max_retries`` failed retries the batch is parked in
``failed_batches`` and ``on_give_up`` is called.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import Counter
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Set, Tuple

from membership import config
from membership.records import MembershipRecord, clean_cell, normalize_tags, parse_date

logger = logging.getLogger(__name__)

RECENT_DAYS = 7
TOP_ASSOCIATES = 5


@dataclass(frozen=True)
class AnnotationEdit:
    member_id: str
    email: str = ""
    comments: str = ""
    notes: str = ""
    tags: Tuple[str, ...] = ()
    unique_id: str = ""
    associate_name: Optional[str] = None
    timestamp: Optional[str] = None

    def to_row(self) -> List[str]:
        """Row in annotation-sheet column order."""
        return [
            self.member_id,
            self.email,
            self.comments,
            self.notes,
            ", ".join(self.tags),
            self.unique_id,
            self.associate_name or "",
            self.timestamp or "",
        ]

    def apply_to(self, record: MembershipRecord) -> MembershipRecord:
        return record.with_annotations(
            comments=self.comments,
            notes=self.notes,
            tags=self.tags,
            associate_name=self.associate_name,
            timestamp=self.timestamp,
        )


class AnnotationSink(Protocol):
    async def write_annotations_batch(self, edits: Sequence[AnnotationEdit]) -> None: ...

    def invalidate_annotations_cache(self) -> None: ...


def make_edit(
    member_id: str,
    *,
    email: str = "",
    comments: str = "",
    notes: str = "",
    tags: Iterable[str] | str = (),
    unique_id: str = "",
    associate_name: Optional[str] = None,
    timestamp: Optional[str] = None,
) -> AnnotationEdit:
    return AnnotationEdit(
        member_id=member_id,
        email=email,
        comments=comments or "",
        notes=notes or "",
        tags=normalize_tags(tags),
        unique_id=unique_id,
        associate_name=associate_name,
        timestamp=timestamp,
    )


class AnnotationQueue:
    """Debounced, retrying batch writer for annotation edits.

    Must be used from a running event loop. Create one per application,
    hand it to whatever enqueues edits, and ``await queue.aclose()`` at
    shutdown.
    """

    def __init__(
        self,
        store: AnnotationSink,
        *,
        batch_delay: float = config.ANNOTATION_BATCH_DELAY,
        retry_delay: float = config.ANNOTATION_RETRY_DELAY,
        max_retries: int = config.ANNOTATION_MAX_RETRIES,
        on_give_up: Optional[Callable[[List[AnnotationEdit]], None]] = None,
    ) -> None:
        self.store = store
        self.batch_delay = batch_delay
        self.retry_delay = retry_delay
        self.max_retries = max_retries
        self.on_give_up = on_give_up

        self._pending: Dict[str, AnnotationEdit] = {}
        self._timer: Optional[asyncio.TimerHandle] = None
        self._write_lock = asyncio.Lock()
        self._writing = False
        self._in_flight: Optional[List[AnnotationEdit]] = None
        self._retry_ids = itertools.count(1)
        self._retries: Dict[int, Tuple[asyncio.TimerHandle, List[AnnotationEdit], int]] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

        self.failed_batches: List[List[AnnotationEdit]] = []
        self.batches_written = 0
        self.edits_written = 0
        self.last_error: Optional[str] = None

    # ---------------- State ----------------
    @property
    def state(self) -> str:
        if self._writing:
            return "flushing"
        if self._pending:
            return "pending"
        return "idle"

    @property
    def pending(self) -> Dict[str, AnnotationEdit]:
        return dict(self._pending)

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "pending": len(self._pending),
            "unsaved": len(self.unsaved()),
            "retries_waiting": len(self._retries),
            "failed_batches": len(self.failed_batches),
            "failed_edits": sum(len(b) for b in self.failed_batches),
            "batches_written": self.batches_written,
            "edits_written": self.edits_written,
            "last_error": self.last_error,
        }

    def unsaved(self) -> Dict[str, AnnotationEdit]:
        """Latest edit per member that the store has not confirmed yet.

        Looks at parked, retry-waiting, in-flight and pending edits; the
        newest timestamp wins, pending edits on ties.
        """
        batches: List[Iterable[AnnotationEdit]] = list(self.failed_batches)
        batches.extend(snapshot for _, snapshot, _ in self._retries.values())
        if self._in_flight is not None:
            batches.append(self._in_flight)
        batches.append(self._pending.values())
        latest: Dict[str, AnnotationEdit] = {}
        for edit in itertools.chain.from_iterable(batches):
            current = latest.get(edit.member_id)
            if current is None or (edit.timestamp or "") >= (current.timestamp or ""):
                latest[edit.member_id] = edit
        return latest

    # ---------------- Public API ----------------
    def enqueue(self, edit: AnnotationEdit) -> AnnotationEdit:
        if self._closed:
            raise RuntimeError("AnnotationQueue is closed")
        if not edit.timestamp:
            edit = replace(edit, timestamp=datetime.now(timezone.utc).isoformat())
        self._pending[edit.member_id] = edit
        self._arm_timer()
        return edit

    async def flush_pending_annotations(self) -> bool:
        """Write pending edits now instead of waiting for the timer.

        Returns ``False`` if the write failed (a retry is then scheduled).
        """
        self._cancel_timer()
        return await self._flush()

    def requeue_failed(self) -> int:
        """Move parked batches back into the pending map.

        An edit is skipped when a newer edit for the same member is already
        pending.
        """
        requeued = 0
        batches, self.failed_batches = self.failed_batches, []
        for batch in batches:
            for edit in batch:
                if edit.member_id not in self._pending:
                    self._pending[edit.member_id] = edit
                    requeued += 1
        if self._pending:
            self._arm_timer()
        return requeued

    async def aclose(self) -> None:
        """Flush everything still held, then stop accepting edits."""
        self._closed = True
        self._cancel_timer()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._pending:
            snapshot = self._take_snapshot()
            await self._write(snapshot, attempt=0, retry=False)
        for key in list(self._retries):
            handle, snapshot, attempt = self._retries.pop(key)
            handle.cancel()
            await self._write(snapshot, attempt=attempt, retry=False)

    # ---------------- Internals ----------------
    def _arm_timer(self) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.batch_delay, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        self._spawn(self._flush())

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _take_snapshot(self) -> List[AnnotationEdit]:
        # No await between copy and clear: nothing can interleave.
        snapshot = list(self._pending.values())
        self._pending.clear()
        return snapshot

    async def _flush(self) -> bool:
        if not self._pending:
            return True
        return await self._write(self._take_snapshot(), attempt=0)

    async def _write(self, snapshot: List[AnnotationEdit], *, attempt: int, retry: bool = True) -> bool:
        async with self._write_lock:
            self._writing = True
            self._in_flight = snapshot
            try:
                logger.info("Writing %d annotation edits (attempt %d)", len(snapshot), attempt + 1)
                await self.store.write_annotations_batch(snapshot)
            except Exception as exc:
                self.last_error = f"{type(exc).__name__}: {exc}"
                logger.warning("Annotation batch of %d edits failed: %s", len(snapshot), exc)
                if retry and not self._closed:
                    self._schedule_retry(snapshot, attempt + 1)
                else:
                    self._give_up(snapshot)
                return False
            finally:
                self._writing = False
                self._in_flight = None
        self.store.invalidate_annotations_cache()
        self.batches_written += 1
        self.edits_written += len(snapshot)
        return True

    def _schedule_retry(self, snapshot: List[AnnotationEdit], attempt: int) -> None:
        if attempt > self.max_retries:
            self._give_up(snapshot)
            return
        key = next(self._retry_ids)
        loop = asyncio.get_running_loop()
        handle = loop.call_later(self.retry_delay, self._on_retry, key)
        self._retries[key] = (handle, snapshot, attempt)
        logger.info("Retrying annotation batch in %.1fs (retry %d/%d)", self.retry_delay, attempt, self.max_retries)

    def _on_retry(self, key: int) -> None:
        entry = self._retries.pop(key, None)
        if entry is None:
            return
        _, snapshot, attempt = entry
        self._spawn(self._write(snapshot, attempt=attempt))

    def _give_up(self, snapshot: List[AnnotationEdit]) -> None:
        self.failed_batches.append(snapshot)
        logger.error(
            "Giving up on annotation batch of %d edits for members %s",
            len(snapshot),
            [e.member_id for e in snapshot][:10],
        )
        if self.on_give_up is not None:
            self.on_give_up(snapshot)


# ---------------- Annotation sheet helpers ----------------
def annotation_stats(annotation_rows: Sequence[Sequence[object]], *, now: Optional[datetime] = None) -> Dict[str, Any]:
    if len(annotation_rows) <= 1:
        return {"total_annotations": 0, "recent_annotations": 0, "top_associates": []}
    now = now or datetime.now()
    rows = [list(r) + [""] * (8 - len(r)) for r in annotation_rows[1:]]
    cutoff = now - timedelta(days=RECENT_DAYS)

    recent = 0
    for row in rows:
        stamp = parse_date(row[7])
        if stamp is not None and stamp >= cutoff:
            recent += 1
    associates = Counter(clean_cell(row[6]) for row in rows if clean_cell(row[6]))
    return {
        "total_annotations": len(rows),
        "recent_annotations": recent,
        "top_associates": [{"name": name, "count": count} for name, count in associates.most_common(TOP_ASSOCIATES)],
    }


def search_members_with_annotations(
    records: Sequence[MembershipRecord],
    annotation_rows: Sequence[Sequence[object]],
    term: str,
) -> List[MembershipRecord]:
    """Members whose name, email or plan matches ``term``, or whose
    annotation row is in ``annotation_rows`` (already matched by the store)."""
    needle = term.strip().lower()
    if not needle:
        return list(records)
    annotated_ids = {clean_cell(row[0]) for row in annotation_rows[1:] if row and clean_cell(row[0])}
    return [
        r
        for r in records
        if needle in r.full_name.lower()
        or needle in r.email.lower()
        or needle in r.membership_name.lower()
        or r.member_id in annotated_ids
    ]


async def save_annotations(store: AnnotationSink, edits: Iterable[AnnotationEdit], **queue_options: Any) -> Dict[str, Any]:
    """Write edits now through a short-lived queue and return its final status.

    For callers without a long-running event loop (the Streamlit app). A
    failed write gets one more attempt at close; edits still unsaved after
    that show up in ``failed_edits``.
    """
    queue = AnnotationQueue(store, **queue_options)
    for edit in edits:
        queue.enqueue(edit)
    await queue.flush_pending_annotations()
    await queue.aclose()
    return queue.status()
