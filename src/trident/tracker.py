# src/trident/tracker.py
"""Per-process counter tracking across scrapes."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

import structlog

from trident.errors import ProcessGone
from trident.models import (
    CollectErrors,
    Counts,
    ProcAttributes,
    ProcId,
    ProcMetrics,
    Tracked,
    Update,
)
from trident.namer import MatchNamer
from trident.source import Proc

log = structlog.get_logger()

INIT_PID = 1


@dataclass
class _Candidate:
    """A process seen for the first time this cycle that no rule matched."""

    proc_id: ProcId
    attrs: ProcAttributes
    metrics: ProcMetrics


class Tracker:
    """Tracks every accepted process from first sighting until it exits.

    Each update() returns one Update per live tracked process carrying only
    the counter growth since the previous cycle. Accumulating across process
    lifetimes is the grouper's job.
    """

    def __init__(self, namer: MatchNamer, track_children: bool = True) -> None:
        """Initialize process tracker.

        Args:
            namer: Decides the group of a process the first time it is seen
            track_children: Let unmatched processes inherit the group of
                            their nearest tracked ancestor
        """
        self.namer = namer
        self.track_children = track_children
        self.tracked: dict[ProcId, Tracked] = {}
        # ProcIds the namer turned down; asked once per process lifetime
        self._rejected: set[ProcId] = set()

    def update(self, procs: Iterable[Proc]) -> tuple[CollectErrors, list[Update]]:
        """Run one scrape cycle over a process table snapshot."""
        errors = CollectErrors()
        updates: list[Update] = []
        seen: set[ProcId] = set()
        # pid -> ppid for everything observed, used by the ancestry walk
        parents: dict[int, int] = {}
        # pid -> group for processes tracked as of this cycle
        groups_by_pid: dict[int, str] = {}
        candidates: dict[int, _Candidate] = {}

        for proc in procs:
            try:
                proc_id = proc.proc_id()
                parents[proc.pid] = proc.parent_pid()
            except ProcessGone:
                errors.read += 1
                continue

            try:
                if proc_id in self.tracked:
                    updates.append(self._update_tracked(proc, proc_id, errors))
                    groups_by_pid[proc.pid] = self.tracked[proc_id].group_name
                elif proc_id in self._rejected:
                    pass
                else:
                    update = self._classify_new(proc, proc_id, errors, candidates)
                    if update is not None:
                        updates.append(update)
                        groups_by_pid[proc.pid] = update.group_name
            except ProcessGone:
                errors.read += 1
                continue

            seen.add(proc_id)

        if candidates:
            updates.extend(self._resolve_candidates(candidates, parents, groups_by_pid))

        retired = [pid for pid in self.tracked if pid not in seen]
        for proc_id in retired:
            # Deltas up to the last sighting were already reported and folded
            # into the grouper's accumulator; nothing more to surface.
            del self.tracked[proc_id]
        self._rejected &= seen

        log.debug(
            "tracker_cycle",
            tracked=len(self.tracked),
            updates=len(updates),
            retired=len(retired),
            read_errors=errors.read,
            partial_errors=errors.partial,
        )
        return errors, updates

    def _update_tracked(self, proc: Proc, proc_id: ProcId, errors: CollectErrors) -> Update:
        tracked = self.tracked[proc_id]
        metrics, soft_errors = proc.metrics()
        errors.partial += soft_errors

        delta = Counts.delta(metrics.counts, tracked.counts)
        tracked.counts = metrics.counts
        tracked.memory = metrics.memory
        tracked.states = metrics.states
        tracked.filedesc = metrics.filedesc
        tracked.wchan = metrics.wchan
        return _make_update(tracked, delta)

    def _classify_new(
        self,
        proc: Proc,
        proc_id: ProcId,
        errors: CollectErrors,
        candidates: dict[int, _Candidate],
    ) -> Update | None:
        attrs = proc.attributes()
        accepted, name = self.namer.match_and_name(attrs)
        if not accepted and not self.track_children:
            self._rejected.add(proc_id)
            return None

        metrics, soft_errors = proc.metrics()
        errors.partial += soft_errors
        if not accepted:
            candidates[proc.pid] = _Candidate(proc_id, attrs, metrics)
            return None
        return self._start_tracking(proc_id, name, attrs, metrics)

    def _start_tracking(
        self, proc_id: ProcId, name: str, attrs: ProcAttributes, metrics: ProcMetrics
    ) -> Update:
        tracked = Tracked(
            proc_id=proc_id,
            group_name=name,
            start_time=attrs.start_time,
            counts=metrics.counts,
            memory=metrics.memory,
            states=metrics.states,
            filedesc=metrics.filedesc,
            wchan=metrics.wchan,
        )
        self.tracked[proc_id] = tracked
        # First sighting is the baseline: nothing to report yet
        return _make_update(tracked, Counts())

    def _resolve_candidates(
        self,
        candidates: dict[int, _Candidate],
        parents: dict[int, int],
        groups_by_pid: dict[int, str],
    ) -> list[Update]:
        """Give unmatched new processes the group of their nearest tracked ancestor."""
        updates: list[Update] = []
        for pid, candidate in candidates.items():
            group = find_ancestor_group(pid, parents, groups_by_pid)
            if group is None:
                self._rejected.add(candidate.proc_id)
                continue
            updates.append(
                self._start_tracking(candidate.proc_id, group, candidate.attrs, candidate.metrics)
            )
        return updates


def find_ancestor_group(
    pid: int,
    parents: dict[int, int],
    groups_by_pid: dict[int, str],
) -> str | None:
    """Walk up the parent chain until a grouped ancestor or init is reached.

    Unmatched ancestors are walked through rather than resolved, so the
    answer does not depend on the order candidates are visited. The walk is
    bounded by the number of observed processes.
    """
    current = parents.get(pid)
    for _ in range(len(parents)):
        if current is None:
            return None
        group = groups_by_pid.get(current)
        if group is not None:
            return group
        if current <= INIT_PID:
            return None
        current = parents.get(current)
    return None


def _make_update(tracked: Tracked, delta: Counts) -> Update:
    return Update(
        group_name=tracked.group_name,
        delta=delta,
        memory=tracked.memory,
        states=tracked.states,
        wchans={tracked.wchan: 1} if tracked.wchan else {},
        filedesc=tracked.filedesc,
        start_time=tracked.start_time,
    )
