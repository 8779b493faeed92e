"""Aggregate tracked processes by group name with counts that never decrease."""

from __future__ import annotations

from collections.abc import Iterable

import structlog

from trident.models import CollectErrors, Counts, Group, GroupByName, Update
from trident.namer import MatchNamer
from trident.source import Proc
from trident.tracker import Tracker

log = structlog.get_logger()


def group_add(group: Group, update: Update) -> Group:
    """Fold one process update into a group, in place."""
    group.procs += 1
    group.memory = group.memory + update.memory
    group.states = group.states + update.states
    group.counts = group.counts + update.delta
    if update.filedesc.open != -1:
        group.open_fds += update.filedesc.open
    group.worst_fd_ratio = max(group.worst_fd_ratio, update.filedesc.ratio)
    if group.oldest_start_time == 0.0 or update.start_time < group.oldest_start_time:
        group.oldest_start_time = update.start_time
    for wchan, count in update.wchans.items():
        group.wchans[wchan] = group.wchans.get(wchan, 0) + count
    return group


class Grouper:
    """Top-level view of process metrics, one Group per name.

    The tracker only reports what changed since the last cycle; the grouper
    adds that on top of everything it has accumulated for the name so far.
    Once the last process of a group exits the group is still reported with
    its final counts and every non-count metric at zero.
    """

    def __init__(self, namer: MatchNamer, track_children: bool = True) -> None:
        self.tracker = Tracker(namer, track_children)
        # Historical floor per group name; never decreases, never forgotten
        self.group_accum: dict[str, Counts] = {}

    def update(self, procs: Iterable[Proc]) -> tuple[CollectErrors, GroupByName]:
        """Scrape once and return the aggregated groups."""
        errors, updates = self.tracker.update(procs)
        return errors, self.groups(updates)

    def groups(self, updates: Iterable[Update]) -> GroupByName:
        """Translate this cycle's updates into groups and advance the accumulators."""
        groups: GroupByName = {}
        for update in updates:
            group = groups.get(update.group_name)
            if group is None:
                group = groups[update.group_name] = Group()
            group_add(group, update)

        # Accumulated counts carry the floor; this cycle's deltas go on top
        # and the sum becomes the new floor.
        for name, group in groups.items():
            accum = self.group_accum.get(name)
            if accum is not None:
                group.counts = group.counts + accum
            self.group_accum[name] = group.counts

        for name, counts in self.group_accum.items():
            if name not in groups:
                groups[name] = Group(counts=counts)

        return groups
