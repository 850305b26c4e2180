"""
Board drag-and-drop reordering.

Works on any objects exposing ``id``, ``section`` and ``position``
attributes, so it is exercised directly against ``Task`` rows by the board
blueprint and against simple stand-ins by the unit tests.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any


def _lane(tasks: Iterable[Any], section: str, moved: Any) -> list[Any]:
    lane = [task for task in tasks if task.section == section and task is not moved]
    lane.sort(key=lambda task: (task.position or 0, task.id or 0))
    return lane


def reorder_section(
    tasks: Iterable[Any],
    moved: Any,
    target_section: str,
    target_index: int,
) -> list[Any]:
    """
    Move *moved* into *target_section* at *target_index*.

    The task is removed from its current section, inserted at the clamped
    index of the target section, and both sections are renumbered with
    contiguous positions starting at 0.

    Args:
        tasks: Every task of the board (the moved task may or may not be
            included).
        moved: The task being dragged.
        target_section: Section name the task is dropped into.
        target_index: Desired zero-based index inside the target section.

    Returns:
        The tasks whose ``section`` or ``position`` changed, in the order
        they were renumbered.
    """
    tasks = list(tasks)
    source_section = moved.section
    before = {id(task): (task.section, task.position) for task in tasks}
    before[id(moved)] = (moved.section, moved.position)

    target = _lane(tasks, target_section, moved)
    index = max(0, min(int(target_index), len(target)))
    target.insert(index, moved)
    moved.section = target_section

    lanes = [target]
    if source_section != target_section:
        lanes.append(_lane(tasks, source_section, moved))

    changed = []
    for lane in lanes:
        for position, task in enumerate(lane):
            task.position = position
            if before[id(task)] != (task.section, task.position):
                changed.append(task)
    return changed
