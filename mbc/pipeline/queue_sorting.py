import random
from typing import List, Optional

from mbc.config.models import QUEUE_SORT_CHOICES
from mbc.domain.models import Task


def sort_tasks(
    tasks: List[Task],
    mode: str,
    extensions: List[str],
    seed: Optional[int] = None,
) -> List[Task]:
    def by_path(task: Task):
        return (task.relative_path.as_posix(), str(task.source_path))

    if mode == "name":
        return sorted(tasks, key=by_path)

    if mode == "size-asc":
        return sorted(tasks, key=lambda task: (task.source_size_bytes, *by_path(task)))

    if mode == "size-desc":
        return sorted(tasks, key=lambda task: (-task.source_size_bytes, *by_path(task)))

    if mode == "ext":
        if not extensions:
            raise ValueError("queue_sort 'ext' requires a non-empty extensions list.")
        ext_order = {ext.lower(): idx for idx, ext in enumerate(extensions)}
        return sorted(
            tasks,
            key=lambda task: (
                ext_order.get(task.source_path.suffix.lower(), len(ext_order)),
                *by_path(task),
            ),
        )

    if mode == "rand":
        ordered = sorted(tasks, key=by_path)
        rng = random.Random(seed)
        rng.shuffle(ordered)
        return ordered

    allowed = ", ".join(QUEUE_SORT_CHOICES)
    raise ValueError(f"Unsupported queue_sort '{mode}'. Use one of: {allowed}.")
