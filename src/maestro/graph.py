from __future__ import annotations

from maestro.errors import PlanValidationError
from maestro.models import PlanTask


def find_cycle(tasks: list[PlanTask]) -> list[str] | None:
    """Return the task ids forming a dependency cycle, or None for an acyclic plan."""
    dependencies = {task.id: [dep for dep in task.dependencies] for task in tasks}
    visiting: list[str] = []
    state: dict[str, str] = {}

    def _visit(task_id: str) -> list[str] | None:
        state[task_id] = "visiting"
        visiting.append(task_id)
        for dependency in dependencies.get(task_id, []):
            if dependency not in dependencies:
                continue
            marker = state.get(dependency)
            if marker == "visiting":
                return visiting[visiting.index(dependency) :] + [dependency]
            if marker is None:
                cycle = _visit(dependency)
                if cycle:
                    return cycle
        visiting.pop()
        state[task_id] = "done"
        return None

    for task in tasks:
        if task.id not in state:
            cycle = _visit(task.id)
            if cycle:
                return cycle
    return None


def validate_plan(tasks: list[PlanTask]) -> None:
    seen: set[str] = set()
    duplicates: list[str] = []
    for task in tasks:
        if task.id in seen and task.id not in duplicates:
            duplicates.append(task.id)
        seen.add(task.id)
    if duplicates:
        raise PlanValidationError(
            f"Duplicate task ids: {', '.join(duplicates)}", task_ids=duplicates
        )

    unknown = sorted(
        {dependency for task in tasks for dependency in task.dependencies if dependency not in seen}
    )
    if unknown:
        raise PlanValidationError(
            f"Unknown dependency ids: {', '.join(unknown)}", task_ids=unknown
        )

    cycle = find_cycle(tasks)
    if cycle:
        raise PlanValidationError(
            f"Dependency cycle: {' -> '.join(cycle)}", task_ids=cycle[:-1]
        )


def merge_new_tasks(existing: list[PlanTask], new_tasks: list[PlanTask]) -> list[PlanTask]:
    """Rename colliding ids in ``new_tasks`` so they can be appended to ``existing``.

    Dependencies among the new tasks follow the renames; dependencies on ids that
    exist nowhere are dropped.
    """
    taken = {task.id for task in existing}
    renames: dict[str, str] = {}
    assigned: list[str] = []
    counter = 1
    for task in new_tasks:
        new_id = task.id
        if not new_id or new_id in taken:
            while f"refine-{counter}" in taken:
                counter += 1
            new_id = f"refine-{counter}"
        renames.setdefault(task.id, new_id)
        assigned.append(new_id)
        taken.add(new_id)

    merged: list[PlanTask] = []
    for task, new_id in zip(new_tasks, assigned):
        dependencies: list[str] = []
        for dependency in task.dependencies:
            target = renames.get(dependency, dependency)
            if target in taken and target not in dependencies and target != new_id:
                dependencies.append(target)
        merged.append(
            PlanTask(
                id=new_id,
                title=task.title,
                description=task.description,
                agent_type=task.agent_type,
                dependencies=dependencies,
                priority=task.priority,
            )
        )
    return merged
