"""A dependency ordered set of resources to reconcile.

A `Plan` is built once per invocation from a plan document. It validates the
dependency graph and exposes a deterministic topological order: among the
resources whose dependencies are all satisfied, the one declared first in the
document comes first. The plan is read-only once reconciliation starts.
"""

from collections.abc import Iterator, Mapping
import logging
from pathlib import Path

from .exceptions import InputException
from .manifest import PlanDocument, ResourceSpec, read_plan_document
from .values import referenced_ids

__all__ = ["Plan", "read_plan"]

_LOGGER = logging.getLogger(__name__)


class Plan:
    """Topologically sorted, immutable sequence of resource specs."""

    def __init__(
        self,
        specs: list[ResourceSpec],
        name: str = "plan",
        summary: Mapping[str, str] | None = None,
    ) -> None:
        """Validate the dependency graph and compute the execution order.

        Raises:
            InputException: If ids are duplicated, a dependency is unknown, or
                the dependency graph contains a cycle.
        """
        self._name = name
        self._summary = dict(summary or {})
        declared: dict[str, ResourceSpec] = {}
        for spec in specs:
            if not spec.id:
                raise InputException(f"Resource of kind {spec.kind} is missing an id")
            if spec.id in declared:
                raise InputException(f"Duplicate resource id '{spec.id}'")
            declared[spec.id] = spec

        for spec in specs:
            if len(set(spec.depends_on)) != len(spec.depends_on):
                raise InputException(
                    f"Resource '{spec.id}' lists a dependency more than once"
                )
            for dep in spec.depends_on:
                if dep == spec.id:
                    raise InputException(f"Resource '{spec.id}' depends on itself")
                if dep not in declared:
                    raise InputException(
                        f"Resource '{spec.id}' depends on unknown resource '{dep}'"
                    )
            refs = referenced_ids(spec.parameters)
            if undeclared := sorted(refs - set(spec.depends_on)):
                raise InputException(
                    f"Resource '{spec.id}' references outputs of resources it does "
                    f"not depend on: {undeclared}"
                )

        self._specs = self._sort(specs)
        self._by_id = {spec.id: spec for spec in self._specs}
        _LOGGER.debug(
            "Plan %s order: %s", self._name, [spec.id for spec in self._specs]
        )

    @staticmethod
    def _sort(specs: list[ResourceSpec]) -> list[ResourceSpec]:
        """Return specs in dependency order, ties broken by declaration order."""
        position = {spec.id: index for index, spec in enumerate(specs)}
        remaining = {spec.id: set(spec.depends_on) for spec in specs}
        ordered: list[ResourceSpec] = []
        while remaining:
            ready = [spec_id for spec_id, deps in remaining.items() if not deps]
            if not ready:
                raise InputException(
                    f"Dependency cycle detected between resources: {sorted(remaining)}"
                )
            next_id = min(ready, key=position.__getitem__)
            ordered.append(specs[position[next_id]])
            del remaining[next_id]
            for deps in remaining.values():
                deps.discard(next_id)
        return ordered

    @classmethod
    def from_document(cls, document: PlanDocument) -> "Plan":
        """Build a plan from a parsed plan document."""
        return cls(
            list(document.resources), name=document.name, summary=document.summary
        )

    @property
    def name(self) -> str:
        """Return the name of the plan."""
        return self._name

    @property
    def summary(self) -> Mapping[str, str]:
        """Return the summary line templates, keyed by label."""
        return dict(self._summary)

    @property
    def specs(self) -> tuple[ResourceSpec, ...]:
        """Return the specs in execution order."""
        return tuple(self._specs)

    def get(self, spec_id: str) -> ResourceSpec:
        """Return the spec with the given id."""
        if (spec := self._by_id.get(spec_id)) is None:
            raise KeyError(spec_id)
        return spec

    def teardown_order(self) -> list[ResourceSpec]:
        """Return specs in the order they should be deleted."""
        return list(reversed(self._specs))

    def __iter__(self) -> Iterator[ResourceSpec]:
        return iter(self._specs)

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, spec_id: object) -> bool:
        return spec_id in self._by_id


async def read_plan(plan_path: Path, environ: Mapping[str, str] | None = None) -> Plan:
    """Read and validate a plan file."""
    document = await read_plan_document(plan_path, environ)
    return Plan.from_document(document)
