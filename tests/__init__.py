"""Test helpers for infra-reconcile."""

from typing import Any

from infra_reconcile.manifest import ResourceKind, ResourceSpec


def make_spec(
    spec_id: str,
    kind: ResourceKind = ResourceKind.MANIFEST,
    depends_on: list[str] | None = None,
    **kwargs: Any,
) -> ResourceSpec:
    """Return a spec with a name parameter derived from the id."""
    parameters = kwargs.pop("parameters", {"name": spec_id})
    return ResourceSpec(
        id=spec_id,
        kind=kind,
        parameters=parameters,
        depends_on=depends_on or [],
        **kwargs,
    )
