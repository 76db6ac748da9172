"""Expansion of output references between resources.

A parameter value may refer to an attribute observed on one of the resource's
dependencies using `$(<spec id>.<attribute>)`. When the whole value is a single
reference the attribute is substituted with its original type, otherwise it is
interpolated into the string. For example, an ingress that must be reachable
at the load balancer address of the ingress controller release:

    parameters:
      host: $(ingress-controller.hostname)
"""

from collections.abc import Callable, Iterable
from dataclasses import replace
import logging
import re
from typing import Any

from .exceptions import MissingConfigurationError
from .manifest import ResourceSpec

__all__ = [
    "referenced_ids",
    "expand_value_references",
    "expand_template",
]

_LOGGER = logging.getLogger(__name__)

_REFERENCE_RE = re.compile(r"\$\(([A-Za-z0-9_.-]+?)\.([A-Za-z0-9_-]+)\)")

OutputLookup = Callable[[str], dict[str, Any] | None]


def _walk_strings(value: Any) -> Iterable[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, list):
        for item in value:
            yield from _walk_strings(item)
    elif isinstance(value, dict):
        for item in value.values():
            yield from _walk_strings(item)


def referenced_ids(value: Any) -> set[str]:
    """Return the ids of all resources referenced anywhere in the value."""
    return {
        match.group(1)
        for text in _walk_strings(value)
        for match in _REFERENCE_RE.finditer(text)
    }


def _lookup(
    spec_id: str, attribute: str, lookup: OutputLookup, where: str
) -> Any:
    if (outputs := lookup(spec_id)) is None:
        raise MissingConfigurationError(
            f"{where} references '{spec_id}' which has no recorded outputs"
        )
    if attribute not in outputs:
        raise MissingConfigurationError(
            f"{where} references missing attribute '{attribute}' of '{spec_id}'"
        )
    return outputs[attribute]


def _expand(value: Any, lookup: OutputLookup, where: str) -> Any:
    if isinstance(value, str):
        if match := _REFERENCE_RE.fullmatch(value):
            return _lookup(match.group(1), match.group(2), lookup, where)
        return _REFERENCE_RE.sub(
            lambda m: str(_lookup(m.group(1), m.group(2), lookup, where)), value
        )
    if isinstance(value, list):
        return [_expand(item, lookup, where) for item in value]
    if isinstance(value, dict):
        return {key: _expand(item, lookup, where) for key, item in value.items()}
    return value


def expand_value_references(spec: ResourceSpec, lookup: OutputLookup) -> ResourceSpec:
    """Return a copy of the spec with output references in parameters expanded.

    Only declared dependencies may be referenced, since only they are
    guaranteed to have finished before this resource is reconciled.
    """
    refs = referenced_ids(spec.parameters)
    if not refs:
        return spec
    if undeclared := sorted(refs - set(spec.depends_on)):
        raise MissingConfigurationError(
            f"Resource {spec.id} references resources it does not depend on: "
            f"{undeclared}"
        )
    _LOGGER.debug("Expanding references of %s to %s", spec.id, sorted(refs))
    parameters = _expand(spec.parameters, lookup, f"Resource {spec.id}")
    return replace(spec, parameters=parameters)


def expand_template(
    template: str,
    lookup: OutputLookup,
    is_sensitive: Callable[[str, str], bool] | None = None,
) -> tuple[str, bool]:
    """Interpolate references in a free form string such as a summary line.

    Returns the expanded text and whether any referenced attribute was
    sensitive. Unresolvable references are left as-is.
    """
    sensitive = False

    def replace_ref(match: re.Match[str]) -> str:
        nonlocal sensitive
        spec_id, attribute = match.group(1), match.group(2)
        outputs = lookup(spec_id) or {}
        if attribute not in outputs:
            return match.group(0)
        if is_sensitive is not None and is_sensitive(spec_id, attribute):
            sensitive = True
        return str(outputs[attribute])

    return _REFERENCE_RE.sub(replace_ref, template), sensitive
