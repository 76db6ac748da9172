"""Representation of the desired and observed state of resources.

A plan document is a YAML file that declares the resources of a deployment,
their parameters, and the dependencies between them. The document may be
checked in alongside other deployment configuration and is read fresh on
every invocation.

Example:

    name: eks-elasticsearch
    variables:
      namespace: ${NAMESPACE:-elasticsearch}
    resources:
      - id: namespace
        kind: Namespace
        parameters:
          name: ${namespace}
"""

from dataclasses import dataclass, field
from enum import StrEnum
import logging
import os
from pathlib import Path
import re
from collections.abc import Mapping
from typing import Any, cast

import aiofiles
import yaml
from mashumaro import DataClassDictMixin, field_options
from mashumaro.codecs.yaml import yaml_decode
from mashumaro.config import BaseConfig
from mashumaro.exceptions import InvalidFieldValue, MissingField

from .exceptions import InputException, MissingConfigurationError

__all__ = [
    "ResourceKind",
    "ReadyCondition",
    "WaitConfig",
    "ResourceSpec",
    "ObservedState",
    "PlanDocument",
    "parse_plan_document",
    "read_plan_document",
    "write_plan_document",
]

_LOGGER = logging.getLogger(__name__)


class ResourceKind(StrEnum):
    """The kind of an externally managed resource."""

    CLUSTER = "Cluster"
    NAMESPACE = "Namespace"
    RELEASE = "Release"
    CERTIFICATE = "Certificate"
    NETWORK = "Network"
    SECRET = "Secret"
    REGISTRY = "Registry"
    MANIFEST = "Manifest"


class ReadyCondition(StrEnum):
    """Operational readiness of a resource as last observed."""

    UNKNOWN = "Unknown"
    PENDING = "Pending"
    READY = "Ready"
    FAILED = "Failed"


# Kinds whose dependents cannot work at all unless the resource is ready. A
# readiness timeout or failure for these fails the run rather than warning.
DEFAULT_REQUIRED_READY: dict[ResourceKind, bool] = {
    ResourceKind.CLUSTER: True,
    ResourceKind.NAMESPACE: True,
    ResourceKind.REGISTRY: True,
    ResourceKind.SECRET: True,
    ResourceKind.RELEASE: False,
    ResourceKind.CERTIFICATE: False,
    ResourceKind.NETWORK: False,
    ResourceKind.MANIFEST: False,
}

_VARIABLE_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all plan objects."""

    def compact_dict(self) -> dict[str, Any]:
        """Return a compact dictionary representation of the object."""
        return self.to_dict()

    @classmethod
    def parse_yaml(cls, content: str) -> "BaseManifest":
        """Parse a serialized object."""
        return yaml_decode(content, cls)

    def yaml(self) -> str:
        """Return a YAML string representation of compact_dict."""
        return yaml.dump(self.compact_dict(), sort_keys=False)

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


@dataclass
class WaitConfig(BaseManifest):
    """Per resource overrides of the provider's default wait policy."""

    poll_interval: float | None = field(
        metadata=field_options(alias="pollInterval"), default=None
    )
    """Seconds between readiness checks."""

    timeout: float | None = None
    """Total seconds to wait for readiness, including the initial delay."""

    initial_delay: float | None = field(
        metadata=field_options(alias="initialDelay"), default=None
    )
    """Seconds to wait before the first check."""


@dataclass
class ResourceSpec(BaseManifest):
    """Declarative description of one resource and what it depends on."""

    id: str
    """Unique identifier of the resource within the plan."""

    kind: ResourceKind
    """The kind of the resource."""

    parameters: dict[str, Any] = field(default_factory=dict)
    """Desired parameters, interpreted by the provider."""

    depends_on: list[str] = field(
        metadata=field_options(alias="dependsOn"), default_factory=list
    )
    """Ids of the resources that must be ready before this one is applied."""

    provider: str | None = None
    """Name of the provider implementation, or the default for the kind."""

    required_ready: bool | None = field(
        metadata=field_options(alias="requiredReady"), default=None
    )
    """Whether a readiness timeout fails the run, or the kind default."""

    wait: WaitConfig | None = None
    """Overrides for the provider's default wait policy."""

    sensitive: list[str] = field(default_factory=list)
    """Output attribute names to mask in addition to the provider's own."""

    @property
    def is_required_ready(self) -> bool:
        """Return the effective required_ready flag for this resource."""
        if self.required_ready is not None:
            return self.required_ready
        return DEFAULT_REQUIRED_READY.get(self.kind, False)

    def require(self, name: str) -> Any:
        """Return a required parameter, raising if it is absent or empty."""
        value = self.parameters.get(name)
        if value is None or value == "":
            raise MissingConfigurationError(
                f"Resource {self.id} is missing required parameter '{name}'"
            )
        return value

    def __str__(self) -> str:
        """Return the kind and id of the resource."""
        return f"{self.kind}/{self.id}"


@dataclass
class ObservedState(BaseManifest):
    """The state of a resource as just observed from the external system."""

    exists: bool
    """True if the resource exists at all."""

    attributes: dict[str, Any] = field(default_factory=dict)
    """Observed attributes compared against desired parameters."""

    ready_condition: ReadyCondition = field(
        metadata=field_options(alias="readyCondition"),
        default=ReadyCondition.UNKNOWN,
    )
    """Operational readiness of the resource."""

    @classmethod
    def absent(cls) -> "ObservedState":
        """Return the state of a resource that does not exist."""
        return cls(exists=False)

    @property
    def ready(self) -> bool:
        """Return True if the resource exists and is ready."""
        return self.exists and self.ready_condition == ReadyCondition.READY


@dataclass
class PlanDocument(BaseManifest):
    """The contents of a plan file."""

    resources: list[ResourceSpec]
    """The resources to reconcile."""

    name: str = "plan"
    """A name for the deployment, used in logs and the report."""

    variables: dict[str, str] = field(default_factory=dict)
    """Values available for ${NAME} substitution in resources."""

    summary: dict[str, str] = field(default_factory=dict)
    """Labelled lines printed after a deploy, may reference resource outputs."""


def _substitute(value: str, variables: Mapping[str, str], where: str) -> str:
    """Expand ${NAME} and ${NAME:-default} references in a string."""

    def replace(match: re.Match[str]) -> str:
        name, default = match.group(1), match.group(2)
        if (resolved := variables.get(name)) not in (None, ""):
            return cast(str, resolved)
        if default is not None:
            return default
        raise MissingConfigurationError(
            f"Variable '{name}' referenced in {where} is not set"
        )

    return _VARIABLE_RE.sub(replace, value)


def _substitute_doc(doc: Any, variables: Mapping[str, str], where: str) -> Any:
    """Recursively expand variable references in all strings of a document."""
    if isinstance(doc, str):
        return _substitute(doc, variables, where)
    if isinstance(doc, list):
        return [_substitute_doc(item, variables, where) for item in doc]
    if isinstance(doc, dict):
        return {
            key: _substitute_doc(value, variables, where) for key, value in doc.items()
        }
    return doc


def parse_plan_document(
    content: str, environ: Mapping[str, str] | None = None
) -> PlanDocument:
    """Parse the contents of a plan file, expanding variable references.

    Plan variables are resolved in declaration order against the environment
    and previously declared variables, then resource definitions are
    resolved against both with variables taking precedence.
    """
    env = dict(os.environ if environ is None else environ)
    try:
        doc = yaml.safe_load(content)
    except yaml.YAMLError as err:
        raise InputException(f"Invalid YAML in plan: {err}") from err
    if not isinstance(doc, dict):
        raise InputException(f"Invalid plan, expected a mapping: {doc}")
    if not isinstance(doc.get("resources"), list):
        raise InputException("Invalid plan missing list of resources")

    resolved: dict[str, str] = {}
    for name, value in (doc.get("variables") or {}).items():
        resolved[name] = _substitute(
            str(value), {**env, **resolved}, f"variable '{name}'"
        )
    _LOGGER.debug("Resolved plan variables: %s", sorted(resolved))

    resources = []
    scope = {**env, **resolved}
    for index, resource in enumerate(doc["resources"]):
        if not isinstance(resource, dict):
            raise InputException(f"Invalid resource at index {index}: {resource}")
        where = f"resource '{resource.get('id', index)}'"
        resources.append(_substitute_doc(resource, scope, where))

    summary = {
        str(label): _substitute(str(template), scope, f"summary line '{label}'")
        for label, template in (doc.get("summary") or {}).items()
    }

    try:
        return PlanDocument.from_dict(
            {
                "name": str(doc.get("name", "plan")),
                "variables": resolved,
                "resources": resources,
                "summary": summary,
            }
        )
    except (MissingField, InvalidFieldValue) as err:
        raise InputException(f"Invalid plan: {err}") from err


async def read_plan_document(
    plan_path: Path, environ: Mapping[str, str] | None = None
) -> PlanDocument:
    """Return the contents of a plan file."""
    try:
        async with aiofiles.open(str(plan_path)) as plan_file:
            content = await plan_file.read()
    except OSError as err:
        raise InputException(f"Failed to read plan file {plan_path}: {err}") from err
    if not content:
        raise InputException(f"Plan file {plan_path} is empty")
    return parse_plan_document(content, environ)


async def write_plan_document(plan_path: Path, document: PlanDocument) -> None:
    """Write the resolved plan document to disk."""
    async with aiofiles.open(str(plan_path), mode="w") as plan_file:
        await plan_file.write(document.yaml())
