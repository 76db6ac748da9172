"""Providers for objects in a Kubernetes cluster, managed with `kubectl`.

Objects are always created and updated with `kubectl apply -f -` so that
repeated runs converge instead of failing on existing objects. Secret values
are passed on stdin and never appear on the command line.
"""

import base64
import hashlib
import json
import logging
import secrets
import string
from typing import Any

from infra_reconcile.exceptions import (
    MissingConfigurationError,
    ObjectNotFoundError,
)
from infra_reconcile.manifest import (
    ObservedState,
    ReadyCondition,
    ResourceKind,
    ResourceSpec,
)
from infra_reconcile import command
from infra_reconcile.wait import WaitPolicy

from .base import RetryPolicy
from .cli import CommandProvider

__all__ = [
    "NamespaceProvider",
    "SecretProvider",
    "ManifestProvider",
    "generate_password",
]

_LOGGER = logging.getLogger(__name__)


KUBECTL_BIN = "kubectl"

HASH_ANNOTATION = "infra-reconcile.io/manifest-hash"

PASSWORD_LENGTH = 24

READINESS_EXISTS = "exists"
READINESS_CONDITION = "condition"
READINESS_LOAD_BALANCER = "loadBalancer"
READINESS_MODES = (READINESS_EXISTS, READINESS_CONDITION, READINESS_LOAD_BALANCER)


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Return a random alphanumeric password."""
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def manifest_hash(manifest: dict[str, Any]) -> str:
    """Return a stable digest of a manifest, used to detect drift."""
    content = json.dumps(manifest, sort_keys=True, default=str)
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


class KubectlProvider(CommandProvider):
    """Base class for providers of objects in a Kubernetes cluster."""

    version_args = [KUBECTL_BIN, "version", "--client", "--output", "json"]

    def __init__(
        self,
        runner: command.CommandRunner | None = None,
        retry_policy: RetryPolicy | None = None,
        context: str | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            runner: Runs commands, defaults to a subprocess.
            retry_policy: Backoff for transient errors.
            context: The kubeconfig context to use, or the current one.
        """
        super().__init__(runner, retry_policy)
        self._context = context

    async def preflight(self) -> None:
        """Check that kubectl is installed and the cluster is reachable."""
        await self.check_installed()
        try:
            await self._run(self._args("cluster-info"))
        except ObjectNotFoundError as err:
            raise MissingConfigurationError(
                f"Kubernetes context is not configured: {err}"
            ) from err

    def _args(self, *args: str) -> list[str]:
        cmd = [KUBECTL_BIN, *args]
        if self._context:
            cmd.extend(["--context", self._context])
        return cmd

    async def _get(
        self, kind: str, name: str, namespace: str | None = None
    ) -> dict[str, Any] | None:
        """Return the object as a dict, or None if it does not exist."""
        args = ["get", kind, name, "-o", "json"]
        if namespace:
            args.extend(["--namespace", namespace])
        try:
            return await self._run_json(self._args(*args))
        except ObjectNotFoundError:
            _LOGGER.debug("%s %s not found", kind, name)
            return None

    async def _apply_manifests(self, docs: list[dict[str, Any]]) -> None:
        await self._apply_documents(self._args("apply", "-f", "-"), docs)

    async def _delete_object(
        self, kind: str, name: str, namespace: str | None = None
    ) -> None:
        args = ["delete", kind, name, "--ignore-not-found", "--wait=true"]
        if namespace:
            args.extend(["--namespace", namespace])
        await self._run(self._args(*args), timeout=600)


class NamespaceProvider(KubectlProvider):
    """Manages a namespace and its labels."""

    name = "kubectl-namespace"
    tracked_parameters = frozenset({"name", "labels"})
    immutable_parameters = frozenset({"name"})

    async def _observe(self, spec: ResourceSpec) -> ObservedState:
        name = spec.require("name")
        if (obj := await self._get("namespace", name)) is None:
            return ObservedState.absent()
        metadata = obj.get("metadata", {})
        labels = metadata.get("labels") or {}
        desired_labels = spec.parameters.get("labels") or {}
        phase = obj.get("status", {}).get("phase")
        return ObservedState(
            exists=True,
            attributes={
                "name": metadata.get("name", name),
                # System labels are not part of the desired state
                "labels": {k: v for k, v in labels.items() if k in desired_labels},
            },
            ready_condition=(
                ReadyCondition.READY if phase == "Active" else ReadyCondition.PENDING
            ),
        )

    def _manifest(self, spec: ResourceSpec) -> dict[str, Any]:
        metadata: dict[str, Any] = {"name": spec.require("name")}
        if labels := spec.parameters.get("labels"):
            metadata["labels"] = {k: str(v) for k, v in labels.items()}
        return {"apiVersion": "v1", "kind": "Namespace", "metadata": metadata}

    async def _create(self, spec: ResourceSpec) -> None:
        await self._apply_manifests([self._manifest(spec)])

    async def _update(
        self, spec: ResourceSpec, observed: ObservedState, changes: list[str]
    ) -> None:
        await self._apply_manifests([self._manifest(spec)])

    async def _delete(self, spec: ResourceSpec) -> None:
        await self._delete_object("namespace", spec.require("name"))


class SecretProvider(KubectlProvider):
    """Manages an opaque secret holding generated credentials.

    Parameters:
        name, namespace: Identify the secret.
        username: Stored under the `username` key, if set.
        password: Stored under the `password` key. When not set a random
            password is generated on creation and the existing one is kept
            on later runs.
        data: Additional string values to store.

    Every stored key is exposed as an output so that dependents can
    reference the credentials, e.g. `$(es-credentials.password)`.
    """

    name = "kubectl-secret"
    immutable_parameters = frozenset({"name", "namespace"})
    sensitive_attributes = frozenset({"password"})

    async def _observe(self, spec: ResourceSpec) -> ObservedState:
        name = spec.require("name")
        namespace = spec.require("namespace")
        if (obj := await self._get("secret", name, namespace)) is None:
            return ObservedState.absent()
        attributes: dict[str, Any] = {"name": name, "namespace": namespace}
        for key, value in (obj.get("data") or {}).items():
            attributes[key] = base64.b64decode(value).decode("utf-8")
        return ObservedState(
            exists=True, attributes=attributes, ready_condition=ReadyCondition.READY
        )

    def desired_attributes(self, spec: ResourceSpec) -> dict[str, Any]:
        """Return the values that must match, excluding a generated password."""
        desired = {
            "name": spec.parameters.get("name"),
            "namespace": spec.parameters.get("namespace"),
        }
        for key in ("username", "password"):
            if spec.parameters.get(key) is not None:
                desired[key] = spec.parameters[key]
        desired.update(spec.parameters.get("data") or {})
        return desired

    def _manifest(self, spec: ResourceSpec, values: dict[str, Any]) -> dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "Secret",
            "type": "Opaque",
            "metadata": {
                "name": spec.require("name"),
                "namespace": spec.require("namespace"),
            },
            "stringData": {key: str(value) for key, value in values.items()},
        }

    async def _create(self, spec: ResourceSpec) -> None:
        values = {
            key: value
            for key, value in self.desired_attributes(spec).items()
            if key not in ("name", "namespace")
        }
        if "password" not in values:
            length = int(spec.parameters.get("passwordLength", PASSWORD_LENGTH))
            values["password"] = generate_password(length)
        await self._apply_manifests([self._manifest(spec, values)])

    async def _update(
        self, spec: ResourceSpec, observed: ObservedState, changes: list[str]
    ) -> None:
        values = {
            key: value
            for key, value in {
                **observed.attributes,
                **self.desired_attributes(spec),
            }.items()
            if key not in ("name", "namespace")
        }
        await self._apply_manifests([self._manifest(spec, values)])

    async def _delete(self, spec: ResourceSpec) -> None:
        await self._delete_object(
            "secret", spec.require("name"), spec.require("namespace")
        )


class ManifestProvider(KubectlProvider):
    """Manages an arbitrary object, such as an Ingress or ClusterIssuer.

    Parameters:
        manifest: The object to apply. A hash of it is stored in an annotation
            so that changes are detected on later runs.
        objectKind, name, namespace: Identify an object that is created by
            something else, such as the Service of a release or a Certificate
            requested by an Ingress. Such objects are only observed.
        readiness: How readiness is determined. `exists` (the default),
            `condition` for a Ready status condition, or `loadBalancer` for an
            assigned load balancer address, exposed as the `hostname` output.
    """

    name = "kubectl"
    default_wait_policy = WaitPolicy(poll_interval=10.0, timeout=600.0)

    def _readiness(self, spec: ResourceSpec) -> str:
        default = (
            READINESS_CONDITION
            if spec.kind == ResourceKind.CERTIFICATE
            else READINESS_EXISTS
        )
        readiness = spec.parameters.get("readiness", default)
        if readiness not in READINESS_MODES:
            raise MissingConfigurationError(
                f"Resource {spec.id} has unknown readiness '{readiness}', "
                f"expected one of {READINESS_MODES}"
            )
        return str(readiness)

    def _identity(self, spec: ResourceSpec) -> tuple[str, str, str | None]:
        """Return the kind, name and namespace of the object."""
        if (manifest := spec.parameters.get("manifest")) is not None:
            metadata = manifest.get("metadata") or {}
            if not manifest.get("kind") or not metadata.get("name"):
                raise MissingConfigurationError(
                    f"Resource {spec.id} manifest is missing kind or metadata.name"
                )
            return manifest["kind"], metadata["name"], metadata.get("namespace")
        return (
            spec.require("objectKind"),
            spec.require("name"),
            spec.parameters.get("namespace"),
        )

    def is_asynchronous(self, spec: ResourceSpec) -> bool:
        """Return True for objects created elsewhere or with a readiness check."""
        if spec.parameters.get("manifest") is None:
            return True
        return self._readiness(spec) != READINESS_EXISTS

    def desired_attributes(self, spec: ResourceSpec) -> dict[str, Any]:
        """Return the hash of the manifest, or nothing for observed objects."""
        if (manifest := spec.parameters.get("manifest")) is None:
            return {}
        return {HASH_ANNOTATION: manifest_hash(manifest)}

    async def _observe(self, spec: ResourceSpec) -> ObservedState:
        kind, name, namespace = self._identity(spec)
        if (obj := await self._get(kind, name, namespace)) is None:
            if spec.parameters.get("manifest") is None:
                # Objects created by something else are pending until they appear
                return ObservedState(
                    exists=True, ready_condition=ReadyCondition.PENDING
                )
            return ObservedState.absent()
        metadata = obj.get("metadata", {})
        attributes: dict[str, Any] = {"name": name}
        if namespace:
            attributes["namespace"] = namespace
        if digest := (metadata.get("annotations") or {}).get(HASH_ANNOTATION):
            attributes[HASH_ANNOTATION] = digest

        status = obj.get("status") or {}
        condition = ReadyCondition.READY
        readiness = self._readiness(spec)
        if readiness == READINESS_CONDITION:
            condition = _condition_status(status)
        elif readiness == READINESS_LOAD_BALANCER:
            ingress = (status.get("loadBalancer") or {}).get("ingress") or []
            address = next(
                (i.get("hostname") or i.get("ip") for i in ingress if i), None
            )
            if address:
                attributes["hostname"] = address
            else:
                condition = ReadyCondition.PENDING
        return ObservedState(
            exists=True, attributes=attributes, ready_condition=condition
        )

    def _annotated(self, spec: ResourceSpec) -> dict[str, Any]:
        manifest = spec.parameters.get("manifest")
        if manifest is None:
            kind, name, _ = self._identity(spec)
            raise MissingConfigurationError(
                f"Resource {spec.id} has no manifest to create {kind} {name}"
            )
        metadata = dict(manifest.get("metadata") or {})
        metadata["annotations"] = {
            **(metadata.get("annotations") or {}),
            HASH_ANNOTATION: manifest_hash(manifest),
        }
        return {**manifest, "metadata": metadata}

    async def _create(self, spec: ResourceSpec) -> None:
        await self._apply_manifests([self._annotated(spec)])

    async def _update(
        self, spec: ResourceSpec, observed: ObservedState, changes: list[str]
    ) -> None:
        await self._apply_manifests([self._annotated(spec)])

    async def _delete(self, spec: ResourceSpec) -> None:
        kind, name, namespace = self._identity(spec)
        await self._delete_object(kind, name, namespace)

    async def delete(self, spec: ResourceSpec) -> bool:
        """Delete the object, leaving objects managed by something else."""
        if spec.parameters.get("manifest") is None:
            _LOGGER.info("Resource %s is not managed by this plan", spec)
            return False
        return await super().delete(spec)


def _condition_status(status: dict[str, Any]) -> ReadyCondition:
    """Return the readiness from a Ready status condition."""
    for condition in status.get("conditions") or []:
        if condition.get("type") != "Ready":
            continue
        if condition.get("status") == "True":
            return ReadyCondition.READY
        if condition.get("reason") == "Failed":
            return ReadyCondition.FAILED
        return ReadyCondition.PENDING
    return ReadyCondition.PENDING
