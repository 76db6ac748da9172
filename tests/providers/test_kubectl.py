"""Tests for the kubectl providers."""

import base64
from typing import Any

import pytest
import yaml

from infra_reconcile.exceptions import (
    ErrorKind,
    MissingConfigurationError,
    ObjectNotFoundError,
    ProviderUnavailableError,
)
from infra_reconcile.manifest import (
    ObservedState,
    ReadyCondition,
    ResourceKind,
    ResourceSpec,
)
from infra_reconcile.plan import Plan
from infra_reconcile.providers import ProviderRegistry
from infra_reconcile.providers.kubectl import (
    HASH_ANNOTATION,
    ManifestProvider,
    NamespaceProvider,
    SecretProvider,
    generate_password,
    manifest_hash,
)
from infra_reconcile.reconciler import Reconciler
from infra_reconcile.report import Action, RunStatus

from . import FakeRunner

NOT_FOUND = ObjectNotFoundError('Error from server (NotFound): "x" not found')

INGRESS: dict[str, Any] = {
    "apiVersion": "networking.k8s.io/v1",
    "kind": "Ingress",
    "metadata": {"name": "elasticsearch", "namespace": "es"},
    "spec": {"rules": [{"host": "es.example.com"}]},
}


def b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("utf-8")


@pytest.fixture(name="runner")
def mock_runner() -> FakeRunner:
    return FakeRunner()


def namespace_spec(**parameters: Any) -> ResourceSpec:
    return ResourceSpec(
        id="namespace",
        kind=ResourceKind.NAMESPACE,
        parameters={"name": "es", **parameters},
    )


def secret_spec(**parameters: Any) -> ResourceSpec:
    return ResourceSpec(
        id="creds",
        kind=ResourceKind.SECRET,
        parameters={"name": "es-credentials", "namespace": "es", **parameters},
    )


async def test_namespace_absent(runner: FakeRunner) -> None:
    """Test observing a namespace that does not exist."""
    runner.add(["kubectl", "get", "namespace"], NOT_FOUND)
    provider = NamespaceProvider(runner)
    assert await provider.observe(namespace_spec()) == ObservedState.absent()
    assert runner.calls("kubectl") == [
        ["kubectl", "get", "namespace", "es", "-o", "json"]
    ]


async def test_namespace_exists(runner: FakeRunner) -> None:
    """Test that system labels are not compared."""
    runner.add(
        ["kubectl", "get", "namespace"],
        {
            "metadata": {
                "name": "es",
                "labels": {"kubernetes.io/metadata.name": "es", "team": "search"},
            },
            "status": {"phase": "Active"},
        },
    )
    provider = NamespaceProvider(runner)
    spec = namespace_spec(labels={"team": "search"})
    observed = await provider.observe(spec)
    assert observed.ready
    assert observed.attributes == {"name": "es", "labels": {"team": "search"}}
    result = await provider.apply(spec, observed)
    assert result.action == Action.SKIPPED
    assert runner.calls("kubectl", "apply") == []


async def test_namespace_create(runner: FakeRunner) -> None:
    """Test creating a namespace in a specific context."""
    provider = NamespaceProvider(runner, context="prod")
    result = await provider.apply(
        namespace_spec(labels={"team": "search"}), ObservedState.absent()
    )
    assert result.action == Action.CREATED
    assert runner.calls("kubectl") == [
        ["kubectl", "apply", "-f", "-", "--context", "prod"]
    ]
    assert list(yaml.safe_load_all(runner.stdin[0] or "")) == [
        {
            "apiVersion": "v1",
            "kind": "Namespace",
            "metadata": {"name": "es", "labels": {"team": "search"}},
        }
    ]


async def test_namespace_delete(runner: FakeRunner) -> None:
    """Test deleting a namespace and waiting for it to be gone."""
    runner.add(
        ["kubectl", "get", "namespace"],
        {"metadata": {"name": "es"}, "status": {"phase": "Active"}},
    )
    provider = NamespaceProvider(runner)
    assert await provider.delete(namespace_spec())
    assert runner.calls("kubectl", "delete") == [
        [
            "kubectl",
            "delete",
            "namespace",
            "es",
            "--ignore-not-found",
            "--wait=true",
        ]
    ]


def test_generate_password() -> None:
    """Test generated passwords."""
    password = generate_password()
    assert len(password) == 24
    assert password.isalnum()
    assert len(generate_password(40)) == 40
    assert generate_password() != password


async def test_secret_create_generates_password(runner: FakeRunner) -> None:
    """Test that a password is generated and passed on stdin only."""
    provider = SecretProvider(runner)
    spec = secret_spec(username="elastic", passwordLength=32)
    result = await provider.apply(spec, ObservedState.absent())
    assert result.action == Action.CREATED

    (doc,) = yaml.safe_load_all(runner.stdin[0] or "")
    assert doc["kind"] == "Secret"
    assert doc["metadata"] == {"name": "es-credentials", "namespace": "es"}
    assert doc["stringData"]["username"] == "elastic"
    password = doc["stringData"]["password"]
    assert len(password) == 32
    for cmd in runner.commands:
        assert password not in " ".join(cmd.cmd)
    assert provider.sensitive(spec) == {"password"}


async def test_secret_existing_password_kept(runner: FakeRunner) -> None:
    """Test that a generated password is not replaced on later runs."""
    runner.add(
        ["kubectl", "get", "secret"],
        {
            "metadata": {"name": "es-credentials"},
            "data": {"username": b64("elastic"), "password": b64("abc123XYZ")},
        },
    )
    provider = SecretProvider(runner)
    spec = secret_spec(username="elastic")
    observed = await provider.observe(spec)
    assert observed.ready
    assert observed.attributes == {
        "name": "es-credentials",
        "namespace": "es",
        "username": "elastic",
        "password": "abc123XYZ",
    }
    assert (await provider.apply(spec, observed)).action == Action.SKIPPED

    result = await provider.apply(secret_spec(username="admin"), observed)
    assert result.action == Action.UPDATED
    (doc,) = yaml.safe_load_all(runner.stdin[-1] or "")
    assert doc["stringData"] == {"username": "admin", "password": "abc123XYZ"}


async def test_secret_observe_in_namespace(runner: FakeRunner) -> None:
    """Test the command used to read a secret."""
    runner.add(["kubectl", "get", "secret"], NOT_FOUND)
    provider = SecretProvider(runner, context="prod")
    assert not (await provider.observe(secret_spec())).exists
    assert runner.calls("kubectl") == [
        [
            "kubectl",
            "get",
            "secret",
            "es-credentials",
            "-o",
            "json",
            "--namespace",
            "es",
            "--context",
            "prod",
        ]
    ]


def manifest_spec(
    kind: ResourceKind = ResourceKind.NETWORK, **parameters: Any
) -> ResourceSpec:
    return ResourceSpec(id="ingress", kind=kind, parameters=parameters)


async def test_manifest_create_and_skip(runner: FakeRunner) -> None:
    """Test that the manifest hash detects changes."""
    runner.add(["kubectl", "get", "Ingress"], NOT_FOUND)
    provider = ManifestProvider(runner)
    spec = manifest_spec(manifest=INGRESS)
    assert not provider.is_asynchronous(spec)

    observed = await provider.observe(spec)
    assert not observed.exists
    result = await provider.apply(spec, observed)
    assert result.action == Action.CREATED
    (doc,) = yaml.safe_load_all(runner.stdin[-1] or "")
    digest = manifest_hash(INGRESS)
    assert doc["metadata"]["annotations"] == {HASH_ANNOTATION: digest}
    assert doc["spec"] == INGRESS["spec"]

    runner.add(["kubectl", "get", "Ingress"], {"metadata": doc["metadata"]})
    observed = await provider.observe(spec)
    assert observed.attributes[HASH_ANNOTATION] == digest
    assert (await provider.apply(spec, observed)).action == Action.SKIPPED

    changed = {**INGRESS, "spec": {"rules": [{"host": "other.example.com"}]}}
    result = await provider.apply(manifest_spec(manifest=changed), observed)
    assert result.action == Action.UPDATED


def test_manifest_hash_is_stable() -> None:
    """Test that key order does not change the hash."""
    reordered = dict(reversed(list(INGRESS.items())))
    assert manifest_hash(reordered) == manifest_hash(INGRESS)
    assert len(manifest_hash(INGRESS)) == 16


async def test_load_balancer_readiness(runner: FakeRunner) -> None:
    """Test waiting for a service created by a release to get an address."""
    service: dict[str, Any] = {"metadata": {"name": "ingress-nginx-controller"}}
    runner.add(
        ["kubectl", "get", "Service"],
        NOT_FOUND,
        {**service, "status": {"loadBalancer": {}}},
        {
            **service,
            "status": {"loadBalancer": {"ingress": [{"hostname": "abc.elb.com"}]}},
        },
    )
    provider = ManifestProvider(runner)
    spec = manifest_spec(
        objectKind="Service",
        name="ingress-nginx-controller",
        namespace="es",
        readiness="loadBalancer",
    )
    assert provider.is_asynchronous(spec)

    # Objects created by something else are pending until they appear
    observed = await provider.observe(spec)
    assert observed.exists
    assert observed.ready_condition == ReadyCondition.PENDING
    assert (await provider.apply(spec, observed)).action == Action.SKIPPED

    observed = await provider.observe(spec)
    assert observed.ready_condition == ReadyCondition.PENDING

    observed = await provider.observe(spec)
    assert observed.ready
    assert observed.attributes == {
        "name": "ingress-nginx-controller",
        "namespace": "es",
        "hostname": "abc.elb.com",
    }
    assert runner.calls("kubectl", "apply") == []


@pytest.mark.parametrize(
    ("conditions", "expected"),
    [
        ([], ReadyCondition.PENDING),
        ([{"type": "Ready", "status": "True"}], ReadyCondition.READY),
        (
            [{"type": "Ready", "status": "False", "reason": "Pending"}],
            ReadyCondition.PENDING,
        ),
        (
            [
                {"type": "Issuing", "status": "True"},
                {"type": "Ready", "status": "False", "reason": "Failed"},
            ],
            ReadyCondition.FAILED,
        ),
    ],
    ids=["none", "ready", "pending", "failed"],
)
async def test_certificate_condition(
    runner: FakeRunner, conditions: list[dict[str, str]], expected: ReadyCondition
) -> None:
    """Test readiness from the Ready condition of a certificate."""
    runner.add(
        ["kubectl", "get", "Certificate"],
        {"metadata": {"name": "es-tls"}, "status": {"conditions": conditions}},
    )
    provider = ManifestProvider(runner)
    spec = manifest_spec(
        ResourceKind.CERTIFICATE, objectKind="Certificate", name="es-tls"
    )
    observed = await provider.observe(spec)
    assert observed.ready_condition == expected


async def test_manifest_invalid(runner: FakeRunner) -> None:
    """Test manifest parameters that are rejected."""
    provider = ManifestProvider(runner)
    with pytest.raises(MissingConfigurationError, match="unknown readiness"):
        provider.is_asynchronous(manifest_spec(manifest=INGRESS, readiness="healthy"))
    with pytest.raises(MissingConfigurationError, match="missing kind"):
        await provider.observe(manifest_spec(manifest={"metadata": {"name": "x"}}))
    with pytest.raises(MissingConfigurationError, match="objectKind"):
        await provider.observe(manifest_spec(name="x"))

    spec = manifest_spec(objectKind="Service", name="lb")
    result = await provider.apply(spec, ObservedState.absent())
    assert result.action == Action.FAILED
    assert result.error == ErrorKind.MISSING_CONFIGURATION


async def test_manifest_delete(runner: FakeRunner) -> None:
    """Test that only objects managed by the plan are deleted."""
    runner.add(["kubectl", "get"], {"metadata": {"name": "elasticsearch"}})
    provider = ManifestProvider(runner)

    assert not await provider.delete(
        manifest_spec(objectKind="Certificate", name="es-tls", namespace="es")
    )
    assert runner.calls("kubectl", "delete") == []

    assert await provider.delete(manifest_spec(manifest=INGRESS))
    assert runner.calls("kubectl", "delete") == [
        [
            "kubectl",
            "delete",
            "Ingress",
            "elasticsearch",
            "--ignore-not-found",
            "--wait=true",
            "--namespace",
            "es",
        ]
    ]


async def test_reconcile_namespace_and_secret(runner: FakeRunner) -> None:
    """Test deploying a namespace and generated credentials with kubectl."""
    runner.add(
        ["kubectl", "get", "namespace"],
        NOT_FOUND,
        {"metadata": {"name": "es"}, "status": {"phase": "Active"}},
    )
    runner.add(
        ["kubectl", "get", "secret"],
        NOT_FOUND,
        {"data": {"username": b64("elastic"), "password": b64("generated1234")}},
    )
    registry = ProviderRegistry()
    registry.register(NamespaceProvider(runner), kinds=[ResourceKind.NAMESPACE])
    registry.register(SecretProvider(runner), kinds=[ResourceKind.SECRET])
    plan = Plan(
        [
            namespace_spec(),
            ResourceSpec(
                id="creds",
                kind=ResourceKind.SECRET,
                depends_on=["namespace"],
                parameters={
                    "name": "es-credentials",
                    "namespace": "$(namespace.name)",
                    "username": "elastic",
                },
            ),
        ]
    )

    report = await Reconciler(registry).reconcile(plan)

    assert report.status == RunStatus.SUCCESS
    assert [r.action for r in report.results] == [Action.CREATED, Action.CREATED]
    creds = report.get("creds")
    assert creds is not None
    assert creds.outputs["password"] == "generated1234"
    assert creds.sensitive == ["password"]
    assert report.to_dict()["results"][1]["outputs"]["password"] == "ge****"
    assert len(runner.calls("kubectl", "apply")) == 2


async def test_preflight(runner: FakeRunner) -> None:
    """Test that kubectl and the cluster context are checked."""
    runner.add(
        ["kubectl", "cluster-info"],
        ObjectNotFoundError('error: context "prod" does not exist'),
    )
    provider = NamespaceProvider(runner, context="prod")
    with pytest.raises(MissingConfigurationError, match="context is not configured"):
        await provider.preflight()
    assert runner.calls("kubectl") == [
        ["kubectl", "version", "--client", "--output", "json"],
        ["kubectl", "cluster-info", "--context", "prod"],
    ]


async def test_preflight_unreachable(runner: FakeRunner) -> None:
    """Test a cluster that cannot be reached."""
    runner.add(
        ["kubectl", "cluster-info"],
        ProviderUnavailableError("Unable to connect to the server: i/o timeout"),
    )
    provider = ManifestProvider(runner)
    with pytest.raises(ProviderUnavailableError):
        await provider.preflight()
