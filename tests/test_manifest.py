"""Tests for parsing plan documents."""

from pathlib import Path

import pytest

from infra_reconcile.exceptions import InputException, MissingConfigurationError
from infra_reconcile.manifest import (
    ObservedState,
    PlanDocument,
    ReadyCondition,
    ResourceKind,
    ResourceSpec,
    WaitConfig,
    parse_plan_document,
    read_plan_document,
    write_plan_document,
)

PLAN = """\
name: demo
variables:
  region: ${AWS_REGION:-us-east-1}
  cluster: ${CLUSTER_NAME}
  bucket: ${cluster}-${region}
resources:
  - id: cluster
    kind: Cluster
    parameters:
      name: ${cluster}
      region: ${region}
    wait:
      pollInterval: 30
      timeout: 1800
  - id: namespace
    kind: Namespace
    dependsOn: [cluster]
    parameters:
      name: ${NAMESPACE:-default}
  - id: cert
    kind: Certificate
    dependsOn: [namespace]
    requiredReady: true
    sensitive: [key]
    parameters:
      name: tls
summary:
  Cluster: ${cluster} in ${region}
  Hostname: $(cert.name)
"""


def test_parse_plan() -> None:
    """Test parsing a plan with variables from the environment."""
    doc = parse_plan_document(PLAN, {"CLUSTER_NAME": "es"})
    assert doc.name == "demo"
    assert doc.variables == {
        "region": "us-east-1",
        "cluster": "es",
        "bucket": "es-us-east-1",
    }
    assert [spec.id for spec in doc.resources] == ["cluster", "namespace", "cert"]

    cluster = doc.resources[0]
    assert cluster.kind == ResourceKind.CLUSTER
    assert cluster.parameters == {"name": "es", "region": "us-east-1"}
    assert cluster.wait == WaitConfig(poll_interval=30, timeout=1800)
    assert cluster.depends_on == []
    assert cluster.is_required_ready

    namespace = doc.resources[1]
    assert namespace.depends_on == ["cluster"]
    assert namespace.parameters == {"name": "default"}

    cert = doc.resources[2]
    assert cert.required_ready is True
    assert cert.is_required_ready
    assert cert.sensitive == ["key"]

    assert doc.summary == {
        "Cluster": "es in us-east-1",
        "Hostname": "$(cert.name)",
    }


def test_environment_overrides_default() -> None:
    """Test that set environment variables win over defaults."""
    doc = parse_plan_document(
        PLAN, {"CLUSTER_NAME": "es", "AWS_REGION": "eu-west-1", "NAMESPACE": "logs"}
    )
    assert doc.variables["region"] == "eu-west-1"
    assert doc.resources[1].parameters == {"name": "logs"}


def test_missing_variable() -> None:
    """Test a referenced variable without a value or default."""
    with pytest.raises(MissingConfigurationError, match="CLUSTER_NAME"):
        parse_plan_document(PLAN, {})


def test_empty_variable_uses_default() -> None:
    """Test that an empty environment variable falls back to the default."""
    doc = parse_plan_document(PLAN, {"CLUSTER_NAME": "es", "AWS_REGION": ""})
    assert doc.variables["region"] == "us-east-1"


@pytest.mark.parametrize(
    ("content", "match"),
    [
        ("- a\n- b\n", "expected a mapping"),
        ("name: x\n", "missing list of resources"),
        ("resources: {}\n", "missing list of resources"),
        ("resources:\n  - a\n", "Invalid resource at index 0"),
        ("resources:\n  - id: a\n", "Invalid plan"),
        ("resources:\n  - id: a\n    kind: Database\n", "Invalid plan"),
        ("resources: [\n", "Invalid YAML"),
    ],
    ids=[
        "list",
        "no-resources",
        "resources-mapping",
        "resource-not-mapping",
        "missing-kind",
        "unknown-kind",
        "invalid-yaml",
    ],
)
def test_invalid_plan(content: str, match: str) -> None:
    """Test plan documents that are not valid."""
    with pytest.raises(InputException, match=match):
        parse_plan_document(content, {})


def test_required_ready_defaults() -> None:
    """Test the kinds that must be ready before dependents may run."""
    required = {
        kind
        for kind in ResourceKind
        if ResourceSpec(id="x", kind=kind).is_required_ready
    }
    assert required == {
        ResourceKind.CLUSTER,
        ResourceKind.NAMESPACE,
        ResourceKind.REGISTRY,
        ResourceKind.SECRET,
    }
    spec = ResourceSpec(id="x", kind=ResourceKind.CLUSTER, required_ready=False)
    assert not spec.is_required_ready


def test_require_parameter() -> None:
    """Test accessing required parameters."""
    spec = ResourceSpec(
        id="ns", kind=ResourceKind.NAMESPACE, parameters={"name": "a", "labels": ""}
    )
    assert spec.require("name") == "a"
    with pytest.raises(MissingConfigurationError, match="'labels'"):
        spec.require("labels")
    with pytest.raises(MissingConfigurationError, match="'region'"):
        spec.require("region")
    assert str(spec) == "Namespace/ns"


def test_observed_state() -> None:
    """Test readiness of observed states."""
    assert not ObservedState.absent().ready
    assert not ObservedState(exists=True).ready
    assert ObservedState(exists=True, ready_condition=ReadyCondition.READY).ready


def test_serialize_spec() -> None:
    """Test that specs serialize with their document aliases."""
    spec = ResourceSpec(
        id="r",
        kind=ResourceKind.RELEASE,
        parameters={"chart": "x"},
        depends_on=["ns"],
        wait=WaitConfig(initial_delay=5),
    )
    assert spec.to_dict() == {
        "id": "r",
        "kind": "Release",
        "parameters": {"chart": "x"},
        "dependsOn": ["ns"],
        "wait": {"initialDelay": 5},
        "sensitive": [],
    }


async def test_read_write_plan(tmp_path: Path) -> None:
    """Test reading a plan file and writing back the resolved document."""
    path = tmp_path / "plan.yaml"
    path.write_text(PLAN)

    doc = await read_plan_document(path, {"CLUSTER_NAME": "es"})
    assert doc.resources[0].parameters["name"] == "es"

    resolved = tmp_path / "resolved.yaml"
    await write_plan_document(resolved, doc)
    assert PlanDocument.parse_yaml(resolved.read_text()) == doc


async def test_read_missing_plan(tmp_path: Path) -> None:
    """Test reading a plan file that does not exist."""
    with pytest.raises(InputException, match="Failed to read plan file"):
        await read_plan_document(tmp_path / "missing.yaml", {})


async def test_read_empty_plan(tmp_path: Path) -> None:
    """Test reading an empty plan file."""
    path = tmp_path / "plan.yaml"
    path.write_text("")
    with pytest.raises(InputException, match="is empty"):
        await read_plan_document(path, {})
