"""Tests for the helm release provider."""

from pathlib import Path
from typing import Any

import pytest
import yaml

from infra_reconcile.command import Command
from infra_reconcile.exceptions import (
    CommandFailedError,
    ErrorKind,
    MissingConfigurationError,
)
from infra_reconcile.manifest import (
    ObservedState,
    ReadyCondition,
    ResourceKind,
    ResourceSpec,
)
from infra_reconcile.providers.helm import HelmReleaseProvider, _chart_version
from infra_reconcile.report import Action

from . import FakeRunner

RELEASE: dict[str, Any] = {
    "name": "elasticsearch",
    "namespace": "es",
    "revision": "1",
    "status": "deployed",
    "chart": "elasticsearch-8.5.1",
    "app_version": "8.5.1",
}


def release_spec(**parameters: Any) -> ResourceSpec:
    return ResourceSpec(
        id="elasticsearch",
        kind=ResourceKind.RELEASE,
        parameters={
            "name": "elasticsearch",
            "namespace": "es",
            "chart": "elastic/elasticsearch",
            "repository": "https://helm.elastic.co",
            "version": "8.5.1",
            "values": {"replicas": 3},
            **parameters,
        },
    )


def pod(ready: bool) -> dict[str, Any]:
    status = "True" if ready else "False"
    return {"status": {"conditions": [{"type": "Ready", "status": status}]}}


class ValuesRecorder(FakeRunner):
    """Records the contents of values files while they exist."""

    def __init__(self) -> None:
        super().__init__()
        self.values: list[Any] = []

    async def __call__(self, cmd: Command, stdin: bytes | None = None) -> str:
        if "--values" in cmd.cmd:
            path = Path(cmd.cmd[cmd.cmd.index("--values") + 1])
            self.values.append(yaml.safe_load(path.read_text()))
        return await super().__call__(cmd, stdin)


@pytest.fixture(name="runner")
def mock_runner() -> ValuesRecorder:
    return ValuesRecorder()


@pytest.mark.parametrize(
    ("chart", "chart_ref", "expected"),
    [
        ("elasticsearch-8.5.1", "elastic/elasticsearch", "8.5.1"),
        ("ingress-nginx-4.10.0", "ingress-nginx/ingress-nginx", "4.10.0"),
        ("cert-manager-v1.14.4", "cert-manager", "v1.14.4"),
        ("other-1.0.0", "elastic/elasticsearch", None),
    ],
)
def test_chart_version(chart: str, chart_ref: str, expected: str | None) -> None:
    """Test reading the version from the chart column of helm list."""
    assert _chart_version(chart, chart_ref) == expected


async def test_observe_absent(runner: ValuesRecorder) -> None:
    """Test observing a release that is not installed."""
    runner.add(["helm", "list"], [])
    provider = HelmReleaseProvider(runner)
    assert await provider.observe(release_spec()) == ObservedState.absent()
    assert runner.calls("helm") == [
        [
            "helm",
            "list",
            "--namespace",
            "es",
            "--filter",
            "^elasticsearch$",
            "--all",
            "--output",
            "json",
        ]
    ]


async def test_observe_deployed(runner: ValuesRecorder) -> None:
    """Test that a matching deployed release is skipped."""
    runner.add(["helm", "list"], [RELEASE])
    runner.add(["helm", "get", "values"], {"replicas": 3})
    provider = HelmReleaseProvider(runner)
    spec = release_spec()

    observed = await provider.observe(spec)

    assert observed.ready
    assert observed.attributes["chart"] == "elastic/elasticsearch"
    assert observed.attributes["version"] == "8.5.1"
    assert observed.attributes["values"] == {"replicas": 3}
    assert provider.diff(spec, observed) == []
    assert (await provider.apply(spec, observed)).action == Action.SKIPPED
    assert provider.sensitive(spec) == {"values"}


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        ("pending-install", ReadyCondition.PENDING),
        ("pending-upgrade", ReadyCondition.PENDING),
        ("failed", ReadyCondition.FAILED),
    ],
)
async def test_release_status(
    runner: ValuesRecorder, status: str, expected: ReadyCondition
) -> None:
    """Test readiness from the release status."""
    runner.add(["helm", "list"], [{**RELEASE, "status": status}])
    runner.add(["helm", "get", "values"], {"replicas": 3})
    provider = HelmReleaseProvider(runner)
    observed = await provider.observe(release_spec())
    assert observed.ready_condition == expected


async def test_ready_selector(runner: ValuesRecorder) -> None:
    """Test waiting for the pods of a release to be ready."""
    runner.add(["helm", "list"], [RELEASE])
    runner.add(["helm", "get", "values"], {"replicas": 3})
    runner.add(
        ["kubectl", "get", "pods"],
        {"items": []},
        {"items": [pod(True), pod(False)]},
        {"items": [pod(True), pod(True)]},
    )
    provider = HelmReleaseProvider(runner, kube_context="prod")
    spec = release_spec(readySelector="app=elasticsearch-master")

    conditions = [(await provider.observe(spec)).ready_condition for _ in range(3)]

    assert conditions == [
        ReadyCondition.PENDING,
        ReadyCondition.PENDING,
        ReadyCondition.READY,
    ]
    assert runner.calls("kubectl")[0] == [
        "kubectl",
        "get",
        "pods",
        "--selector",
        "app=elasticsearch-master",
        "--namespace",
        "es",
        "-o",
        "json",
        "--context",
        "prod",
    ]


async def test_install_and_upgrade(runner: ValuesRecorder) -> None:
    """Test installing a release with values from a file, then upgrading."""
    provider = HelmReleaseProvider(runner)

    result = await provider.apply(release_spec(), ObservedState.absent())

    assert result.action == Action.CREATED
    assert runner.calls("helm", "repo") == [
        [
            "helm",
            "repo",
            "add",
            "elastic",
            "https://helm.elastic.co",
            "--force-update",
        ]
    ]
    (install,) = runner.calls("helm", "install")
    values_path = install[install.index("--values") + 1]
    assert install[: install.index("--values")] == [
        "helm",
        "install",
        "elasticsearch",
        "elastic/elasticsearch",
        "--namespace",
        "es",
        "--version",
        "8.5.1",
    ]
    assert runner.values == [{"replicas": 3}]
    assert not Path(values_path).exists()

    runner.add(["helm", "list"], [{**RELEASE, "chart": "elasticsearch-8.5.0"}])
    runner.add(["helm", "get", "values"], {"replicas": 3})
    observed = await provider.observe(release_spec())
    assert provider.diff(release_spec(), observed) == ["version"]

    result = await provider.apply(release_spec(), observed)

    assert result.action == Action.UPDATED
    assert len(runner.calls("helm", "upgrade")) == 1
    # The repository is only added once per run
    assert len(runner.calls("helm", "repo")) == 1


async def test_values_not_on_command_line(runner: ValuesRecorder) -> None:
    """Test that credentials in values never appear in arguments."""
    provider = HelmReleaseProvider(runner)
    spec = release_spec(values={"password": "s3cret-value"})
    await provider.apply(spec, ObservedState.absent())
    assert runner.values == [{"password": "s3cret-value"}]
    for cmd in runner.commands:
        assert "s3cret-value" not in cmd.string


async def test_chart_change_is_immutable(runner: ValuesRecorder) -> None:
    """Test that a release cannot be moved to another chart."""
    runner.add(["helm", "list"], [RELEASE])
    runner.add(["helm", "get", "values"], {"replicas": 3})
    provider = HelmReleaseProvider(runner)
    spec = release_spec(chart="opensearch/opensearch")

    observed = await provider.observe(spec)
    result = await provider.apply(spec, observed)

    assert result.action == Action.FAILED
    assert result.error == ErrorKind.IMMUTABLE_FIELD_CONFLICT
    assert runner.calls("helm", "upgrade") == []


async def test_uninstall(runner: ValuesRecorder) -> None:
    """Test uninstalling a release."""
    runner.add(["helm", "list"], [RELEASE])
    runner.add(["helm", "get", "values"], {})
    provider = HelmReleaseProvider(runner, kube_context="prod")

    assert await provider.delete(release_spec())

    assert runner.calls("helm", "uninstall") == [
        [
            "helm",
            "uninstall",
            "elasticsearch",
            "--namespace",
            "es",
            "--wait",
            "--kube-context",
            "prod",
        ]
    ]


HEALTH_CHECK: dict[str, Any] = {
    "pod": "elasticsearch-master-0",
    "url": "https://localhost:9200/_cluster/health",
    "username": "elastic",
    "password": "s3cret",
}


async def test_health_check(runner: ValuesRecorder) -> None:
    """Test waiting for the cluster health reported from inside a pod."""
    runner.add(["helm", "list"], [RELEASE])
    runner.add(["helm", "get", "values"], {"replicas": 3})
    runner.add(
        ["kubectl", "exec"],
        CommandFailedError("curl: (7) Failed to connect"),
        {"cluster_name": "elasticsearch", "status": "red"},
        {"cluster_name": "elasticsearch", "status": "yellow"},
    )
    provider = HelmReleaseProvider(runner, kube_context="prod")
    spec = release_spec(healthCheck=HEALTH_CHECK)

    conditions = [(await provider.observe(spec)).ready_condition for _ in range(3)]

    assert conditions == [
        ReadyCondition.PENDING,
        ReadyCondition.PENDING,
        ReadyCondition.READY,
    ]
    assert runner.calls("kubectl")[0] == [
        "kubectl",
        "exec",
        "-i",
        "elasticsearch-master-0",
        "--namespace",
        "es",
        "--context",
        "prod",
        "--",
        "sh",
        "-c",
        'curl -sk -u "$(cat)" "$0"',
        "https://localhost:9200/_cluster/health",
    ]
    assert runner.stdin[-1] == "elastic:s3cret"
    for cmd in runner.commands:
        assert "s3cret" not in cmd.string


async def test_health_check_unreachable(runner: ValuesRecorder) -> None:
    """Test that a service that does not answer yet is pending."""
    runner.add(["helm", "list"], [RELEASE])
    runner.add(["kubectl", "exec"], CommandFailedError("curl: (7) Failed to connect"))
    provider = HelmReleaseProvider(runner)
    spec = release_spec(
        healthCheck={"pod": "es-0", "url": "http://localhost:9200", "expect": ["green"]}
    )

    observed = await provider.observe(spec)

    assert observed.ready_condition == ReadyCondition.PENDING
    assert runner.calls("kubectl", "exec")[0][-3:] == [
        "-c",
        'curl -sk "$0"',
        "http://localhost:9200",
    ]
    assert runner.stdin[-1] is None


async def test_health_check_invalid(runner: ValuesRecorder) -> None:
    """Test a health check without a pod."""
    runner.add(["helm", "list"], [RELEASE])
    provider = HelmReleaseProvider(runner)
    with pytest.raises(MissingConfigurationError, match="healthCheck"):
        await provider.observe(release_spec(healthCheck={"url": "http://x"}))


async def test_preflight_missing_helm(runner: ValuesRecorder) -> None:
    """Test that a missing helm binary is a configuration error."""
    runner.add(["helm", "version"], MissingConfigurationError("helm: not found"))
    provider = HelmReleaseProvider(runner)
    with pytest.raises(MissingConfigurationError, match="helm is not installed"):
        await provider.preflight()
    assert runner.calls("helm") == [["helm", "version", "--short"]]
