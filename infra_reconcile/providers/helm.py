"""Provider for releases installed with `helm`.

A release is identified by its name and namespace. The chart, its version
and the user supplied values are compared with the deployed release:

```yaml
- id: ingress-controller
  kind: Release
  dependsOn: [namespace]
  parameters:
    name: nginx-ingress
    namespace: elasticsearch
    chart: ingress-nginx/ingress-nginx
    repository: https://kubernetes.github.io/ingress-nginx
    version: 4.10.0
    values:
      controller:
        replicaCount: 2
    readySelector: app.kubernetes.io/name=ingress-nginx
```

Values are written to a private temporary file rather than passed with
`--set` since they may contain credentials.
"""

import logging
from pathlib import Path
import tempfile
from typing import Any

import aiofiles
import yaml

from infra_reconcile import command
from infra_reconcile.exceptions import (
    CommandFailedError,
    MissingConfigurationError,
    ObjectNotFoundError,
)
from infra_reconcile.manifest import ObservedState, ReadyCondition, ResourceSpec
from infra_reconcile.wait import WaitPolicy

from .base import RetryPolicy
from .cli import CommandProvider

__all__ = ["HelmReleaseProvider"]

_LOGGER = logging.getLogger(__name__)


HELM_BIN = "helm"
KUBECTL_BIN = "kubectl"

# Helm release status values
STATUS_DEPLOYED = "deployed"
STATUS_FAILED = "failed"

# Elasticsearch cluster health accepted as ready when no expectation is set
HEALTHY_STATUSES = ("green", "yellow")

_INSTALL_TIMEOUT = 900.0


def _chart_version(chart: str, chart_ref: str) -> str | None:
    """Return the version from a `helm list` chart column like `name-1.2.3`."""
    chart_name = chart_ref.rsplit("/", 1)[-1]
    if chart.startswith(f"{chart_name}-"):
        return chart[len(chart_name) + 1 :]
    return None


def _pods_ready(pods: dict[str, Any]) -> bool:
    """Return True if there is at least one pod and every pod is Ready."""
    items = pods.get("items") or []
    if not items:
        return False
    for pod in items:
        conditions = (pod.get("status") or {}).get("conditions") or []
        if not any(
            c.get("type") == "Ready" and c.get("status") == "True" for c in conditions
        ):
            return False
    return True


class HelmReleaseProvider(CommandProvider):
    """Manages a helm release.

    The release is ready once helm reports it deployed and, when
    `readySelector` is set, every pod matching the label selector in the
    release namespace is Ready.

    With `healthCheck` the release must also report healthy from inside a
    pod, for example the `_cluster/health` endpoint of Elasticsearch:

    ```yaml
    healthCheck:
      pod: elasticsearch-master-0
      url: https://localhost:9200/_cluster/health
      username: elastic
      password: $(es-credentials.password)
      field: status
      expect: [green, yellow]
    ```
    """

    name = "helm"
    tracked_parameters = frozenset({"name", "namespace", "chart", "version", "values"})
    immutable_parameters = frozenset({"name", "namespace", "chart"})
    sensitive_attributes = frozenset({"values"})
    asynchronous = True
    default_wait_policy = WaitPolicy(poll_interval=10.0, timeout=600.0)
    version_args = [HELM_BIN, "version", "--short"]

    def __init__(
        self,
        runner: command.CommandRunner | None = None,
        retry_policy: RetryPolicy | None = None,
        kube_context: str | None = None,
    ) -> None:
        """Initialize the provider."""
        super().__init__(runner, retry_policy)
        self._kube_context = kube_context
        self._repos_added: set[str] = set()

    def _helm(self, *args: str) -> list[str]:
        cmd = [HELM_BIN, *args]
        if self._kube_context:
            cmd.extend(["--kube-context", self._kube_context])
        return cmd

    async def _observe(self, spec: ResourceSpec) -> ObservedState:
        name = spec.require("name")
        namespace = spec.require("namespace")
        releases = await self._run_json(
            self._helm(
                "list",
                "--namespace",
                namespace,
                "--filter",
                f"^{name}$",
                "--all",
                "--output",
                "json",
            )
        )
        release = next(
            (r for r in releases or [] if r.get("name") == name),
            None,
        )
        if release is None:
            return ObservedState.absent()

        chart_ref = spec.parameters.get("chart", "")
        deployed_chart = release.get("chart", "")
        attributes: dict[str, Any] = {
            "name": name,
            "namespace": namespace,
            "revision": release.get("revision"),
            "status": release.get("status"),
            "appVersion": release.get("app_version"),
            "version": _chart_version(deployed_chart, chart_ref),
            # helm only reports the chart name, so keep the reference if it matches
            "chart": (
                chart_ref
                if _chart_version(deployed_chart, chart_ref) is not None
                else deployed_chart
            ),
        }
        values = await self._run_json(
            self._helm(
                "get", "values", name, "--namespace", namespace, "--output", "json"
            )
        )
        attributes["values"] = values or {}
        return ObservedState(
            exists=True,
            attributes=attributes,
            ready_condition=await self._ready_condition(spec, release),
        )

    async def _ready_condition(
        self, spec: ResourceSpec, release: dict[str, Any]
    ) -> ReadyCondition:
        status = release.get("status")
        if status == STATUS_FAILED:
            return ReadyCondition.FAILED
        if status != STATUS_DEPLOYED:
            return ReadyCondition.PENDING
        namespace = spec.parameters["namespace"]
        if selector := spec.parameters.get("readySelector"):
            pods = await self._run_json(
                self._kubectl(
                    "get",
                    "pods",
                    "--selector",
                    selector,
                    "--namespace",
                    namespace,
                    "-o",
                    "json",
                )
            )
            if not _pods_ready(pods or {}):
                return ReadyCondition.PENDING
        if check := spec.parameters.get("healthCheck"):
            return await self._health_condition(spec.id, namespace, check)
        return ReadyCondition.READY

    async def _health_condition(
        self, spec_id: str, namespace: str, check: dict[str, Any]
    ) -> ReadyCondition:
        """Query the health endpoint of the service from inside one of its pods.

        Credentials are passed on stdin to `curl` in the pod so that they are
        not part of any command line.
        """
        try:
            pod = check["pod"]
            url = check["url"]
        except (KeyError, TypeError) as err:
            raise MissingConfigurationError(
                f"Resource {spec_id} healthCheck requires 'pod' and 'url'"
            ) from err
        args = ["exec", "-i", pod, "--namespace", namespace]
        if container := check.get("container"):
            args.extend(["--container", container])
        script = 'curl -sk "$0"'
        stdin = None
        if username := check.get("username"):
            script = 'curl -sk -u "$(cat)" "$0"'
            stdin = f"{username}:{check.get('password', '')}"
        try:
            health = await self._run_json(
                self._kubectl(*args) + ["--", "sh", "-c", script, url], stdin=stdin
            )
        except (CommandFailedError, ObjectNotFoundError) as err:
            _LOGGER.debug("Health check of %s failed: %s", spec_id, err)
            return ReadyCondition.PENDING
        field = check.get("field", "status")
        expect = [str(value) for value in check.get("expect", HEALTHY_STATUSES)]
        value = health.get(field) if isinstance(health, dict) else None
        _LOGGER.info("Health of %s: %s=%s", spec_id, field, value)
        if str(value) in expect:
            return ReadyCondition.READY
        return ReadyCondition.PENDING

    def _kubectl(self, *args: str) -> list[str]:
        cmd = [KUBECTL_BIN, *args]
        if self._kube_context:
            cmd.extend(["--context", self._kube_context])
        return cmd

    async def _add_repo(self, spec: ResourceSpec) -> None:
        """Add the chart repository, once per run."""
        if not (url := spec.parameters.get("repository")):
            return
        repo_name = spec.require("chart").split("/", 1)[0]
        if repo_name in self._repos_added:
            return
        _LOGGER.info("Adding helm repository %s (%s)", repo_name, url)
        await self._run(self._helm("repo", "add", repo_name, url, "--force-update"))
        self._repos_added.add(repo_name)

    async def _install(self, spec: ResourceSpec, verb: str) -> None:
        await self._add_repo(spec)
        args = [
            verb,
            spec.require("name"),
            spec.require("chart"),
            "--namespace",
            spec.require("namespace"),
        ]
        if version := spec.parameters.get("version"):
            args.extend(["--version", str(version)])
        if spec.parameters.get("createNamespace"):
            args.append("--create-namespace")
        with tempfile.TemporaryDirectory(prefix="infra-reconcile-helm-") as tmp_dir:
            if values := spec.parameters.get("values"):
                values_path = Path(tmp_dir) / "values.yaml"
                async with aiofiles.open(values_path, mode="w") as values_file:
                    await values_file.write(yaml.dump(values, sort_keys=False))
                args.extend(["--values", str(values_path)])
            await self._run(self._helm(*args), timeout=_INSTALL_TIMEOUT)

    async def _create(self, spec: ResourceSpec) -> None:
        await self._install(spec, "install")

    async def _update(
        self, spec: ResourceSpec, observed: ObservedState, changes: list[str]
    ) -> None:
        _LOGGER.info("Upgrading release %s (%s changed)", spec.id, ", ".join(changes))
        await self._install(spec, "upgrade")

    async def _delete(self, spec: ResourceSpec) -> None:
        await self._run(
            self._helm(
                "uninstall",
                spec.require("name"),
                "--namespace",
                spec.require("namespace"),
                "--wait",
            ),
            timeout=_INSTALL_TIMEOUT,
        )
