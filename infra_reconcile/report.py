"""The record of what a run did to each resource.

The `Report` is created empty when a run starts, receives exactly one
`ReconcileResult` per resource, and is finalized when the run completes or is
aborted. It is the only structure written by concurrent workers, so appends
are serialized with a lock.

The report can be rendered as a structured document for pipelines (see
`Report.to_dict`) or as a human readable summary of the deployment.
"""

from collections import Counter
from dataclasses import dataclass, field
from enum import StrEnum
import logging
import threading
from collections.abc import Mapping
from typing import Any

from mashumaro import field_options

from .exceptions import ErrorKind
from .manifest import BaseManifest
from .values import expand_template

__all__ = [
    "Action",
    "RunStatus",
    "ReconcileResult",
    "Report",
    "SummaryLine",
    "mask",
    "HINTS",
]

_LOGGER = logging.getLogger(__name__)

MASK = "****"


class Action(StrEnum):
    """The action taken for a resource."""

    SKIPPED = "Skipped"
    CREATED = "Created"
    UPDATED = "Updated"
    FAILED = "Failed"
    DEPENDENCY_FAILED = "DependencyFailed"
    ABORTED = "Aborted"
    DELETED = "Deleted"
    ABSENT = "Absent"


SUCCESS_ACTIONS = frozenset(
    {Action.SKIPPED, Action.CREATED, Action.UPDATED, Action.DELETED, Action.ABSENT}
)
FAILURE_ACTIONS = frozenset({Action.FAILED, Action.DEPENDENCY_FAILED})


class RunStatus(StrEnum):
    """Overall status of a run."""

    SUCCESS = "Success"
    PARTIAL_FAILURE = "PartialFailure"
    FAILED = "Failed"
    ABORTED = "Aborted"


HINTS: dict[ErrorKind, str] = {
    ErrorKind.NOT_AUTHENTICATED: (
        "Configure credentials for the provider (e.g. 'aws configure' or "
        "'az login') and re-run."
    ),
    ErrorKind.MISSING_CONFIGURATION: (
        "Set the missing parameter or variable in the plan or environment."
    ),
    ErrorKind.RESOURCE_CONFLICT: (
        "A resource with the same name exists but is incompatible; rename it "
        "in the plan or remove the existing resource."
    ),
    ErrorKind.IMMUTABLE_FIELD_CONFLICT: (
        "The changed parameter cannot be updated in place; revert it or delete "
        "the resource so it can be recreated."
    ),
    ErrorKind.TIMED_OUT: (
        "The resource may still be provisioning; check its status and re-run "
        "once it is ready, or raise the wait timeout."
    ),
    ErrorKind.PROVIDER_UNAVAILABLE: (
        "The provider API could not be reached after retries; check "
        "connectivity and re-run."
    ),
    ErrorKind.DEPENDENCY_FAILED: "Fix the failed dependency and re-run.",
    ErrorKind.RESOURCE_FAILED: (
        "The resource reported a failed condition; inspect it with the "
        "provider tooling (e.g. 'kubectl describe')."
    ),
    ErrorKind.COMMAND_FAILED: "Inspect the command output in the error message.",
    ErrorKind.INTERNAL: "Re-run with --log-level DEBUG and report the traceback.",
}


def mask(value: Any) -> str:
    """Return a masked rendering of a sensitive value."""
    text = str(value)
    if len(text) <= 8:
        return MASK
    return f"{text[:2]}{MASK}"


@dataclass
class ReconcileResult(BaseManifest):
    """The outcome of reconciling or deleting one resource."""

    spec_id: str = field(metadata=field_options(alias="specId"))
    """The id of the resource."""

    action: Action
    """The action taken."""

    error: ErrorKind | None = None
    """The kind of error, for failures and warnings."""

    duration: float = 0.0
    """Wall clock seconds spent on the resource."""

    message: str | None = None
    """Details of the error or warning."""

    warning: bool = False
    """True if the resource succeeded with a non fatal problem."""

    required_ready: bool = field(
        metadata=field_options(alias="requiredReady"), default=False
    )
    """Whether a failure of this resource fails the whole run."""

    outputs: dict[str, Any] = field(default_factory=dict)
    """Attributes observed on the resource, available to dependents."""

    sensitive: list[str] = field(
        default_factory=list, metadata={"serialize": "omit"}
    )
    """Names of outputs that must be masked when rendered."""

    @property
    def succeeded(self) -> bool:
        """Return True if the action is not a failure."""
        return self.action in SUCCESS_ACTIONS

    @property
    def hint(self) -> str | None:
        """Return a corrective hint for the error, if any."""
        return HINTS.get(self.error) if self.error else None

    def masked_outputs(self, show_secrets: bool = False) -> dict[str, Any]:
        """Return outputs with sensitive values masked."""
        if show_secrets:
            return dict(self.outputs)
        return {
            key: mask(value) if key in self.sensitive else value
            for key, value in self.outputs.items()
        }


@dataclass
class SummaryLine:
    """One labelled line of the human readable deployment summary."""

    label: str
    value: str
    sensitive: bool = False


class Report:
    """Append-only record of the results of one run."""

    def __init__(self, name: str, operation: str = "deploy") -> None:
        """Initialize an empty report for the named plan."""
        self._name = name
        self._operation = operation
        self._results: dict[str, ReconcileResult] = {}
        self._lock = threading.Lock()
        self._cancelled = False
        self._duration: float | None = None

    @property
    def name(self) -> str:
        """Return the name of the plan."""
        return self._name

    @property
    def operation(self) -> str:
        """Return the operation that produced the report."""
        return self._operation

    def add(self, result: ReconcileResult) -> None:
        """Record the result for a resource.

        Raises:
            ValueError: If a result was already recorded for the resource or
                the report was finalized.
        """
        with self._lock:
            if self._duration is not None:
                raise ValueError("Report is already finalized")
            if result.spec_id in self._results:
                raise ValueError(f"Result for {result.spec_id} already recorded")
            self._results[result.spec_id] = result
        healthy = result.succeeded and not result.warning
        (_LOGGER.info if healthy else _LOGGER.warning)(
            "%s: %s%s",
            result.spec_id,
            result.action,
            f" ({result.error}: {result.message})" if result.error else "",
        )

    def __contains__(self, spec_id: object) -> bool:
        with self._lock:
            return spec_id in self._results

    def get(self, spec_id: str) -> ReconcileResult | None:
        """Return the result recorded for a resource."""
        with self._lock:
            return self._results.get(spec_id)

    @property
    def results(self) -> list[ReconcileResult]:
        """Return the results in the order they were recorded."""
        with self._lock:
            return list(self._results.values())

    def mark_cancelled(self) -> None:
        """Record that the run was cancelled before every resource started."""
        self._cancelled = True

    def finalize(self, duration: float) -> None:
        """Close the report with the total wall clock duration of the run."""
        with self._lock:
            self._duration = duration

    @property
    def finalized(self) -> bool:
        """Return True once the run has ended."""
        return self._duration is not None

    @property
    def duration(self) -> float:
        """Return the total wall clock duration of the run."""
        return self._duration or 0.0

    @property
    def counts(self) -> dict[str, int]:
        """Return the number of resources per action."""
        counter = Counter(result.action for result in self.results)
        return {str(action): counter[action] for action in Action if counter[action]}

    @property
    def failures(self) -> list[ReconcileResult]:
        """Return results for resources that failed or were blocked."""
        return [r for r in self.results if r.action in FAILURE_ACTIONS]

    @property
    def warnings(self) -> list[ReconcileResult]:
        """Return results that succeeded with a warning."""
        return [r for r in self.results if r.warning]

    @property
    def status(self) -> RunStatus:
        """Return the overall status of the run."""
        results = self.results
        if self._cancelled or any(r.action == Action.ABORTED for r in results):
            return RunStatus.ABORTED
        failures = [r for r in results if r.action in FAILURE_ACTIONS]
        if failures:
            if any(r.required_ready for r in failures) or len(failures) == len(results):
                return RunStatus.FAILED
            return RunStatus.PARTIAL_FAILURE
        if any(r.warning for r in results):
            return RunStatus.PARTIAL_FAILURE
        return RunStatus.SUCCESS

    @property
    def exit_code(self) -> int:
        """Return the process exit code for the run."""
        return 1 if self.status in (RunStatus.FAILED, RunStatus.ABORTED) else 0

    def outputs(self, spec_id: str) -> dict[str, Any] | None:
        """Return the unmasked outputs of a resource."""
        if (result := self.get(spec_id)) is None:
            return None
        return result.outputs

    def summary(
        self, templates: Mapping[str, str], show_secrets: bool = False
    ) -> list[SummaryLine]:
        """Render summary lines from templates referencing resource outputs."""

        def is_sensitive(spec_id: str, attribute: str) -> bool:
            result = self.get(spec_id)
            return result is not None and attribute in result.sensitive

        lines = []
        for label, template in templates.items():
            value, sensitive = expand_template(template, self.outputs, is_sensitive)
            if sensitive and not show_secrets:
                value = mask(value)
            lines.append(SummaryLine(label=label, value=value, sensitive=sensitive))
        return lines

    def to_dict(self, show_secrets: bool = False) -> dict[str, Any]:
        """Return the report as a structured, serializable document."""
        results = []
        for result in self.results:
            data = result.to_dict()
            data["outputs"] = result.masked_outputs(show_secrets)
            if not data["outputs"]:
                del data["outputs"]
            if hint := result.hint:
                data["hint"] = hint
            results.append(data)
        return {
            "name": self._name,
            "operation": self._operation,
            "status": str(self.status),
            "total": len(results),
            "counts": self.counts,
            "duration": round(self.duration, 3),
            "failures": [
                {
                    "specId": r.spec_id,
                    "action": str(r.action),
                    "error": str(r.error) if r.error else None,
                    "hint": r.hint,
                }
                for r in self.failures
            ],
            "warnings": [
                {"specId": r.spec_id, "error": str(r.error), "hint": r.hint}
                for r in self.warnings
            ],
            "results": results,
        }
