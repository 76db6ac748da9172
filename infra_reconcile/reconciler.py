"""Reconciler for infra-reconcile.

The reconciler walks the dependency graph of a plan and converges each
resource to its desired state:

- Observe the resource. If it exists and matches the desired parameters it is
  Skipped, otherwise it is created or updated.
- If the provider provisions the resource asynchronously, wait for it to
  report Ready before any dependent is applied. This also applies to existing
  resources that are not ready yet, so that a run may resume after a previous
  run was interrupted part way.
- When a resource fails, every resource depending on it transitively is
  recorded as DependencyFailed. Independent branches continue.

With `max_workers` of 1 resources are reconciled one at a time in plan order.
Otherwise every resource gets a task that waits for its dependencies to reach
a terminal state in the store and then competes for one of the worker slots.
"""

import asyncio
from contextlib import nullcontext
from dataclasses import dataclass
import logging
from typing import Any

from .context import Timer, cancel_event, trace_context
from .exceptions import (
    DependencyFailedError,
    ErrorKind,
    MissingConfigurationError,
    ProviderException,
    ResourceFailedError,
)
from .manifest import ObservedState, ResourceSpec
from .plan import Plan
from .providers import ProviderRegistry, ResourceProvider
from .report import Action, ReconcileResult, Report
from .store import InMemoryStore, SpecState, Store
from .task import TaskServiceImpl
from .values import expand_value_references, referenced_ids
from .wait import WaitOutcome

__all__ = ["Reconciler", "ReconcilerConfig"]

_LOGGER = logging.getLogger(__name__)


@dataclass
class ReconcilerConfig:
    """Configuration for the reconciler.

    Attributes:
        max_workers: Number of resources reconciled at the same time.
        preflight: Whether to check each provider's credentials before its
            first resource is observed.
    """

    max_workers: int = 1
    preflight: bool = True


class Reconciler:
    """Converges the resources of a plan using the registered providers.

    A reconciler is scoped to a single invocation; once cancelled it stays
    cancelled.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        config: ReconcilerConfig | None = None,
    ) -> None:
        """Initialize the reconciler."""
        self.registry = registry
        self.config = config or ReconcilerConfig()
        if self.config.max_workers < 1:
            raise MissingConfigurationError(
                f"max_workers must be at least 1: {self.config.max_workers}"
            )
        self.store: Store = InMemoryStore()
        self._cancel = asyncio.Event()
        self._preflight_lock = asyncio.Lock()
        self._preflight_errors: dict[str, ProviderException | None] = {}

    def cancel(self) -> None:
        """Request cancellation of the current run.

        Resources that have not started are recorded as Aborted and in flight
        readiness waits end at their next poll. Calls already issued to a
        provider are not rolled back.
        """
        if not self._cancel.is_set():
            _LOGGER.warning("Cancellation requested")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        """Return True if cancellation was requested."""
        return self._cancel.is_set()

    async def reconcile(self, plan: Plan) -> Report:
        """Converge every resource in the plan and return the report."""
        report = Report(plan.name, operation="deploy")
        self.store = InMemoryStore()
        for spec in plan:
            self.store.update_state(spec.id, SpecState.PENDING)

        _LOGGER.info(
            "Reconciling %d resources of plan %s (max_workers=%d)",
            len(plan),
            plan.name,
            self.config.max_workers,
        )
        token = cancel_event.set(self._cancel)
        try:
            with trace_context(f"Reconcile {plan.name}") as timer:
                if self.config.max_workers == 1:
                    for spec in plan:
                        await self._run_spec(spec, report, None)
                else:
                    await self._run_concurrent(plan, report)
        finally:
            cancel_event.reset(token)

        if self.cancelled:
            report.mark_cancelled()
        report.finalize(timer.elapsed)
        _LOGGER.info(
            "Plan %s finished with status %s in %.1fs",
            plan.name,
            report.status,
            report.duration,
        )
        return report

    async def _run_concurrent(self, plan: Plan, report: Report) -> None:
        tasks = TaskServiceImpl(self.config.max_workers)
        for spec in plan:
            tasks.create_task(self._run_spec(spec, report, tasks), name=str(spec))
        _LOGGER.debug(
            "Started %d tasks for plan %s", tasks.get_num_active_tasks(), plan.name
        )
        try:
            await tasks.block_till_done()
        except asyncio.CancelledError:
            _LOGGER.info("Reconcile of %s was cancelled", plan.name)
            await tasks.cancel_all()
            raise

    async def _run_spec(
        self, spec: ResourceSpec, report: Report, tasks: TaskServiceImpl | None
    ) -> None:
        """Wait for dependencies, then reconcile the resource in a worker slot."""
        try:
            await self._wait_for_dependencies(spec)
        except DependencyFailedError as err:
            if self.cancelled:
                self._abort(spec, report)
                return
            self.store.update_state(spec.id, SpecState.FAILED, str(err))
            report.add(
                ReconcileResult(
                    spec_id=spec.id,
                    action=Action.DEPENDENCY_FAILED,
                    error=err.kind,
                    message=str(err),
                    required_ready=spec.is_required_ready,
                )
            )
            return

        async with tasks.worker_slot() if tasks else nullcontext():
            if self.cancelled:
                self._abort(spec, report)
                return
            with trace_context(str(spec)) as timer:
                result = await self._reconcile_spec(spec, timer)

        if result.action == Action.ABORTED:
            self.store.update_state(spec.id, SpecState.ABORTED, result.message)
        elif result.succeeded:
            self.store.set_outputs(spec.id, result.outputs)
            self.store.update_state(spec.id, SpecState.DONE)
        else:
            self.store.update_state(spec.id, SpecState.FAILED, result.message)
        report.add(result)

    async def _wait_for_dependencies(self, spec: ResourceSpec) -> None:
        """Wait for every dependency to be Done, in declaration order."""
        if spec.depends_on:
            _LOGGER.debug("Resource %s waiting for %s", spec.id, spec.depends_on)
        for dep in spec.depends_on:
            try:
                await self.store.watch_done(dep)
            except ResourceFailedError as err:
                raise DependencyFailedError(spec.id, dep, err.message) from err

    def _abort(self, spec: ResourceSpec, report: Report) -> None:
        self.store.update_state(spec.id, SpecState.ABORTED)
        report.add(
            ReconcileResult(
                spec_id=spec.id,
                action=Action.ABORTED,
                message="Run was cancelled before the resource started",
                required_ready=spec.is_required_ready,
            )
        )

    async def _check_preflight(self, provider: ResourceProvider) -> None:
        """Run the provider preflight once per run, re-raising its failure."""
        if not self.config.preflight:
            return
        async with self._preflight_lock:
            if provider.name not in self._preflight_errors:
                _LOGGER.debug("Running preflight for provider %s", provider.name)
                try:
                    await provider.preflight()
                except ProviderException as err:
                    _LOGGER.error("Preflight of %s failed: %s", provider.name, err)
                    self._preflight_errors[provider.name] = err
                else:
                    self._preflight_errors[provider.name] = None
        if (error := self._preflight_errors[provider.name]) is not None:
            raise error

    async def _reconcile_spec(
        self, spec: ResourceSpec, timer: Timer
    ) -> ReconcileResult:
        """Reconcile one resource, converting every error into a result."""
        try:
            result = await self._converge(spec)
        except ProviderException as err:
            result = ReconcileResult(
                spec_id=spec.id,
                action=Action.FAILED,
                error=err.kind,
                message=str(err),
                required_ready=spec.is_required_ready,
            )
        except Exception as err:
            _LOGGER.exception("Unexpected error reconciling %s", spec)
            result = ReconcileResult(
                spec_id=spec.id,
                action=Action.FAILED,
                error=ErrorKind.INTERNAL,
                message=f"{type(err).__name__}: {err}",
                required_ready=spec.is_required_ready,
            )
        result.duration = timer.elapsed
        return result

    async def _converge(self, spec: ResourceSpec) -> ReconcileResult:
        provider = self.registry.resolve(spec)
        await self._check_preflight(provider)
        spec = expand_value_references(spec, self.store.get_outputs)

        self.store.update_state(spec.id, SpecState.OBSERVING)
        observed = await provider.observe(spec)
        if observed.exists and not provider.diff(spec, observed):
            self.store.update_state(spec.id, SpecState.SKIPPING)
        else:
            self.store.update_state(spec.id, SpecState.APPLYING)
        result = await provider.apply(spec, observed)
        if not result.succeeded:
            return result
        result.sensitive = sorted(provider.sensitive(spec))

        if not provider.is_asynchronous(spec) or (
            result.action == Action.SKIPPED and observed.ready
        ):
            if result.action != Action.SKIPPED:
                observed = await provider.observe(spec)
            if observed.ready:
                await provider.on_ready(spec, observed)
            result.outputs = self._outputs(observed)
            return result

        self.store.update_state(spec.id, SpecState.AWAITING_READY)
        wait = await provider.await_ready(spec, cancel=self._cancel)
        if wait.observed is not None:
            result.outputs = self._outputs(wait.observed)

        if wait.outcome == WaitOutcome.READY:
            if wait.observed is not None:
                await provider.on_ready(spec, wait.observed)
            return result
        if wait.outcome == WaitOutcome.CANCELLED:
            result.action = Action.ABORTED
            result.message = "Run was cancelled while waiting for readiness"
            return result
        if wait.outcome == WaitOutcome.FAILED:
            result.action = Action.FAILED
            result.error = ErrorKind.RESOURCE_FAILED
            result.message = f"{spec} reported a failed condition"
            return result

        result.error = ErrorKind.TIMED_OUT
        result.message = (
            f"{spec} not ready after {wait.elapsed:.0f}s "
            f"({wait.attempts} checks, last condition {wait.condition})"
        )
        if spec.is_required_ready:
            result.action = Action.FAILED
        else:
            result.warning = True
        return result

    @staticmethod
    def _outputs(observed: ObservedState) -> dict[str, Any]:
        return dict(observed.attributes) if observed.exists else {}

    async def cleanup(self, plan: Plan) -> Report:
        """Delete every resource in the plan, dependents first.

        Resources that are already absent are recorded as Absent. A failure to
        delete one resource is recorded and does not stop the teardown of the
        others.
        """
        report = Report(plan.name, operation="cleanup")
        _LOGGER.info("Cleaning up %d resources of plan %s", len(plan), plan.name)
        token = cancel_event.set(self._cancel)
        try:
            with trace_context(f"Cleanup {plan.name}") as timer:
                for spec in plan.teardown_order():
                    report.add(await self._cleanup_spec(plan, spec))
        finally:
            cancel_event.reset(token)

        if self.cancelled:
            report.mark_cancelled()
        report.finalize(timer.elapsed)
        return report

    async def _cleanup_spec(self, plan: Plan, spec: ResourceSpec) -> ReconcileResult:
        if self.cancelled:
            return ReconcileResult(
                spec_id=spec.id,
                action=Action.ABORTED,
                message="Run was cancelled before the resource started",
            )
        with trace_context(f"Delete {spec}") as timer:
            result = await self._delete_spec(plan, spec)
        result.duration = timer.elapsed
        return result

    async def _delete_spec(self, plan: Plan, spec: ResourceSpec) -> ReconcileResult:
        try:
            provider = self.registry.resolve(spec)
            await self._check_preflight(provider)
            spec = await self._expand_for_cleanup(plan, spec)
            deleted = await provider.delete(spec)
        except ProviderException as err:
            return ReconcileResult(
                spec_id=spec.id,
                action=Action.FAILED,
                error=err.kind,
                message=str(err),
            )
        except Exception as err:
            _LOGGER.exception("Unexpected error deleting %s", spec)
            return ReconcileResult(
                spec_id=spec.id,
                action=Action.FAILED,
                error=ErrorKind.INTERNAL,
                message=f"{type(err).__name__}: {err}",
            )
        return ReconcileResult(
            spec_id=spec.id, action=Action.DELETED if deleted else Action.ABSENT
        )

    async def _expand_for_cleanup(
        self, plan: Plan, spec: ResourceSpec
    ) -> ResourceSpec:
        """Resolve output references by observing the referenced dependencies.

        Dependencies are deleted after their dependents so they can still be
        observed. References to dependencies that are already gone are left
        unexpanded, since deletion normally only needs the resource's name.
        """
        outputs: dict[str, dict[str, Any]] = {}
        for dep_id in sorted(referenced_ids(spec.parameters)):
            dep = plan.get(dep_id)
            observed = await self.registry.resolve(dep).observe(dep)
            if observed.exists:
                outputs[dep_id] = dict(observed.attributes)
        try:
            return expand_value_references(spec, outputs.get)
        except MissingConfigurationError as err:
            _LOGGER.debug("Deleting %s with unresolved references: %s", spec, err)
            return spec
