"""Differ / planner: desired declarations + known state -> ordered plan.

Per instance the decision table is:

- not in state, declared           -> create
- in state, not declared           -> delete
- in state, declared, no diff      -> no-op
- diff without force-new attribute -> update
- diff touching a force-new attr   -> replace
- tainted (state or declaration)   -> replace, regardless of the diff
- delete/replace + prevent_destroy -> PreventDestroyError, nothing planned

Planning is pure: it never talks to a store or an adapter's CRUD methods
(only ``validate`` and ``schema``).
"""

from __future__ import annotations

from dataclasses import dataclass
from logging import getLogger
from typing import TYPE_CHECKING, Final, cast

from converge.domain.errors import ConfigError, PreventDestroyError
from converge.domain.model import (
    UNKNOWN,
    Diagnostic,
    InstanceStatus,
    ResourceInstanceState,
    Severity,
    evaluate,
)

from .diff import diff_attributes
from .graph import DependencyGraph, build_dependency_graph
from .plan import Action, Change, ChangeReason, Plan, StepKey

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

    from converge.domain.model import (
        Configuration,
        Reference,
        ResourceAddress,
        ResourceDeclaration,
        ResourceSchema,
        StateSnapshot,
    )
    from converge.domain.ports import ProviderRegistry

    from .graph import AddressGraph
    from .plan import StepGraph
    from .results import RefreshResult

log = getLogger(__name__)

# marks an omitted ``base_serial``; ``None`` means nothing is stored yet
_PRIOR_SERIAL: Final = object()


@dataclass(slots=True)
class Planner:
    providers: ProviderRegistry

    def plan(
        self,
        configuration: Configuration,
        prior: StateSnapshot,
        *,
        refresh: RefreshResult | None = None,
        destroy: bool = False,
        base_serial: int | None | object = _PRIOR_SERIAL,
    ) -> Plan:
        """Compute the plan converging ``prior`` (or its refreshed copy) to ``configuration``.

        ``base_serial`` is the serial of the stored snapshot the plan was made
        against (``None`` when nothing is stored yet); when omitted it is
        ``prior.serial``.
        """

        known = refresh.snapshot if refresh is not None else prior
        self._check_errored(prior, refresh)

        graph = build_dependency_graph(configuration.resources)
        declarations = {} if destroy else {decl.address: decl for decl in configuration.resources}
        diagnostics: list[Diagnostic] = []
        for declaration in declarations.values():
            diagnostics.extend(self._validate_lifecycle(declaration))

        changes: dict[tuple[ResourceAddress, str | None], Change] = {}
        unchanged: list[ResourceAddress] = []
        state_updates: dict[ResourceAddress, ResourceInstanceState | None] = {}
        protected: list[ResourceAddress] = []
        planned: dict[ResourceAddress, dict[str, object]] = {}
        create_before_destroy = _effective_create_before_destroy(graph, declarations.values())
        disappeared = set(refresh.disappeared) if refresh is not None else set[object]()

        for address in graph.topological_order():
            declaration = declarations.get(address)
            if declaration is None:
                continue
            change, values, found = self._plan_declared(
                declaration,
                known.get(address),
                dependencies=graph.dependencies_of(address),
                create_before_destroy=address in create_before_destroy,
                resolve=self._resolver(planned),
            )
            diagnostics.extend(found)
            planned[address] = values
            if address in disappeared:
                state_updates[address] = None
                change.reasons = change.reasons | {ChangeReason.DISAPPEARED}
            if change.action is Action.NOOP:
                unchanged.append(address)
                update = self._metadata_update(known.get(address), change)
                if update is not None:
                    state_updates[address] = update
                continue
            if change.action is Action.REPLACE and declaration.lifecycle.prevent_destroy:
                protected.append(address)
            changes[change.identity] = change

        for address, instance in known.resources.items():
            if address in declarations:
                continue
            if instance.prevent_destroy:
                protected.append(address)
            reason = ChangeReason.DESTROY if destroy else ChangeReason.ORPHANED
            changes[(address, None)] = _delete_change(instance, reason)
        for address in prior.resources:
            if address not in known.resources and address not in declarations:
                state_updates[address] = None
        for instance in known.deposed.values():
            change = _delete_change(instance, ChangeReason.DEPOSED)
            changes[change.identity] = change

        if protected:
            raise PreventDestroyError(sorted(set(protected), key=lambda item: item.sort_key()))
        errors = [item for item in diagnostics if item.severity is Severity.ERROR]
        for warning in (item for item in diagnostics if item.severity is Severity.WARNING):
            log.warning("%s", warning)
        if errors:
            raise ConfigError("Invalid configuration", diagnostics=errors)

        step_graph = _build_step_graph(list(changes.values()), graph, known)
        steps = step_graph.topological_order()
        position = {step: index for index, step in enumerate(steps)}
        ordered = sorted(changes.values(), key=lambda change: position[change.steps[0]])

        stored_serial = (
            prior.serial if base_serial is _PRIOR_SERIAL else cast("int | None", base_serial)
        )
        plan = Plan(
            lineage=prior.lineage,
            base_serial=stored_serial,
            changes=ordered,
            graph=step_graph,
            steps=steps,
            unchanged=tuple(unchanged),
            state_updates=state_updates,
            outputs={} if destroy else dict(configuration.outputs),
            destroy=destroy,
            refreshed=refresh is not None,
        )
        log.info(
            "Plan: %s",
            ", ".join(f"{action}={count}" for action, count in plan.summary().items()),
        )
        return plan

    # ------------------------------------------------------------------
    def _plan_declared(
        self,
        declaration: ResourceDeclaration,
        prior: ResourceInstanceState | None,
        *,
        dependencies: tuple[ResourceAddress, ...],
        create_before_destroy: bool,
        resolve: Callable[[Reference], object],
    ) -> tuple[Change, dict[str, object], list[Diagnostic]]:
        address = declaration.address
        adapter = self.providers.adapter_for(address.type)
        schema = adapter.schema
        desired = cast("dict[str, object]", evaluate(declaration.attributes, resolve))
        diagnostics = [
            _located(diagnostic, address) for diagnostic in schema.validate_config(desired)
        ]
        diagnostics.extend(
            _located(diagnostic, address) for diagnostic in adapter.validate(desired)
        )

        change = Change(
            address=address,
            action=Action.CREATE,
            provider=self.providers.provider_name(address.type),
            config=dict(declaration.attributes),
            create_before_destroy=create_before_destroy,
            prevent_destroy=declaration.lifecycle.prevent_destroy,
            dependencies=dependencies,
            schema_version=schema.version,
        )
        if prior is None:
            change.after = _with_unknown_computed(desired, schema)
            return change, change.after, diagnostics

        ignored = declaration.lifecycle.ignore_changes
        effective = {name: value for name, value in desired.items() if name not in ignored}
        config = {
            name: value for name, value in declaration.attributes.items() if name not in ignored
        }
        for name in ignored:
            if name in prior.attributes:
                effective[name] = prior.attributes[name]
                config[name] = prior.attributes[name]

        attribute_changes = diff_attributes(
            prior.attributes, effective, schema, ignore_changes=ignored
        )
        change.before = dict(prior.attributes)
        change.config = config
        change.attribute_changes = tuple(attribute_changes)
        forced = any(item.forces_replacement for item in attribute_changes)
        tainted = declaration.tainted or prior.tainted

        reasons: set[ChangeReason] = set()
        if forced:
            reasons.add(ChangeReason.FORCES_REPLACEMENT)
        if tainted:
            reasons.add(ChangeReason.TAINTED)
        change.reasons = frozenset(reasons)

        if forced or tainted:
            change.action = Action.REPLACE
            change.after = _with_unknown_computed(effective, schema)
        elif attribute_changes:
            change.action = Action.UPDATE
            retained = {
                name: value
                for name, value in prior.attributes.items()
                if schema.is_computed(name) and name not in effective
            }
            change.after = {**retained, **effective}
        else:
            change.action = Action.NOOP
            change.after = dict(prior.attributes)
        return change, change.after, diagnostics

    def _resolver(
        self, planned: Mapping[ResourceAddress, dict[str, object]]
    ) -> Callable[[Reference], object]:
        def resolve(reference: Reference) -> object:
            values = planned[reference.address]
            if reference.attribute in values:
                return values[reference.attribute]
            schema = self.providers.schema_for(reference.address.type)
            if schema.attribute(reference.attribute) is None:
                raise ConfigError(
                    f"Reference {reference}: {reference.address.type} has no attribute "
                    f"{reference.attribute!r}",
                    addresses=[reference.address],
                )
            return None

        return resolve

    def _validate_lifecycle(self, declaration: ResourceDeclaration) -> list[Diagnostic]:
        schema = self.providers.schema_for(declaration.address.type)
        diagnostics: list[Diagnostic] = []
        for name in sorted(declaration.lifecycle.ignore_changes):
            attribute = schema.attribute(name)
            if attribute is None:
                summary = f"{declaration.address}: ignore_changes names unknown attribute"
            elif attribute.computed_only:
                summary = f"{declaration.address}: ignore_changes names a computed-only attribute"
            else:
                continue
            diagnostics.append(Diagnostic(severity=Severity.ERROR, summary=summary, attribute=name))
        return diagnostics

    @staticmethod
    def _check_errored(prior: StateSnapshot, refresh: RefreshResult | None) -> None:
        refreshed = refresh.read if refresh is not None else frozenset[object]()
        stuck = [
            address
            for address, instance in prior.resources.items()
            if instance.errored and address not in refreshed
        ]
        if stuck:
            rendered = ", ".join(str(address) for address in stuck)
            raise ConfigError(
                f"Errored instances must be refreshed before planning: {rendered}",
                addresses=stuck,
            )

    @staticmethod
    def _metadata_update(
        instance: ResourceInstanceState | None, change: Change
    ) -> ResourceInstanceState | None:
        if instance is None:
            return None
        recorded = (
            instance.dependencies,
            instance.prevent_destroy,
            instance.create_before_destroy,
            instance.provider,
            instance.status,
        )
        desired = (
            change.dependencies,
            change.prevent_destroy,
            change.create_before_destroy,
            change.provider,
            InstanceStatus.MANAGED,
        )
        if recorded == desired:
            return None
        return instance.evolve(
            dependencies=change.dependencies,
            prevent_destroy=change.prevent_destroy,
            create_before_destroy=change.create_before_destroy,
            provider=change.provider,
            status=InstanceStatus.MANAGED,
        )


def _located(diagnostic: Diagnostic, address: ResourceAddress) -> Diagnostic:
    return Diagnostic(
        severity=diagnostic.severity,
        summary=f"{address}: {diagnostic.summary}",
        attribute=diagnostic.attribute,
    )


def _with_unknown_computed(values: dict[str, object], schema: ResourceSchema) -> dict[str, object]:
    planned = dict(values)
    for name, attribute in schema.attributes.items():
        if attribute.computed and name not in planned:
            planned[name] = UNKNOWN
    return planned


def _delete_change(instance: ResourceInstanceState, reason: ChangeReason) -> Change:
    return Change(
        address=instance.address,
        action=Action.DELETE,
        provider=instance.provider,
        before=dict(instance.attributes),
        reasons=frozenset({reason}),
        create_before_destroy=instance.create_before_destroy,
        prevent_destroy=instance.prevent_destroy,
        dependencies=instance.dependencies,
        schema_version=instance.schema_version,
        deposed_key=instance.deposed_key,
    )


def _effective_create_before_destroy(
    graph: AddressGraph, declarations: Iterable[ResourceDeclaration]
) -> set[ResourceAddress]:
    """``create_before_destroy`` propagates to every transitive dependency."""

    effective: set[ResourceAddress] = set()
    for declaration in declarations:
        if declaration.lifecycle.create_before_destroy:
            effective.add(declaration.address)
            effective.update(graph.transitive_dependencies(declaration.address))
    return effective


def _build_step_graph(
    changes: list[Change],
    graph: AddressGraph,
    known: StateSnapshot,
) -> StepGraph:
    """Order adapter calls.

    - forward (create/update) steps follow the declaration graph
    - delete steps run dependents first, using recorded and declared edges
    - a replacement orders its own two steps per ``create_before_destroy``
    - an object that is going away (orphan, or the old half of a
      create-before-destroy replacement) is deleted only after the dependents
      that remain have been moved off it
    """

    step_graph: StepGraph = DependencyGraph()
    current = {change.address: change for change in changes if change.deposed_key is None}
    for change in changes:
        steps = change.steps
        for step in steps:
            step_graph.add_node(step)
        if len(steps) == 2:
            step_graph.add_edge(steps[0], steps[1])

    def forward(address: ResourceAddress) -> StepKey | None:
        change = current.get(address)
        return change.forward_step if change is not None else None

    def deletion(address: ResourceAddress) -> StepKey | None:
        change = current.get(address)
        return change.delete_step if change is not None else None

    for dependent in graph.nodes:
        dependent_step = forward(dependent)
        if dependent_step is None:
            continue
        for dependency in _nearest(dependent, graph.dependencies_of, forward):
            dependency_step = forward(dependency)
            if dependency_step is not None:
                step_graph.add_edge(dependency_step, dependent_step)

    destroy_edges: DependencyGraph[ResourceAddress] = DependencyGraph()
    for dependency, dependent in graph.edges:
        destroy_edges.add_edge(dependency, dependent)
    for instance in known.resources.values():
        destroy_edges.add_node(instance.address)
        for dependency in instance.dependencies:
            destroy_edges.add_edge(dependency, instance.address)

    for change in changes:
        delete_step = change.delete_step
        if delete_step is None:
            continue
        sources = (
            change.dependencies
            if change.deposed_key is not None
            else destroy_edges.dependencies_of(change.address)
        )
        for dependency in _expand(sources, destroy_edges.dependencies_of, deletion):
            target = deletion(dependency)
            if target is not None and target != delete_step:
                step_graph.add_edge(delete_step, target)

        goes_away = change.action is Action.DELETE or change.create_before_destroy
        if not goes_away or change.deposed_key is not None:
            continue
        for dependent in destroy_edges.dependents_of(change.address):
            dependent_step = forward(dependent)
            if dependent_step is not None and dependent != change.address:
                step_graph.add_edge(dependent_step, delete_step)

    step_graph.validate()
    return step_graph


def _nearest(
    start: ResourceAddress,
    neighbours: Callable[[ResourceAddress], tuple[ResourceAddress, ...]],
    has_step: Callable[[ResourceAddress], StepKey | None],
) -> list[ResourceAddress]:
    """Closest neighbours of ``start`` owning a step, walking through step-less ones."""

    return _expand(neighbours(start), neighbours, has_step)


def _expand(
    seeds: Iterable[ResourceAddress],
    neighbours: Callable[[ResourceAddress], tuple[ResourceAddress, ...]],
    has_step: Callable[[ResourceAddress], StepKey | None],
) -> list[ResourceAddress]:
    found: list[ResourceAddress] = []
    seen: set[ResourceAddress] = set()
    pending = list(seeds)
    while pending:
        address = pending.pop()
        if address in seen:
            continue
        seen.add(address)
        if has_step(address) is not None:
            found.append(address)
        else:
            pending.extend(neighbours(address))
    return found
