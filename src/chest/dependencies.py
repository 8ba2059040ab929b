#!/usr/bin/env python3

"""Stop and start ordering of interrelated containers."""

from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from yaml import YAMLError

from chest.data_structures import DependencyNode
from chest.errors import CyclicDependencyError
from chest.logger import logger
from chest.utils import load_yaml_file

DEPENDS_ON_LABEL = "com.docker.compose.depends_on"
SERVICE_LABEL = "com.docker.compose.service"


def parse_depends_on(label: Optional[str]) -> Set[str]:
    """Returns the service names of a 'service:condition:required,...' label."""
    if not label:
        return set()

    return {part.split(":")[0].strip() for part in label.split(",") if part.split(":")[0].strip()}


def link_targets(links: Optional[Iterable[str]]) -> Set[str]:
    """Returns the container names of legacy links, given as '/target:/container/alias' or 'target:alias'."""
    targets: Set[str] = set()

    for link in links or []:
        target = link.split(":")[0].strip().lstrip("/")
        if target:
            targets.add(target)

    return targets


def compose_depends_on(config_files: Sequence[Path]) -> Dict[str, Set[str]]:
    """Reads 'depends_on' from compose definition files.

    Used for containers created by compose versions which did not set the depends_on label yet. Unreadable files are
    skipped.
    """
    needs: Dict[str, Set[str]] = {}

    for file in config_files:
        try:
            content: Any = load_yaml_file(Path(file))
        except (OSError, ValueError, YAMLError) as error:
            logger.debug(f"Unable to read compose file '{file}': {error}")
            continue

        services = content.get("services") if isinstance(content, dict) else None
        if not isinstance(services, dict):
            logger.debug(f"Compose file '{file}' has no services mapping.")
            continue

        for service, attributes in services.items():
            depends_on = attributes.get("depends_on") if isinstance(attributes, dict) else None
            if not isinstance(depends_on, (list, dict)):
                depends_on = []
            needs.setdefault(service, set()).update(str(name) for name in depends_on)

    return needs


def build_node(
    id: str,
    name: str,
    labels: Mapping[str, str],
    running: bool,
    links: Optional[Iterable[str]] = None,
    extra_needs: Iterable[str] = (),
) -> DependencyNode:
    provides = {name}
    if labels.get(SERVICE_LABEL):
        provides.add(labels[SERVICE_LABEL])

    needs = parse_depends_on(labels.get(DEPENDS_ON_LABEL)) | link_targets(links) | set(extra_needs)

    return DependencyNode(id=id, name=name, provides=provides, needs=needs - provides, was_running=running)


class DependencyResolver:
    """Orders the containers of one group so that dependents stop before the services they need.

    The stop order is computed by walking every node's needs and moving each providing node to the end of an insertion
    ordered working set, followed by everything that provider needs. Deep dependencies thus end up behind every node
    needing them, and every node's needs become their transitive closure. Both are computed once per node.
    The start order is the exact reverse of the stop order.

    Cycles are detected up front. Members of a cycle have no correct order: the resolver then falls back to the
    declaration order with a warning, or raises CyclicDependencyError in strict mode.
    """

    def __init__(self, nodes: Sequence[DependencyNode], strict: bool = False) -> None:
        self.nodes = list(nodes)
        self.strict = strict
        self.providers: Dict[str, DependencyNode] = {}

        for node in self.nodes:
            for name in node.provides:
                self.providers.setdefault(name, node)

        self._stop_order: Optional[List[DependencyNode]] = None

    @property
    def known_names(self) -> Set[str]:
        return set(self.providers)

    def find_cycle(self) -> Optional[List[str]]:
        """Returns the names along a dependency cycle, or None if the graph is acyclic."""
        done: Set[str] = set()

        def visit(node: DependencyNode, path: List[DependencyNode]) -> Optional[List[str]]:
            ids = [member.id for member in path]
            if node.id in ids:
                cycle = path[ids.index(node.id) :] + [node]
                return [member.name for member in cycle]
            if node.id in done:
                return None

            for name in sorted(node.needs):
                provider = self.providers.get(name)
                if provider is None or provider is node:
                    continue
                cycle = visit(provider, path + [node])
                if cycle:
                    return cycle

            done.add(node.id)
            return None

        for node in self.nodes:
            cycle = visit(node, [])
            if cycle:
                return cycle

        return None

    def stop_order(self, only_running: bool = False) -> List[DependencyNode]:
        if self._stop_order is None:
            self._stop_order = self._resolve()

        if only_running:
            return [node for node in self._stop_order if node.was_running]
        return list(self._stop_order)

    def start_order(self, only_running: bool = False) -> List[DependencyNode]:
        return list(reversed(self.stop_order(only_running)))

    def _resolve(self) -> List[DependencyNode]:
        cycle = self.find_cycle()
        if cycle:
            if self.strict:
                raise CyclicDependencyError(cycle)
            logger.warning(
                f"Cyclic dependency between containers {' -> '.join(cycle)}: falling back to declaration order."
            )
            return list(self.nodes)

        moves: Dict[str, List[DependencyNode]] = {}
        closures: Dict[str, Set[str]] = {}
        for node in self.nodes:
            self._expand(node, moves, closures)

        ordered: Dict[str, DependencyNode] = {}
        for node in self.nodes:
            ordered.setdefault(node.id, node)
            for provider in moves[node.id]:
                # re-inserting moves the provider behind everything already present
                ordered.pop(provider.id, None)
                ordered[provider.id] = provider

        for node in self.nodes:
            node.needs = closures[node.id]

        return list(ordered.values())

    def _expand(
        self, node: DependencyNode, moves: Dict[str, List[DependencyNode]], closures: Dict[str, Set[str]]
    ) -> None:
        """Computes, once per node, the providers moved on its behalf (in move order) and the closure of its needs.

        Walking a provider moves it and then everything it needs, so only the last move of every node matters.
        """
        if node.id in moves:
            return

        sequence: List[DependencyNode] = []
        closure = set(node.needs)

        for name in sorted(node.needs):
            provider = self.providers.get(name)
            if provider is None or provider is node:
                continue

            self._expand(provider, moves, closures)
            sequence.append(provider)
            sequence.extend(moves[provider.id])
            closure.update(closures[provider.id])

        moves[node.id] = _last_moves(sequence)
        closures[node.id] = closure - node.provides


def _last_moves(sequence: Sequence[DependencyNode]) -> List[DependencyNode]:
    seen: Set[str] = set()
    result: List[DependencyNode] = []

    for node in reversed(sequence):
        if node.id not in seen:
            seen.add(node.id)
            result.append(node)

    result.reverse()
    return result


def plan_waves(
    start_order: Sequence[DependencyNode], to_start: Set[str], active: Set[str], known: Set[str]
) -> List[List[DependencyNode]]:
    """Splits the start order into waves of containers which can be started concurrently.

    A node joins the current wave while its needs are satisfied by the active names. A node with unsatisfied needs
    closes the current wave: its members are then considered active and the node opens the next wave.

    Args:
        start_order (Sequence[DependencyNode]): Nodes in start order.
        to_start (Set[str]): Ids of the nodes which have to be started.
        active (Set[str]): Names provided by containers which are already running.
        known (Set[str]): Names provided within the group. Needs outside of the group never block.

    Returns:
        List[List[DependencyNode]]: Waves in the order they have to be started.
    """
    waves: List[List[DependencyNode]] = []
    wave: List[DependencyNode] = []
    satisfied = set(active)

    for node in start_order:
        if node.id not in to_start:
            continue

        pending = (node.needs & known) - satisfied - node.provides
        if pending and wave:
            waves.append(wave)
            for member in wave:
                satisfied.update(member.provides)
            wave = []

        wave.append(node)

    if wave:
        waves.append(wave)

    return waves
