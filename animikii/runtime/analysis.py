"""Wait-for graphs, ownership explanations and Graphviz export."""

from __future__ import annotations

from pathlib import Path
import threading

import networkx as nx

try:
    import pydot
except ModuleNotFoundError:  # pragma: no cover
    pydot = None


class WaitForGraph:
    """Who holds and who waits on each sync session.

    Edges run ``resource -> holder`` and ``waiter -> resource``; a path from
    a resource back to a would-be waiter means that wait can never finish.
    """

    def __init__(self):
        self.graph = nx.DiGraph()
        self._lock = threading.Lock()

    def hold(self, owner: str, resource: str) -> None:
        with self._lock:
            self.graph.add_edge(resource, owner, kind="holds")

    def wait(self, owner: str, resource: str) -> None:
        with self._lock:
            self.graph.add_edge(owner, resource, kind="waits")

    def _remove(self, source: str, target: str) -> None:
        if self.graph.has_edge(source, target):
            self.graph.remove_edge(source, target)
        for node in (source, target):
            if node in self.graph and self.graph.degree(node) == 0:
                self.graph.remove_node(node)

    def release(self, owner: str, resource: str) -> None:
        with self._lock:
            self._remove(resource, owner)

    def stop_waiting(self, owner: str, resource: str) -> None:
        with self._lock:
            self._remove(owner, resource)

    def would_deadlock(self, owner: str, resource: str) -> bool:
        with self._lock:
            if owner not in self.graph or resource not in self.graph:
                return False
            return nx.has_path(self.graph, resource, owner)

    def cycles(self) -> list[list[str]]:
        with self._lock:
            return [list(cycle) for cycle in nx.simple_cycles(self.graph)]

    def holder_of(self, resource: str) -> str | None:
        with self._lock:
            if resource not in self.graph:
                return None
            for _, owner, data in self.graph.out_edges(resource, data=True):
                if data.get("kind") == "holds":
                    return owner
        return None

    def waiters_on(self, resource: str) -> list[str]:
        with self._lock:
            if resource not in self.graph:
                return []
            return [
                owner
                for owner, _, data in self.graph.in_edges(resource, data=True)
                if data.get("kind") == "waits"
            ]

    def __len__(self) -> int:
        with self._lock:
            return self.graph.number_of_edges()


def explain_slot(arena, index: int) -> dict:
    """Describe an arena slot: liveness, counts and generation."""

    info = arena.describe(index)
    if info is None:
        return {"found": False, "index": index, "lines": []}
    state = "live" if info["live"] else "free"
    lines = [
        f"Slot {index} (generation {info['generation']}) is {state}",
        f"  strong={info['strong']} weak={info['weak']}",
    ]
    if info["live"]:
        lines.append(f"  holds {info['payload']}")
    return {"found": True, "index": index, "lines": lines}


def runtime_graph(runtime) -> nx.DiGraph:
    """Snapshot tasks, actors and sync waits as one directed graph."""

    graph = nx.DiGraph()
    for task in runtime.scheduler.tasks():
        graph.add_node(
            task.owner_key,
            label=f"{task.name}\n[{task.state}]",
            kind="task",
            state=task.state,
            shard=task.shard,
        )
        if task.awaiting is not None:
            target = f"await:{task.awaiting.label or id(task.awaiting)}"
            graph.add_node(target, label=task.awaiting.label or "event", kind="event")
            graph.add_edge(task.owner_key, target, kind=task.suspend_reason)
    for ref in runtime.actors.refs():
        node = f"actor:{ref.actor_id}"
        graph.add_node(node, label=f"{ref.actor_id}\n[{ref.status}]", kind="actor", state=ref.status)
        loop = ref.loop_task
        if loop is not None:
            graph.add_edge(node, loop.owner_key, kind="loop")
    waits = runtime.ownership.arena.waits
    with waits._lock:
        for source, target, data in waits.graph.edges(data=True):
            graph.add_edge(source, target, kind=data.get("kind"))
    return graph


def export_graphviz(graph: nx.DiGraph, output_path):  # pragma: no cover
    """Write ``graph`` as Graphviz DOT text."""

    if pydot is None:
        raise RuntimeError("Graphviz export requires the optional pydot dependency")

    dot = pydot.Dot("animikii_runtime", graph_type="digraph", rankdir="LR", fontname="Helvetica")
    for name, data in graph.nodes(data=True):
        shape = {"task": "box", "actor": "doubleoctagon", "event": "ellipse"}.get(
            data.get("kind"), "diamond"
        )
        dot.add_node(
            pydot.Node(
                _quote(name),
                label=_quote(data.get("label", name)),
                shape=shape,
                fontname="Helvetica",
            )
        )
    for source, target, data in graph.edges(data=True):
        style = "dashed" if data.get("kind") == "waits" else "solid"
        dot.add_edge(
            pydot.Edge(_quote(source), _quote(target), label=data.get("kind") or "", style=style)
        )

    output_path = Path(output_path)
    if output_path.parent and not output_path.parent.exists():
        output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(dot.to_string(), encoding="utf-8")
    print(f"  ✓ Graphviz runtime graph exported → {output_path}")
    return output_path


def _quote(text) -> str:
    return '"' + str(text).replace('"', '\\"') + '"'


__all__ = [
    "WaitForGraph",
    "explain_slot",
    "export_graphviz",
    "runtime_graph",
]
