"""The Runtime facade: one arena, one scheduler and one actor system."""

from __future__ import annotations

from ..config import RuntimeConfig, load_config
from .actors import ActorRef, ActorSystem
from .analysis import explain_slot, export_graphviz, runtime_graph
from .channels import channel
from .conversions import convert
from .environment import Environment
from .futures import Future
from .logbook import Effect, RuntimeLog, record_run, show_logbook
from .ownership import OwnershipManager
from .scheduler import Scheduler, TaskHandle
from .values import coerce, create, index, type_of, unary


class Runtime:
    """Everything one Animikii program runs against; nothing here is global."""

    def __init__(self, config: RuntimeConfig | dict | str | None = None):
        self.config = load_config(config)
        self.log = RuntimeLog(enabled=self.config.trace)
        self.ownership = OwnershipManager(log=self.log)
        self.scheduler = Scheduler(self.config.shards, self.log, self.config.max_steps)
        self.actors = ActorSystem(self.scheduler, self.config.mailbox_capacity)
        self.globals = Environment(self.ownership)
        self._channels = 0

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        return f"<Runtime shards={self.config.shards} tasks={len(self.scheduler.tasks())}>"

    # Values
    create = staticmethod(create)
    coerce = staticmethod(coerce)
    type_of = staticmethod(type_of)
    unary = staticmethod(unary)
    index = staticmethod(index)
    convert = staticmethod(convert)

    # Ownership
    def wrap(self, value, qualifier=None, *, release=None, name=None):
        return self.ownership.wrap(value, qualifier, release=release, name=name)

    def move_out(self, handle):
        return self.ownership.move_out(handle)

    def clone_share(self, handle):
        return self.ownership.clone_share(handle)

    def downgrade(self, handle):
        return self.ownership.downgrade(handle)

    def with_(self, handle, body):
        return self.ownership.with_(handle, body)

    def own(self, resource, release, *, name=None):
        return self.ownership.own(resource, release, name=name)

    def drop(self, handle) -> bool:
        return self.ownership.drop(handle)

    def scope(self, name: str | None = None):
        return self.globals.scope(name)

    # Concurrency
    def channel(self, capacity=..., label: str | None = None):
        if capacity is ...:
            capacity = self.config.channel_capacity
        if label is None:
            label = f"chan_{self._channels}"
            self._channels += 1
        return channel(capacity, label=label, log=self.log)

    def spawn_task(self, fn, *args, name=None, shard=None) -> TaskHandle:
        return self.scheduler.spawn(fn, *args, name=name, shard=shard)

    def spawn_actor(self, state=None, capacity=..., *, shard=None) -> ActorRef:
        return self.actors.spawn(state, capacity, shard=shard)

    def event(self, label: str | None = None) -> Future:
        return self.scheduler.event(label)

    def run_until_idle(self, *, record: bool = False, label: str | None = None) -> Effect:
        return self._recorded(self.scheduler.run_until_idle(), record, label)

    def run_threaded(self, *, record: bool = False, label: str | None = None) -> Effect:
        return self._recorded(self.scheduler.run_threaded(), record, label)

    def _recorded(self, effect: Effect, record: bool, label) -> Effect:
        if not record:
            return effect

        def write(stats):
            entry = record_run(effect, self.config.logbook_path, label=label)
            return Effect("io", stats, [f"logbook:{entry['hash'][:12]}"])

        return effect.bind(write)

    def block_on(self, awaitable):
        """Run until idle, then return the result of a task handle or future."""

        self.run_until_idle()
        future = awaitable.future if isinstance(awaitable, TaskHandle) else awaitable
        return future.result()

    # Introspection
    def stats(self) -> dict:
        tasks = self.scheduler.tasks()
        return {
            "tasks": len(tasks),
            "states": {state: sum(1 for t in tasks if t.state == state) for state in {t.state for t in tasks}},
            "actors": self.actors.statuses(),
            "ownership": self.ownership.stats(),
            "log_length": len(self.log),
        }

    def graph(self):
        return runtime_graph(self)

    def export_graph(self, output_path):
        return export_graphviz(self.graph(), output_path)

    def explain(self, index: int) -> dict:
        return explain_slot(self.ownership.arena, index)

    def show_logbook(self, limit: int = 10):
        return show_logbook(self.config.logbook_path, limit)

    def shutdown(self) -> list[str]:
        """Stop every actor, let cancellations settle and drop the global scope."""

        self.actors.stop_all()
        self.scheduler.run_until_idle()
        if self.globals.closed:
            return []
        return self.globals.exit()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
        return False


__all__ = [
    "Runtime",
]
