"""Lexical binding environment driven by the external evaluator.

``let`` creates the value for a declared type (or ``dyn``) and wraps it
per the binding's sigil. Leaving a scope drops its bindings in reverse
declaration order, which is where Unique, Shared and Own values are
released.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Optional

from ..constants import DYN
from ..errors import BorrowViolation, UseAfterMove
from .ownership import (
    MovedValue,
    Own,
    OwnedValue,
    OwnershipManager,
    Shared,
    Sync,
    Unique,
    Weak,
    normalize_qualifier,
)
from .values import Value, create, infer, reassign


@dataclass
class Binding:
    name: str
    value: Any
    declared_type: Optional[str] = None
    sigil: Optional[str] = None

    @property
    def is_dynamic(self) -> bool:
        return self.declared_type == DYN


class Environment:
    def __init__(self, ownership: OwnershipManager, name: str = "global", parent: "Environment" = None):
        self.ownership = ownership
        self.name = name
        self.parent = parent
        self._bindings: dict[str, Binding] = {}
        self._order: list[Binding] = []
        self.drops: list[str] = []
        self.closed = False

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        return f"<Environment {self.name} bindings={len(self._bindings)}>"

    @property
    def log(self):
        return self.ownership.arena.log

    def _check_open(self) -> None:
        if self.closed:
            raise BorrowViolation(f"scope {self.name} has already exited")

    def let(self, name: str, declared_type=None, literal=None, sigil=None, *, release=None) -> Binding:
        """Bind ``name``; a binding without a sigil is a plain copied value."""

        self._check_open()
        kind = normalize_qualifier(sigil)
        if isinstance(literal, OwnedValue) and kind in (None, "weak"):
            value = literal
        elif kind == "own":
            value = literal
        elif declared_type is None:
            value = infer(literal)
        else:
            value = create(declared_type, literal)
        if kind is not None and not (isinstance(value, OwnedValue) and kind != "weak"):
            value = self.ownership.wrap(value, kind, release=release, name=name)
        binding = Binding(name, value, declared_type, kind)
        self._bindings[name] = binding
        self._order.append(binding)
        self.log.append(f"let:{self.name}:{name}")
        return binding

    def lookup(self, name: str) -> Binding:
        env = self
        while env is not None:
            binding = env._bindings.get(name)
            if binding is not None:
                return binding
            env = env.parent
        raise NameError(f"Undefined variable {name}")

    def handle(self, name: str):
        """The raw binding value: a wrapper, a plain value or a moved marker."""

        value = self.lookup(name).value
        if isinstance(value, MovedValue):
            raise UseAfterMove(f"{name} was moved and is no longer usable")
        return value

    def read(self, name: str):
        value = self.handle(name)
        if isinstance(value, Sync):
            return value.peek()
        if isinstance(value, (Unique, Shared, Weak, Own)):
            return value.get()
        return value

    def assign(self, name: str, new) -> None:
        binding = self.lookup(name)
        value = binding.value
        if isinstance(value, MovedValue):
            # Assigning a fresh value to a moved-from binding revives it.
            if binding.sigil != "unique":
                raise UseAfterMove(f"{name} was moved and is no longer usable")
            typed = create(binding.declared_type, new) if binding.declared_type else infer(new)
            binding.value = self.ownership.wrap(typed, "unique", name=name)
        elif isinstance(value, Unique):
            value.set(new)
        elif isinstance(value, Sync):
            raise BorrowViolation(f"{name} is #sync; mutate it inside a with session")
        elif isinstance(value, OwnedValue):
            raise BorrowViolation(f"{name} is {value.kind} and cannot be reassigned")
        elif isinstance(value, Value):
            binding.value = reassign(value, new)
        else:
            binding.value = new
        self.log.append(f"assign:{self.name}:{name}")

    def move(self, name: str):
        """Move the value out of ``name``; later reads raise UseAfterMove."""

        binding = self.lookup(name)
        value = binding.value
        if isinstance(value, MovedValue):
            raise UseAfterMove(f"{name} was moved and is no longer usable")
        if isinstance(value, Unique):
            payload, binding.value = self.ownership.move_out(value)
            return payload
        if isinstance(value, Own):
            moved = value.transfer()
            binding.value = MovedValue(name)
            return moved
        if isinstance(value, OwnedValue):
            raise BorrowViolation(f"{name} is {value.kind}; clone_share it instead of moving")
        return value

    def drop(self, name: str) -> bool:
        """Explicitly release a binding of this scope before the scope exits."""

        self._check_open()
        binding = self._bindings.pop(name, None)
        if binding is None:
            raise NameError(f"Undefined variable {name} in scope {self.name}")
        self._order.remove(binding)
        return self._release(binding)

    def _release(self, binding: Binding) -> bool:
        value = binding.value
        self.drops.append(binding.name)
        if isinstance(value, OwnedValue) and value.is_live:
            self.ownership.drop(value)
            return True
        return False

    def child(self, name: str | None = None) -> "Environment":
        self._check_open()
        return Environment(self.ownership, name or f"{self.name}.child", self)

    def exit(self) -> list[str]:
        """Drop every binding in reverse order; the first failure is re-raised."""

        self._check_open()
        self.closed = True
        failure = None
        for binding in reversed(self._order):
            try:
                self._release(binding)
            except Exception as exc:
                if failure is None:
                    failure = exc
        self._order.clear()
        self._bindings.clear()
        self.log.append(f"exit:{self.name}")
        if failure is not None:
            raise failure
        return list(self.drops)

    @contextmanager
    def scope(self, name: str | None = None):
        env = self.child(name)
        try:
            yield env
        finally:
            env.exit()


__all__ = [
    "Binding",
    "Environment",
]
