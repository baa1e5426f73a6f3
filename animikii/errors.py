"""Error taxonomy for the Animikii runtime."""

from __future__ import annotations

import sys

from .constants import EXIT_RUNTIME_DEFECT


class AnimikiiError(RuntimeError):
    """Base class for recoverable runtime failures surfaced to programs."""


class TypeMismatch(AnimikiiError):
    """An operator or declaration cannot be applied to the given types."""


class ArithmeticFault(AnimikiiError):
    """Integer overflow, division by zero or modulus by zero."""


class UseAfterMove(AnimikiiError):
    """A unique binding was read after its value was moved out."""


class BorrowViolation(AnimikiiError):
    """An ownership discipline was violated."""


class DeadlockDetected(BorrowViolation):
    """Acquiring a sync session would wait on itself."""


class ChannelClosed(AnimikiiError):
    """The peer end of a channel is gone."""


class ActorFault(AnimikiiError):
    """A message handler failed; the actor stops processing until restarted."""

    def __init__(self, actor_id, message, cause):
        super().__init__(f"Actor {actor_id} faulted handling {message!r}: {cause}")
        self.actor_id = actor_id
        self.message = message
        self.cause = cause


class ResourceReleaseFailure(AnimikiiError):
    """The release callback of an ``#own`` resource raised."""


class TaskCancelled(AnimikiiError):
    """Thrown into a task's continuation when its cancellation is observed."""


def runtime_defect(message: str):
    """Abort the process: the runtime's own bookkeeping is corrupt."""

    print(f"animikii: runtime defect: {message}", file=sys.stderr)
    raise SystemExit(EXIT_RUNTIME_DEFECT)


__all__ = [
    "ActorFault",
    "AnimikiiError",
    "ArithmeticFault",
    "BorrowViolation",
    "ChannelClosed",
    "DeadlockDetected",
    "ResourceReleaseFailure",
    "TaskCancelled",
    "TypeMismatch",
    "UseAfterMove",
    "runtime_defect",
]
