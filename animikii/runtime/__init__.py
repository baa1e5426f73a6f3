"""Runtime core of the Animikii language.

| Layer                   | Purpose                                          |
<------------------------ + ------------------------------------------------>
| **Value & type engine** | Static/dynamic values, operator coercion table   |
| **Ownership manager**   | Arena slots behind ~, @, #weak, #sync and #own   |
| **Scheduler**           | Cooperative sharded tasks with explicit states   |
| **Channels**            | Ownership-transferring FIFO queues               |
| **Actors**              | Private state, owned mailbox, fault containment  |
| **Environment**         | let-bindings and scope-exit drops                |
| **Logbook**             | Run provenance in a JSONL ledger                 |
"""

from . import values as _values
from . import conversions as _conversions
from . import futures as _futures
from . import logbook as _logbook
from . import analysis as _analysis
from . import ownership as _ownership
from . import scheduler as _scheduler
from . import channels as _channels
from . import actors as _actors
from . import environment as _environment
from . import system as _system

from .values import *
from .conversions import *
from .futures import *
from .logbook import *
from .analysis import *
from .ownership import *
from .scheduler import *
from .channels import *
from .actors import *
from .environment import *
from .system import *

__all__ = []
for module in (
    _values,
    _conversions,
    _futures,
    _logbook,
    _analysis,
    _ownership,
    _scheduler,
    _channels,
    _actors,
    _environment,
    _system,
):
    __all__.extend(getattr(module, '__all__', []))
__all__ = list(dict.fromkeys(__all__))
