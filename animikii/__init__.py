"""Public :mod:`animikii` API: the runtime core and its configuration."""

from . import config as _config
from . import constants as _constants
from . import errors as _errors
from . import runtime as _runtime
from .config import *  # noqa: F401,F403
from .constants import *  # noqa: F401,F403
from .errors import *  # noqa: F401,F403
from .runtime import *  # noqa: F401,F403

__all__ = []
__all__ += getattr(_constants, "__all__", [])
__all__ += getattr(_errors, "__all__", [])
__all__ += getattr(_config, "__all__", [])
__all__ += getattr(_runtime, "__all__", [])
