"""Reply orchestration engine for a simulated messenger character.

Decides when a character answers accumulated user messages, makes one
completion call per turn, and replays the answer as short bubbles while
tracking busy / read-without-reply state and periodic memory snapshots.

Typical usage
-------------
from reply_engine import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

from .engine import ReplyEngine
from .errors import GenerationError, NoApiConfig, TransportError
from .models import Kind, Message, Phase, Sender
from .protocol import Busy, NoReply, Normal, parse_reply

__all__ = [
    "Busy",
    "GenerationError",
    "Kind",
    "Message",
    "NoApiConfig",
    "NoReply",
    "Normal",
    "Phase",
    "ReplyEngine",
    "Sender",
    "TransportError",
    "__version__",
    "create_app",
    "get_version",
    "parse_reply",
]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__


def create_app(*args, **kwargs):
    """Return a configured FastAPI application.

    Imported lazily so the engine can be used without the web stack loaded.
    """
    from .server import create_app as _create_app

    return _create_app(*args, **kwargs)
