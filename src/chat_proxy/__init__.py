"""Chat proxy: per-conversation history in front of Cloudflare Workers AI.

The FastAPI application factory lives in ``chat_proxy/server.py``
(see :func:`create_app`); the per-conversation core is in
``chat_proxy/actor.py``.

Typical usage
-------------
from chat_proxy import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

from .actor import ActorRegistry, ConversationActor
from .errors import ErrorKind, InvalidRequestError, ProviderError
from .server import create_app

__all__ = [
    "ActorRegistry",
    "ConversationActor",
    "ErrorKind",
    "InvalidRequestError",
    "ProviderError",
    "create_app",
    "__version__",
    "get_version",
]

__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__
