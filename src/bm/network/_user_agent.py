"""User-Agent header sent by the transports."""

import platform
from typing import Optional

from bm.network import __version__

_PY_VERSION = platform.python_version()

PRODUCT = f"bm-network/{__version__}"


def get_user_agent(http_lib: str, http_lib_version: str, client_name: Optional[str] = None) -> str:
    """``bm-network/<version> python/<x.y.z> <http_lib>/<version>``, followed by ``client_name`` when set."""
    parts = [PRODUCT, f"python/{_PY_VERSION}", f"{http_lib}/{http_lib_version}"]
    if client_name:
        parts.append(client_name)
    return " ".join(parts)
