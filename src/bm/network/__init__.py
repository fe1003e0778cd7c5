import logging
import os
from logging import NullHandler
from pathlib import Path

logging.getLogger(__name__).addHandler(NullHandler())

try:
    from ._version import __version__
except ImportError:
    __version__ = "0.0.0"

# Lowest priority headers; descriptor headers and auth headers override them.
DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "*/*",
}

DEFAULT_TIMEOUT = 60.0

DEFAULT_ENV_CONFIG_FILE_PATH = (
    Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config")) / "bm" / "network.json"
)
