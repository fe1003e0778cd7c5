import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from bm.network import DEFAULT_ENV_CONFIG_FILE_PATH, DEFAULT_TIMEOUT
from bm.network.models import HTTPMethod, RequestDescriptor
from bm.network.pinning import PinningPolicy


@dataclass
class Environment:
    name: str
    host: str
    scheme: str = "https"
    port: Optional[int] = None
    api_path: Optional[str] = None
    timeout: float = DEFAULT_TIMEOUT
    pinning: Optional[PinningPolicy] = None

    @property
    def sanitized_host(self) -> str:
        """Host without leading or trailing slashes accidentally added in config."""
        return re.sub(r"^/+|/+$", "", self.host)

    @property
    def base_url(self) -> str:
        """``scheme://host[:port]/api_path``, without a trailing slash.

        Request paths are expected to start with ``/``.
        """
        netloc = self.sanitized_host if self.port is None else f"{self.sanitized_host}:{self.port}"
        path = f"/{self.api_path.strip('/')}" if self.api_path and self.api_path.strip("/") else ""
        return f"{self.scheme}://{netloc}{path}"

    def descriptor(self, method: Union[HTTPMethod, str], path: str, **kwargs) -> RequestDescriptor:
        """Build a request descriptor for this environment's base URL and pinning policy."""
        kwargs.setdefault("tls_policy", self.pinning)
        return RequestDescriptor(method=method, base_url=self.base_url, path=path, **kwargs)


@dataclass
class NetworkEnvConfig:
    environments: dict = field(default_factory=dict)
    default_environment: Optional[str] = None


def load_env_config(path: Union[str, os.PathLike] = DEFAULT_ENV_CONFIG_FILE_PATH) -> NetworkEnvConfig:
    """Load config from JSON file. Returns empty config if file doesn't exist."""
    expanded = Path(path).expanduser()
    if not expanded.exists():
        return NetworkEnvConfig()

    data = json.loads(expanded.read_text())

    environments = {}
    for name, env_data in data.get("environments", {}).items():
        pinning = env_data.get("pinning")
        environments[name] = Environment(
            name=name,
            host=env_data["host"],
            scheme=env_data.get("scheme", "https"),
            port=env_data.get("port"),
            api_path=env_data.get("api_path"),
            timeout=env_data.get("timeout", DEFAULT_TIMEOUT),
            pinning=PinningPolicy.from_dict(pinning) if pinning else None,
        )

    return NetworkEnvConfig(
        environments=environments,
        default_environment=data.get("default_environment"),
    )


def resolve_environment(config: NetworkEnvConfig, env_name: Optional[str] = None) -> Environment:
    """Resolve which environment to use.

    Resolution order:
    1. Explicit env_name
    2. default_environment from config
    """
    if env_name:
        if env_name not in config.environments:
            raise ValueError(f"Unknown environment: {env_name}")
        return config.environments[env_name]

    if config.default_environment and config.default_environment in config.environments:
        return config.environments[config.default_environment]

    raise ValueError("No environment given and no default_environment configured")
