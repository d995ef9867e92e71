"""Configuration for driveup."""
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DRIVE_BASE_URL = "https://drive-pc.quark.cn"
ACCOUNT_BASE_URL = "https://pan.quark.cn"
DEFAULT_CONFIG_FILE = "config.json"


@dataclass
class UploaderConfig:
    """Settings for the uploader. Only ``access_tokens`` is required."""
    access_tokens: List[str] = field(default_factory=list)
    drive_base_url: str = DRIVE_BASE_URL
    account_base_url: str = ACCOUNT_BASE_URL
    api_timeout: float = 30.0
    part_timeout: float = 30 * 60.0
    commit_timeout: float = 5 * 60.0
    auth_check_ttl: float = 5 * 60.0
    page_size: int = 50
    state_dir: Optional[Path] = None
    session_retention_days: Optional[int] = 7
    debug: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UploaderConfig":
        # multi-provider config files nest the tokens under "Quark"
        if "access_tokens" not in data and isinstance(data.get("Quark"), dict):
            data = {**data, **data["Quark"]}

        tokens = data.get("access_tokens") or []
        if isinstance(tokens, str):
            tokens = [tokens]

        config = cls(access_tokens=[str(t) for t in tokens if str(t).strip()])
        for name in (
            "drive_base_url",
            "account_base_url",
            "api_timeout",
            "part_timeout",
            "commit_timeout",
            "auth_check_ttl",
            "page_size",
            "session_retention_days",
            "debug",
        ):
            if name in data:
                setattr(config, name, data[name])
        if data.get("state_dir"):
            config.state_dir = Path(data["state_dir"]).expanduser()
        return config


def _env_flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def load_config(path: Optional[Path] = None) -> UploaderConfig:
    """
    Load configuration from a JSON file plus environment overrides.

    The file is ``path``, else ``$DRIVEUP_CONFIG``, else ``config.json`` in the
    working directory. ``DRIVEUP_STATE_DIR`` and ``DRIVEUP_DEBUG`` override
    the matching fields.

    Raises:
        ConfigurationError: if the file is missing, unreadable or has no tokens
    """
    if path is None:
        path = Path(os.getenv("DRIVEUP_CONFIG") or DEFAULT_CONFIG_FILE)
    path = Path(path).expanduser()
    if not path.is_absolute():
        path = Path.cwd() / path

    if not path.is_file():
        raise ConfigurationError(f"config file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"could not read config file {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError(f"config file {path} must contain a JSON object")

    config = UploaderConfig.from_dict(raw)

    state_dir = os.getenv("DRIVEUP_STATE_DIR")
    if state_dir:
        config.state_dir = Path(state_dir).expanduser()
    if "DRIVEUP_DEBUG" in os.environ:
        config.debug = _env_flag(os.getenv("DRIVEUP_DEBUG"))

    if not config.access_tokens:
        raise ConfigurationError(f"no access_tokens configured in {path}")

    logger.debug("Loaded config from %s (%d tokens)", path, len(config.access_tokens))
    return config
