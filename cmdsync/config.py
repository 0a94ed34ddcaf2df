from __future__ import annotations
import os
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore

CONFIG_FILE = "config.toml"

ENV_REPO_URL = "EXTERNAL_COMMANDS_REPO_URL"
ENV_BRANCH = "EXTERNAL_COMMANDS_BRANCH"
ENV_SYNC_INTERVAL = "EXTERNAL_COMMANDS_SYNC_INTERVAL"


@dataclass
class ExternalCommandsConfig:
    """Where external command modules come from and how often to sync."""
    repo_url: str
    branch: str = "main"
    sync_interval: float = 300  # seconds
    local_path: str = "data/external_commands"
    modules_dir: str = ""  # subdirectory of the repository holding modules
    network_timeout: float = 60  # seconds, per git command
    register_timeout: float = 10  # seconds, per module register()

    def __post_init__(self):
        for name in ("sync_interval", "network_timeout", "register_timeout"):
            if float(getattr(self, name)) <= 0:
                raise ValueError(f"external.{name} must be positive")


@dataclass
class BotConfig:
    homeserver: str
    user_id: str
    external: ExternalCommandsConfig
    device_id: str = "DEV1"
    display_name: Optional[str] = None
    log_level: str = "INFO"
    allowed_rooms: list[str] = field(default_factory=list)  # List of allowed room IDs
    allowed_operators: list[str] = field(default_factory=list)  # Users allowed to run sync/status

    @property
    def access_token(self) -> str:
        token = os.getenv("MATRIX_ACCESS_TOKEN")
        if not token:
            raise RuntimeError(
                "MATRIX_ACCESS_TOKEN not set in environment or .env file")
        return token


def _as_list(value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def load_external_config(data: dict) -> ExternalCommandsConfig:
    """Build the external commands section, applying environment overrides."""
    external = dict(data)
    if os.getenv(ENV_REPO_URL):
        external["repo_url"] = os.environ[ENV_REPO_URL]
    if os.getenv(ENV_BRANCH):
        external["branch"] = os.environ[ENV_BRANCH]
    if os.getenv(ENV_SYNC_INTERVAL):
        try:
            external["sync_interval"] = float(os.environ[ENV_SYNC_INTERVAL])
        except ValueError:
            raise ValueError(f"{ENV_SYNC_INTERVAL} must be a number of seconds")

    if not external.get("repo_url"):
        raise ValueError(
            f"Missing required config key: external.repo_url (or {ENV_REPO_URL})")
    return ExternalCommandsConfig(**external)


def load_config(path: str = CONFIG_FILE) -> BotConfig:
    load_dotenv()
    if not os.path.exists(path):
        raise FileNotFoundError(
            f"Config file '{path}' not found. Create it from config.example.toml")
    with open(path, "rb") as f:
        data = tomllib.load(f)
    bot = dict(data.get("bot", {}))
    required = ["homeserver", "user_id"]
    for r in required:
        if r not in bot:
            raise ValueError(f"Missing required config key: bot.{r}")

    bot["allowed_rooms"] = _as_list(bot.get("allowed_rooms"))
    bot["allowed_operators"] = _as_list(bot.get("allowed_operators"))
    bot["external"] = load_external_config(data.get("external", {}))

    return BotConfig(**bot)
