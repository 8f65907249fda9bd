import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path

import yaml

from site_manager.errors import ValidationError

CONFIG_ENV_VAR = "SITEMANAGER_CONFIG"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "sitemanager" / "config.yaml"

PORT_ALLOCATIONS = ("table", "hash")


@dataclass
class Config:
    nginx_path: str = "/etc/nginx"
    sites_available: str = "/etc/nginx/sites-available"
    sites_enabled: str = "/etc/nginx/sites-enabled"
    home_root: str = "/home"
    state_dir: str = "/etc/sitemanager"
    email: str = ""
    agree_tos: bool = False
    use_www: bool = True
    default_php: str = "8.3"
    default_port: int = 3000
    port_range: dict = field(default_factory=lambda: {"start": 3001, "end": 3999})
    port_allocation: str = "table"
    command_timeout: int = 900
    database_host: str = "localhost"

    @property
    def ports_file(self) -> Path:
        return Path(self.state_dir) / "ports.json"

    def validate(self):
        if self.port_allocation not in PORT_ALLOCATIONS:
            raise ValidationError(
                f"port_allocation must be one of {', '.join(PORT_ALLOCATIONS)}, "
                f"got '{self.port_allocation}'"
            )
        start, end = self.port_range.get("start"), self.port_range.get("end")
        if not isinstance(start, int) or not isinstance(end, int) or start > end:
            raise ValidationError(f"Invalid port_range: {self.port_range}")
        if self.command_timeout <= 0:
            raise ValidationError("command_timeout must be positive")


def config_path() -> Path:
    override = os.environ.get(CONFIG_ENV_VAR)
    return Path(override) if override else DEFAULT_CONFIG_PATH


def load_config(path: Path | None = None, create: bool = True) -> Config:
    """Load the YAML config, writing a default file when none exists.

    Unknown keys are ignored; missing keys keep their defaults.

    :param path: Config file (default: $SITEMANAGER_CONFIG or ~/.config/sitemanager/config.yaml)
    :param create: Write a default config when the file is missing
    """
    path = path or config_path()
    if not path.exists():
        config = Config()
        if create:
            save_config(config, path)
        return config

    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError(f"Invalid config file {path}: expected a mapping")

    known = {f.name for f in fields(Config)}
    config = Config(**{k: v for k, v in data.items() if k in known})
    if "nginx_path" in data:
        nginx = data["nginx_path"]
        config.sites_available = data.get("sites_available", f"{nginx}/sites-available")
        config.sites_enabled = data.get("sites_enabled", f"{nginx}/sites-enabled")
    config.validate()
    return config


def save_config(config: Config, path: Path | None = None):
    path = path or config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(asdict(config), sort_keys=False))
