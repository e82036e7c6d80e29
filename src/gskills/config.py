from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

from platformdirs import user_config_path, user_data_path

from .errors import InvalidInputError

DEFAULT_TIMEOUT_S = 30.0
DEFAULT_LINK_NAMESPACE = ".opencode/skills"
REGISTRY_FILENAME = "skills.json"
SKILLS_DIRNAME = "skills"


@dataclass(frozen=True)
class Config:
    github_token: str | None = None
    proxy: str | None = None  # e.g. "http://127.0.0.1:8080"
    timeout_s: float = DEFAULT_TIMEOUT_S
    home_dir: str | None = None  # defaults to the platform user data dir
    link_namespace: str = DEFAULT_LINK_NAMESPACE

    @property
    def home_path(self) -> Path:
        if self.home_dir:
            return Path(self.home_dir).expanduser()
        return user_data_path("gskills")

    @property
    def store_dir(self) -> Path:
        return self.home_path / SKILLS_DIRNAME

    @property
    def registry_path(self) -> Path:
        return self.home_path / REGISTRY_FILENAME


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("GSKILLS_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("gskills") / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return Config(**filtered)  # type: ignore[arg-type]


def apply_env(cfg: Config) -> Config:
    # Env overrides the config file; CLI flags are applied on top by the caller.
    token = os.getenv("GSKILLS_GITHUB_TOKEN") or os.getenv("GITHUB_TOKEN") or cfg.github_token
    proxy = os.getenv("GSKILLS_PROXY") or cfg.proxy
    home_dir = os.getenv("GSKILLS_HOME") or cfg.home_dir
    timeout_raw = os.getenv("GSKILLS_TIMEOUT_S")
    timeout_s = cfg.timeout_s
    if timeout_raw:
        try:
            timeout_s = float(timeout_raw)
        except ValueError as e:
            raise InvalidInputError(f"GSKILLS_TIMEOUT_S must be a number (got {timeout_raw!r}).") from e
    return replace(cfg, github_token=token, proxy=proxy, home_dir=home_dir, timeout_s=timeout_s)


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)

    # Best-effort permissions hardening (mainly for tokens).
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path


def redact_token(token: str | None) -> str | None:
    if not token:
        return token
    if len(token) <= 10:
        return token[:2] + "..." + token[-2:]
    return token[:6] + "..." + token[-4:]
