"""Configuration loading helpers for CV-Harvester."""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from threading import RLock
from typing import Any, Iterable

import yaml

from .models import GlobalConfig, SourceConfig, parse_source

CONFIG_EXTENSIONS = (".yaml", ".yml", ".json")
GLOBAL_CONFIG_FILENAME = "global_config.yaml"
SOURCE_CONFIG_SUFFIX = ".yaml"


def slugify(name: str) -> str:
    slug = "".join(ch.lower() if ch.isalnum() else "-" for ch in name).strip("-")
    while "--" in slug:
        slug = slug.replace("--", "-")
    return slug


def _read_file(path: Path) -> dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    if path.suffix in (".yaml", ".yml"):
        data = yaml.safe_load(text) or {}
    else:
        data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file must contain a mapping: {path}")
    return data


def _write_file(path: Path, payload: dict[str, Any]) -> None:
    """Write through a sibling temp file so readers never see a partial config."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}-", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as stream:
            if path.suffix in (".yaml", ".yml"):
                yaml.safe_dump(payload, stream, allow_unicode=True, sort_keys=False)
            else:
                json.dump(payload, stream, indent=2, ensure_ascii=False)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


@dataclass(slots=True)
class ConfigLocator:
    """Resolve important paths from project root."""

    project_root: Path | None = None
    data_dir: Path | None = None
    sources_dir: Path | None = None
    exports_dir: Path | None = None
    logs_dir: Path | None = None

    def __post_init__(self) -> None:
        if self.project_root is not None:
            root = Path(self.project_root).expanduser().resolve()
        else:
            env_root = os.environ.get("CV_HARVESTER_HOME")
            if env_root:
                root = Path(env_root).expanduser().resolve()
            else:
                root = Path(__file__).resolve().parents[2]
        self.project_root = root
        self.data_dir = (root / "data").resolve()
        self.sources_dir = (self.data_dir / "sources").resolve()
        self.exports_dir = (self.data_dir / "exports").resolve()
        self.logs_dir = (root / "logs").resolve()
        self.ensure_directories()

    def ensure_directories(self) -> None:
        for directory in (self.data_dir, self.sources_dir, self.exports_dir, self.logs_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def global_config_path(self) -> Path:
        return self.data_dir / GLOBAL_CONFIG_FILENAME


class ConfigRepository:
    """Repository encapsulating config IO and schema validation."""

    def __init__(self, locator: ConfigLocator | None = None) -> None:
        self.locator = locator or ConfigLocator()
        self._global_cache: GlobalConfig | None = None
        self._lock = RLock()

    # ------------------------------------------------------------------
    # Global configuration helpers
    # ------------------------------------------------------------------
    def load_global_config(self) -> GlobalConfig:
        if self._global_cache is not None:
            return self._global_cache
        path = self.locator.global_config_path()
        if path.exists():
            global_cfg = GlobalConfig.model_validate(_read_file(path))
        else:
            global_cfg = GlobalConfig()
            self.save_global_config(global_cfg)
        self._global_cache = global_cfg
        return global_cfg

    def save_global_config(self, config: GlobalConfig) -> None:
        _write_file(self.locator.global_config_path(), config.model_dump(mode="json"))
        self._global_cache = config

    def resolve_path(self, path: Path) -> Path:
        if path.is_absolute():
            return path
        return (self.locator.project_root / path).resolve()

    # ------------------------------------------------------------------
    # Source configuration helpers
    # ------------------------------------------------------------------
    def source_path(self, source_id: str) -> Path:
        """Existing file for ``source_id`` in any supported format, else the YAML path."""

        slug = slugify(source_id)
        for suffix in CONFIG_EXTENSIONS:
            candidate = self.locator.sources_dir / f"{slug}{suffix}"
            if candidate.exists():
                return candidate
        return self.locator.sources_dir / f"{slug}{SOURCE_CONFIG_SUFFIX}"

    def list_source_files(self) -> Iterable[Path]:
        for path in sorted(self.locator.sources_dir.glob("*")):
            if path.is_file() and path.suffix in CONFIG_EXTENSIONS and not path.name.startswith("."):
                yield path

    def list_sources(self) -> list[SourceConfig]:
        return [self.load_source(path) for path in self.list_source_files()]

    def load_source(self, identifier: str | Path) -> SourceConfig:
        path = identifier if isinstance(identifier, Path) else self.source_path(identifier)
        if not path.exists():
            raise FileNotFoundError(f"Source configuration not found: {identifier}")
        return parse_source(_read_file(path))

    def has_source(self, source_id: str) -> bool:
        return self.source_path(source_id).exists()

    def save_source(self, config: SourceConfig) -> Path:
        # The dispatcher thread rewrites health and proxy state concurrently with admin edits.
        with self._lock:
            path = self.source_path(config.id)
            _write_file(path, config.model_dump(mode="json"))
            return path

    def delete_source(self, source_id: str) -> None:
        with self._lock:
            self.source_path(source_id).unlink(missing_ok=True)


__all__ = ["CONFIG_EXTENSIONS", "ConfigLocator", "ConfigRepository", "slugify"]
