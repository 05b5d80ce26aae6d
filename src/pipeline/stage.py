# =========================================
# 📄 File: src/pipeline/stage.py
# Purpose: Stage base class and the context threaded between stages
# =========================================

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from config.config_loader import step_settings
from src.pipeline.batch_processor import BatchProcessor
from src.pipeline.errors import ConfigurationError

log = logging.getLogger(__name__)


@dataclass
class MigrationContext:
    """Values produced by `prepare` and read by later stages."""

    default_language_id: Any = None
    default_language_code: Optional[str] = None
    eav_mapper: Any = None
    resolver: Any = None
    transformer: Any = None
    translator: Any = None
    extras: Dict[str, Any] = field(default_factory=dict)

    def update(self, additions: Optional[Dict[str, Any]]) -> None:
        for key, value in (additions or {}).items():
            if hasattr(self, key) and key != "extras":
                setattr(self, key, value)
            else:
                self.extras[key] = value


class Counters:
    """Thread-safe tallies for batch closures running on worker threads."""

    def __init__(self, *names: str):
        self._lock = threading.Lock()
        self._values = {name: 0 for name in names}

    def add(self, **increments: int) -> None:
        with self._lock:
            for name, value in increments.items():
                self._values[name] = self._values.get(name, 0) + value

    def __getitem__(self, name: str) -> int:
        return self._values.get(name, 0)

    def as_dict(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._values)


def stage_result(success: bool = True, count: int = 0, failed: int = 0, **extra) -> Dict[str, Any]:
    out = {"success": success, "count": count, "failed": failed}
    out.update(extra)
    return out


class Stage:
    """
    A named unit of work. run() returns {"success", "count", "failed", ...}; an optional
    "context" entry is merged into the shared MigrationContext by the orchestrator.
    """

    name = "stage"
    description = ""

    def __init__(self, source_db, target_db, cfg: Dict[str, Any], context: MigrationContext):
        self.source_db = source_db
        self.target_db = target_db
        self.cfg = cfg
        self.context = context

    @property
    def settings(self) -> Dict[str, Any]:
        return step_settings(self.cfg, self.name)

    def batch_processor(self, label: Optional[str] = None, **kwargs) -> BatchProcessor:
        return BatchProcessor.from_config(self.cfg, self.settings, label or self.name, **kwargs)

    def require_default_language(self) -> Any:
        if self.context.default_language_id is None:
            raise ConfigurationError(f"{self.name}: default language id missing (run 'prepare' first)")
        return self.context.default_language_id

    def run(self) -> Dict[str, Any]:
        raise NotImplementedError
