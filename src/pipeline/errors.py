# =========================================
# 📄 File: src/pipeline/errors.py
# Purpose: Exception types shared by the batch executor, stages and orchestrator
# =========================================


class MigrationError(Exception):
    """Base class for every error raised by the migration pipeline."""


class ConfigurationError(MigrationError):
    """Missing env var, default language, currency or lookup rows; fatal at start of a stage."""


class BatchTimeoutError(MigrationError):
    """A single batch attempt exceeded its wall-clock budget."""

    def __init__(self, timeout_ms: int):
        super().__init__(f"Operation timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class StageError(MigrationError):
    """A stage aborted; wraps the stage name so the summary can point at it."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"[{stage}] {message}")
        self.stage = stage
