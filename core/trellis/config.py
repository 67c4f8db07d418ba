"""Shared Trellis configuration utilities.

Centralises reading of ~/.trellis/configuration.json so that the executor,
the checkpoint manager and the CLI share one implementation.

Example configuration.json:
    {
        "executor": {"max_steps": 200, "default_node_timeout": 30},
        "checkpoint": {"interval": 5, "max_age_days": 3}
    }
"""

import json
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

TRELLIS_CONFIG_FILE = Path.home() / ".trellis" / "configuration.json"

DEFAULT_MAX_STEPS = 100


def get_trellis_config(path: Path | str | None = None) -> dict[str, Any]:
    """Load trellis configuration from ~/.trellis/configuration.json."""
    config_file = Path(path) if path else TRELLIS_CONFIG_FILE
    if not config_file.exists():
        return {}
    try:
        with open(config_file, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


def _known_fields(cls: type, section: dict[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in section.items() if k in names}


# ---------------------------------------------------------------------------
# ExecutorConfig
# ---------------------------------------------------------------------------


@dataclass
class ExecutorConfig:
    """
    Execution limits and failure policy for GraphExecutor.

    Per-node settings on NodeSpec (max_retries, timeout_seconds) and
    GraphSpec.max_steps take precedence over these defaults.
    """

    max_steps: int = DEFAULT_MAX_STEPS  # Runaway-loop protection
    default_node_timeout: float | None = None  # Seconds; None = no timeout
    execution_timeout: float | None = None  # Seconds for the whole run
    max_retries: int = 3  # Retries for TransientFailure
    retry_backoff_seconds: float = 1.0  # Doubled on every retry
    retry_backoff_max: float = 30.0

    def backoff_delay(self, retry_count: int) -> float:
        """Exponential backoff: base * 2^(retry - 1), capped."""
        if self.retry_backoff_seconds <= 0:
            return 0.0
        delay = self.retry_backoff_seconds * (2 ** (retry_count - 1))
        return min(delay, self.retry_backoff_max)


def load_executor_config(path: Path | str | None = None) -> ExecutorConfig:
    """Build an ExecutorConfig from the "executor" section of the config file."""
    section = get_trellis_config(path).get("executor", {})
    return ExecutorConfig(**_known_fields(ExecutorConfig, section))


def load_checkpoint_config(path: Path | str | None = None):
    """Build a CheckpointConfig from the "checkpoint" section of the config file."""
    from trellis.graph.checkpoint_config import CheckpointConfig

    section = get_trellis_config(path).get("checkpoint", {})
    return CheckpointConfig(**_known_fields(CheckpointConfig, section))
