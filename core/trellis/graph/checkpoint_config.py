"""
Checkpoint Configuration - Controls checkpoint behavior during execution.
"""

from dataclasses import dataclass


@dataclass
class CheckpointConfig:
    """
    Configuration for checkpoint behavior during graph execution.

    Controls when checkpoints are created and when they're pruned.
    """

    # Enable/disable checkpointing
    enabled: bool = True

    # When to checkpoint
    interval: int = 1  # Every N completed steps
    checkpoint_on_failure: bool = True
    checkpoint_on_cancel: bool = True
    checkpoint_on_completion: bool = True

    # Pruning (time-based)
    max_age_days: int = 7  # Prune checkpoints older than 1 week
    prune_every_n_checkpoints: int = 0  # 0 = never prune automatically

    def should_checkpoint_step(self, step: int) -> bool:
        """Check if the step that just completed lands on the interval."""
        return self.enabled and self.interval > 0 and step > 0 and step % self.interval == 0

    def should_prune_checkpoints(self, checkpoints_saved: int) -> bool:
        """
        Check if should prune checkpoints based on save count.

        Args:
            checkpoints_saved: Number of checkpoints saved by this manager

        Returns:
            True if should check for old checkpoints and prune them
        """
        return (
            self.enabled
            and self.prune_every_n_checkpoints > 0
            and checkpoints_saved % self.prune_every_n_checkpoints == 0
        )


# Default configuration: checkpoint after every step
DEFAULT_CHECKPOINT_CONFIG = CheckpointConfig(
    enabled=True,
    interval=1,
    checkpoint_on_failure=True,
    checkpoint_on_cancel=True,
    checkpoint_on_completion=True,
    max_age_days=7,
)


# Minimal configuration (sparse checkpoints, still recoverable on failure)
MINIMAL_CHECKPOINT_CONFIG = CheckpointConfig(
    enabled=True,
    interval=10,
    checkpoint_on_failure=True,
    checkpoint_on_cancel=True,
    checkpoint_on_completion=False,
    max_age_days=7,
    prune_every_n_checkpoints=20,
)


# Disabled configuration (no checkpointing)
DISABLED_CHECKPOINT_CONFIG = CheckpointConfig(
    enabled=False,
)
