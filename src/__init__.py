"""
Keycloak Migration Engine.
"""

from checkpoint import Checkpoint, CheckpointStore
from config import MigrationProfile, MigratorConfig, load_profile
from log_utils import setup_logging
from models import MigrationPlan, Phase, StepResult, TrafficWeightAssignment
from orchestrator import MigrationOrchestrator, build_plan, compute_steps
from rollback import MigrationRollback

__all__ = [
    "Checkpoint",
    "CheckpointStore",
    "MigrationProfile",
    "MigratorConfig",
    "load_profile",
    "setup_logging",
    "MigrationPlan",
    "Phase",
    "StepResult",
    "TrafficWeightAssignment",
    "MigrationOrchestrator",
    "build_plan",
    "compute_steps",
    "MigrationRollback",
]
