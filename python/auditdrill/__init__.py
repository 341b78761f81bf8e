"""auditdrill: session synchronization and grading core for audit-training exercises."""

__version__ = "0.1.0"

from auditdrill.async_store import AsyncStoreWrapper
from auditdrill.attempt_store import (
    AttemptHistorySource,
    AttemptStore,
    resolve_attempt_type,
    validate_attempt,
)
from auditdrill.cohort import (
    CohortAggregator,
    CohortReport,
    CohortRow,
    CohortSummary,
    LearnerStatus,
    RecommendedAction,
    ValueMetrics,
    build_cohort_report,
    build_value_metrics,
    pick_baseline_attempt,
    pick_latest_attempt,
)
from auditdrill.config import ReadinessBar, SimulatorConfig
from auditdrill.draft import (
    Draft,
    drafts_equal,
    empty_draft,
    normalize_allocation,
    normalize_draft,
)
from auditdrill.errors import (
    AuditDrillError,
    ConfigurationError,
    PersistenceError,
    PersistenceTimeout,
)
from auditdrill.exercises import (
    FIXED_ASSET_TESTING,
    OUTSTANDING_CHECK_TESTING,
    ExerciseConfig,
    build_exercise_config,
)
from auditdrill.grading import (
    AnswerKeySource,
    GradingEvaluator,
    GradingReport,
    StaticAnswerKeySource,
    extract_decision_from_allocation,
    normalize_expected_classification_key,
    parse_amount,
)
from auditdrill.protocol import (
    CLASSIFICATION_KEYS,
    AllocationDecision,
    AnswerKey,
    AttemptRecord,
    AttemptType,
    BreakdownEntry,
    GradingSummary,
    ItemVerdict,
    LearnerRecord,
    ProgressState,
    RemoteSnapshot,
    Verdict,
    WorkflowState,
)
from auditdrill.scheduler import SaveScheduler
from auditdrill.session import ExerciseSession
from auditdrill.store import DocumentStore, InMemoryDocumentStore, SQLiteDocumentStore
from auditdrill.sync import SyncEngine
from auditdrill.validators import (
    ItemFacts,
    ValidatorRegistry,
    default_validator_registry,
)
from auditdrill.workflow import WorkflowMachine

__all__ = [
    # Records
    "AllocationDecision",
    "AnswerKey",
    "AttemptRecord",
    "AttemptType",
    "BreakdownEntry",
    "CLASSIFICATION_KEYS",
    "GradingSummary",
    "ItemVerdict",
    "LearnerRecord",
    "ProgressState",
    "RemoteSnapshot",
    "Verdict",
    "WorkflowState",
    # Configuration
    "ExerciseConfig",
    "FIXED_ASSET_TESTING",
    "OUTSTANDING_CHECK_TESTING",
    "ReadinessBar",
    "SimulatorConfig",
    "build_exercise_config",
    # Errors
    "AuditDrillError",
    "ConfigurationError",
    "PersistenceError",
    "PersistenceTimeout",
    # Session
    "Draft",
    "ExerciseSession",
    "SaveScheduler",
    "SyncEngine",
    "WorkflowMachine",
    "drafts_equal",
    "empty_draft",
    "normalize_allocation",
    "normalize_draft",
    # Stores
    "AsyncStoreWrapper",
    "AttemptHistorySource",
    "AttemptStore",
    "DocumentStore",
    "InMemoryDocumentStore",
    "SQLiteDocumentStore",
    "resolve_attempt_type",
    "validate_attempt",
    # Grading
    "AnswerKeySource",
    "GradingEvaluator",
    "GradingReport",
    "ItemFacts",
    "StaticAnswerKeySource",
    "ValidatorRegistry",
    "default_validator_registry",
    "extract_decision_from_allocation",
    "normalize_expected_classification_key",
    "parse_amount",
    # Cohort
    "CohortAggregator",
    "CohortReport",
    "CohortRow",
    "CohortSummary",
    "LearnerStatus",
    "RecommendedAction",
    "ValueMetrics",
    "build_cohort_report",
    "build_value_metrics",
    "pick_baseline_attempt",
    "pick_latest_attempt",
]
