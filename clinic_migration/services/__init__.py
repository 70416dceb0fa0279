"""Service layer for the migration pipeline."""

from .assistant import MigrationAssistant
from .duplicate_detector import DuplicateDetector, DuplicateResult, MatchType
from .form_classifier import FormClassification, FormKind, classify_form
from .profiler import SourceProfile, profile_artifacts
from .reconciler import Reconciler, ReconciliationReport
from .safe_context import PHIRedactor, SafeContextBuilder
from .transformer import TransformEngine, generate_canonical_id
from .validator import CanonicalValidator, ValidationOutcome
from .vault import CredentialVault

__all__ = [
    "MigrationAssistant",
    "DuplicateDetector",
    "DuplicateResult",
    "MatchType",
    "FormClassification",
    "FormKind",
    "classify_form",
    "SourceProfile",
    "profile_artifacts",
    "Reconciler",
    "ReconciliationReport",
    "PHIRedactor",
    "SafeContextBuilder",
    "TransformEngine",
    "generate_canonical_id",
    "CanonicalValidator",
    "ValidationOutcome",
    "CredentialVault",
]
