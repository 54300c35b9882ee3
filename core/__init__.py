"""
STRATA CORE - The layered plan engine.

This package provides:
- ontology / schemas: the plan vocabulary and its document structures
- graph_db: the rustworkx id bridge and the exception taxonomy
- graph_invariants / mappings: structural and mapping validation
- changeset / versioning: preparing change requests for commit
- impact / analytics: read-only queries over a snapshot
- proposal: the planning-service boundary
"""

from core.graph_db import (
    StrataError,
    NotFoundError,
    NodeNotFoundError,
    VersionNotFoundError,
    ChangeRequestNotFoundError,
    ProjectNotFoundError,
    ProjectExistsError,
    ValidationFailure,
    IllegalStateTransition,
    AlreadyAppliedError,
    CannotDeleteAppliedError,
    SchemaMismatchError,
    DocumentError,
)
from core.graph_invariants import StructuralValidator, ValidationResult
from core.impact import ImpactAnalyzer
from core.mappings import MappingValidationResult, validate_mappings

__all__ = [
    "StrataError",
    "NotFoundError",
    "NodeNotFoundError",
    "VersionNotFoundError",
    "ChangeRequestNotFoundError",
    "ProjectNotFoundError",
    "ProjectExistsError",
    "ValidationFailure",
    "IllegalStateTransition",
    "AlreadyAppliedError",
    "CannotDeleteAppliedError",
    "SchemaMismatchError",
    "DocumentError",
    "StructuralValidator",
    "ValidationResult",
    "ImpactAnalyzer",
    "MappingValidationResult",
    "validate_mappings",
]
