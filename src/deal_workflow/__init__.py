"""
Deal Workflow Core

Data-collection core for loan deals: resolves which fields a document
packet needs, derives calculated date fields, gates which participant may
enter data, and tracks the deal's draft -> ready -> generated status.
"""

__version__ = '0.1.0'

# Re-export key classes for convenience
from .service import DealEvaluationService, EvaluationResult, FieldEditResult
from .resolver import (
    resolve_packet_fields,
    build_resolved_field_set,
    get_missing_required_fields,
    is_section_complete,
    is_packet_complete,
)
from .calculation import compute_calculated_fields, merge_calculated_values
from .orchestration import (
    EntryOrchestrator,
    RosterWatcher,
    compute_orchestration_state,
)
from .status import DealStatusMachine, evaluate_status_transition
from .repository import DealDataSource, DealRepository
from .logging import (
    configure_logging,
    logging_context,
    EvaluationTimer,
)
from .errors import (
    DealWorkflowError,
    NotFoundError,
    ValidationError,
    NotReadyError,
    AlreadyCompletedError,
    NotAllowedError,
    DataSourceError,
    TransientIOError,
)

__all__ = [
    # Version
    '__version__',
    # Service
    'DealEvaluationService',
    'EvaluationResult',
    'FieldEditResult',
    # Resolver
    'resolve_packet_fields',
    'build_resolved_field_set',
    'get_missing_required_fields',
    'is_section_complete',
    'is_packet_complete',
    # Calculation
    'compute_calculated_fields',
    'merge_calculated_values',
    # Orchestration
    'EntryOrchestrator',
    'RosterWatcher',
    'compute_orchestration_state',
    # Status
    'DealStatusMachine',
    'evaluate_status_transition',
    # Data sources
    'DealDataSource',
    'DealRepository',
    # Logging
    'configure_logging',
    'logging_context',
    'EvaluationTimer',
    # Errors
    'DealWorkflowError',
    'NotFoundError',
    'ValidationError',
    'NotReadyError',
    'AlreadyCompletedError',
    'NotAllowedError',
    'DataSourceError',
    'TransientIOError',
]
