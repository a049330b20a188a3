"""Public interface for the ``statement_import`` package.

Re-exports the pipeline entry point, its collaborators, and the data model
as the stable import surface. There is no runtime logic here.
"""

from .cache import CategoryMappingCache, MerchantCategoryCache
from .config import PipelineSettings
from .errors import (
    CategorizationServiceError,
    EmptyFileError,
    FileFatalError,
    UnmappableColumnsError,
)
from .models import (
    CandidateTransaction,
    ColumnMapping,
    ImportResult,
    ImportState,
    MerchantQuery,
    ProgressEvent,
    StandardCategory,
    Transaction,
)
from .pipeline import ImportPipeline
from .service import CategorizationService, OpenAICategorizationService
from .store import InMemoryTransactionStore, SqlTransactionStore, TransactionStore

__all__ = [
    # Pipeline
    "ImportPipeline",
    "PipelineSettings",
    # Collaborators
    "CategorizationService",
    "CategoryMappingCache",
    "InMemoryTransactionStore",
    "MerchantCategoryCache",
    "OpenAICategorizationService",
    "SqlTransactionStore",
    "TransactionStore",
    # Models
    "CandidateTransaction",
    "ColumnMapping",
    "ImportResult",
    "ImportState",
    "MerchantQuery",
    "ProgressEvent",
    "StandardCategory",
    "Transaction",
    # Errors
    "CategorizationServiceError",
    "EmptyFileError",
    "FileFatalError",
    "UnmappableColumnsError",
]
