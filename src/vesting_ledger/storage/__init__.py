"""Storage layer - Database schemas and repositories."""

from vesting_ledger.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from vesting_ledger.storage.models import (
    Base,
    BeneficiaryModel,
    ClaimModel,
    IndexerStateModel,
    ReconciliationEventModel,
    SubScheduleModel,
    VaultModel,
)
from vesting_ledger.storage.repos import (
    BeneficiaryDTO,
    BeneficiaryRepository,
    ClaimDTO,
    ClaimRepository,
    IndexerStateDTO,
    IndexerStateRepository,
    ReconciliationEventDTO,
    ReconciliationEventRepository,
    SubScheduleDTO,
    SubScheduleRepository,
    VaultDTO,
    VaultRepository,
)

__all__ = [
    "Base",
    "BeneficiaryDTO",
    "BeneficiaryModel",
    "BeneficiaryRepository",
    "ClaimDTO",
    "ClaimModel",
    "ClaimRepository",
    "DatabaseManager",
    "IndexerStateDTO",
    "IndexerStateModel",
    "IndexerStateRepository",
    "ReconciliationEventDTO",
    "ReconciliationEventModel",
    "ReconciliationEventRepository",
    "SubScheduleDTO",
    "SubScheduleModel",
    "SubScheduleRepository",
    "VaultDTO",
    "VaultModel",
    "VaultRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
