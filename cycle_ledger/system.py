"""
Ledger System Wiring

Builds storage and every manager from configuration, so the HTTP layer, the
maintenance scripts and the tests all share one wiring.
"""

from typing import Any, Mapping, Optional

from .config import LedgerConfig, get_config
from .cycles import CycleManager
from .institutions import InstitutionManager
from .simulator import Projection, parse_simulation_params, simulate
from .storage import StorageInterface, create_storage
from .transactions import TransactionRepository, TransactionService


class LedgerSystem:
    """Cycle ledger with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[LedgerConfig] = None):
        self.config = config or get_config()

        # Initialize storage
        self.storage = storage or create_storage(self.config.database_url)

        # Initialize core components
        self.transaction_repository = TransactionRepository(self.storage)
        self.cycle_manager = CycleManager(self.storage, self.transaction_repository)
        self.institution_manager = InstitutionManager(
            self.storage, self.config.upload_dir, self.config.icon_max_bytes
        )
        self.transaction_service = TransactionService(
            self.storage, self.transaction_repository,
            self.cycle_manager, self.institution_manager
        )

    def simulate(self, raw: Mapping[str, Any]) -> Projection:
        """Validate raw simulator input and run the projection"""
        params = parse_simulation_params(raw, max_loop_count=self.config.max_loop_count)
        return simulate(params)

    def close(self) -> None:
        self.storage.close()
