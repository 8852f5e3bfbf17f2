"""
Loan system dependencies shared by the API routers
"""

from typing import Optional

from ..storage import StorageInterface, InMemoryStorage, create_storage
from ..loans import LoanManager
from ..early_repayment import EarlyRepaymentProcessor
from ..simulation import SimulationEngine
from ..config import get_config


class LoanSystem:
    """Loan engine components wired to one storage backend"""

    def __init__(self, storage: Optional[StorageInterface] = None):
        config = get_config()
        if storage is None:
            if config.use_in_memory_storage:
                storage = InMemoryStorage()
            else:
                storage = create_storage(config.database_url)

        self.storage = storage
        self.loan_manager = LoanManager(self.storage)
        self.repayment_processor = EarlyRepaymentProcessor(self.loan_manager)
        self.simulation_engine = SimulationEngine(self.loan_manager)


# Global loan system instance, created on first use
loan_system: Optional[LoanSystem] = None


def get_loan_system() -> LoanSystem:
    global loan_system
    if loan_system is None:
        loan_system = LoanSystem()
    return loan_system
