"""
Typed failures raised by the Contract Farming core
"""


class ContractFarmingError(Exception):
    """Base class for every failure the core reports to its callers"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ContractFarmingError):
    """Malformed or out-of-range input (non-positive quantity, price below minimum, ...)"""


class InvalidTransitionError(ContractFarmingError):
    """Contract state machine transition not permitted from the current state"""


class AuthorizationError(ContractFarmingError):
    """Actor is not entitled to perform the requested operation"""


class NotFoundError(ContractFarmingError):
    """Referenced listing, contract or principal does not exist"""


class UpstreamError(ContractFarmingError):
    """Document store or identity provider call failed"""
