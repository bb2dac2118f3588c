"""
Escrow core: money arithmetic, state machines, ledger and the workflow engines
"""
from .financial_precision import (
    to_decimal,
    round_financial,
    to_float,
    validate_non_negative,
    validate_positive,
    safe_multiply,
    safe_divide,
    safe_subtract,
    safe_add,
    calculate_percentage,
    FinancialPrecisionError,
    NegativeValueError
)

from .errors import (
    EscrowError,
    AuthorizationError,
    EscrowValidationError,
    NotFoundError,
    StateGuardError,
    InsufficientFundsError,
    InvariantViolationError,
    ConcurrencyConflictError
)

from .invariant_validator import FinancialInvariantValidator

from .state_machine import (
    StateMachine,
    StateMachineError,
    InvalidTransitionError,
    GuardConditionError,
    UnknownActionError
)

from .ledger import LedgerService, LedgerChange

from .transaction import (
    DomainEventEmitter,
    UnitOfWork,
    TransactionManager
)

__all__ = [
    # Financial Precision
    'to_decimal',
    'round_financial',
    'to_float',
    'validate_non_negative',
    'validate_positive',
    'safe_multiply',
    'safe_divide',
    'safe_subtract',
    'safe_add',
    'calculate_percentage',
    'FinancialPrecisionError',
    'NegativeValueError',
    # Errors
    'EscrowError',
    'AuthorizationError',
    'EscrowValidationError',
    'NotFoundError',
    'StateGuardError',
    'InsufficientFundsError',
    'InvariantViolationError',
    'ConcurrencyConflictError',
    # Ledger
    'FinancialInvariantValidator',
    'LedgerService',
    'LedgerChange',
    # State Machine
    'StateMachine',
    'StateMachineError',
    'InvalidTransitionError',
    'GuardConditionError',
    'UnknownActionError',
    # Transactions
    'DomainEventEmitter',
    'UnitOfWork',
    'TransactionManager',
]
