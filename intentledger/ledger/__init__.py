"""
Transaction Validator, transaction programs and the ordering interface.
"""
from .ordering import Block, OrderingService, InMemoryOrderingService
from .programs import (
    BUILTIN_PROGRAMS, TRANSFER_CODE, RAW_WRITES_CODE, INIT_ACCOUNT_CODE, UPDATE_VP_CODE,
    default_program_sandbox
)
from .validator import TransactionValidator

__all__ = [
    'Block',
    'OrderingService',
    'InMemoryOrderingService',
    'BUILTIN_PROGRAMS',
    'TRANSFER_CODE',
    'RAW_WRITES_CODE',
    'INIT_ACCOUNT_CODE',
    'UPDATE_VP_CODE',
    'default_program_sandbox',
    'TransactionValidator',
]
