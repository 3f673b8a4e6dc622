"""
Validity predicates: sandbox interface, host contexts, built-in predicates
and the Predicate Executor.
"""
from .sandbox import (
    Sandbox, LocalSandbox, SandboxOutcome, SandboxStatus, Quota, GasMeter, QuotaExhausted
)
from .context import PredicateContext, TxContext
from .builtin import (
    BUILTIN_PREDICATES, VP_DEFAULT, VP_USER, VP_DEBIT_LIMIT, VP_ACCEPT_ALL, VP_INTENTS, vp_spec
)
from .executor import PredicateExecutor, PredicateVerdict, default_sandbox

__all__ = [
    'Sandbox', 'LocalSandbox', 'SandboxOutcome', 'SandboxStatus', 'Quota', 'GasMeter',
    'QuotaExhausted', 'PredicateContext', 'TxContext', 'BUILTIN_PREDICATES', 'VP_DEFAULT',
    'VP_USER', 'VP_DEBIT_LIMIT', 'VP_ACCEPT_ALL', 'VP_INTENTS', 'vp_spec',
    'PredicateExecutor', 'PredicateVerdict', 'default_sandbox',
]
