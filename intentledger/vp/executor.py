"""
Predicate Executor: runs an account's validity predicate against a diff.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional

from ..config import LedgerConfig
from ..exceptions import PredicateRejectedError, RejectReason, RejectionError, SandboxFaultError
from ..models import BlockInfo, Transaction
from ..state import keys
from ..state.store import StagedView, StateDiff
from ..utils import short
from .builtin import BUILTIN_PREDICATES, VP_DEFAULT
from .context import PredicateContext
from .sandbox import LocalSandbox, Quota, Sandbox, SandboxStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PredicateVerdict:
    """Result of evaluating one account's predicate."""
    address: str
    accepted: bool
    code: str
    reason: str = ""
    error_code: str = RejectReason.UNKNOWN_UNSPECIFIED.value
    steps_used: int = 0

    def as_error(self) -> RejectionError:
        """The exception describing a rejected verdict."""
        if self.error_code == RejectReason.SANDBOX_FAULT.value:
            return SandboxFaultError(
                f"Predicate of {self.address} faulted: {self.reason}", account=self.address
            )
        return PredicateRejectedError(self.address, self.reason)


def default_sandbox() -> LocalSandbox:
    """A LocalSandbox preloaded with the built-in predicates."""
    return LocalSandbox(dict(BUILTIN_PREDICATES))


class PredicateExecutor:
    """
    Evaluates validity predicates inside the sandbox.

    The predicate is always loaded from the pre-diff state, so a
    transaction cannot approve itself with a predicate it is installing.
    """

    def __init__(self, sandbox: Optional[Sandbox] = None, config: Optional[LedgerConfig] = None):
        self.sandbox = sandbox or default_sandbox()
        self.config = config or LedgerConfig()

    @property
    def quota(self) -> Quota:
        return Quota(steps=self.config.vp_step_quota, time_ms=self.config.vp_time_quota_ms)

    def load_predicate(self, address: str, view: StagedView) -> Dict[str, Any]:
        """Read the predicate spec in force for ``address`` before the diff."""
        spec = keys.decode_value(view.pre_read(keys.vp_key(address)))
        if spec is None:
            return {"code": VP_DEFAULT, "params": {}}
        if not isinstance(spec, dict) or not isinstance(spec.get("code"), str):
            raise ValueError(f"malformed predicate spec for {address}: {spec!r}")
        return {"code": spec["code"], "params": spec.get("params") or {}}

    def evaluate(
        self,
        address: str,
        diff: StateDiff,
        view: StagedView,
        tx: Transaction,
        signers: FrozenSet[str] = frozenset(),
        block: Optional[BlockInfo] = None,
    ) -> PredicateVerdict:
        """
        Run ``address``'s predicate against ``diff``.

        Quota violations and traps reject for this account; they are
        never raised.
        """
        block = block or BlockInfo(height=0, timestamp_ms=0)
        try:
            spec = self.load_predicate(address, view)
        except ValueError as e:
            return PredicateVerdict(address, False, "", str(e), RejectReason.PREDICATE_REJECTED.value)

        code = spec["code"]
        ctx = PredicateContext(address, view, diff, tx, signers, block, spec["params"])
        outcome = self.sandbox.run(code, ctx, self.quota)

        if outcome.status == SandboxStatus.OK:
            if outcome.result is True:
                verdict = PredicateVerdict(address, True, code, steps_used=outcome.steps_used)
            else:
                reason = ctx.rejection_reason or "predicate returned false"
                verdict = PredicateVerdict(
                    address, False, code, reason,
                    RejectReason.PREDICATE_REJECTED.value, outcome.steps_used
                )
        elif outcome.status == SandboxStatus.ABORTED:
            verdict = PredicateVerdict(
                address, False, code, outcome.error,
                RejectReason.PREDICATE_REJECTED.value, outcome.steps_used
            )
        else:
            verdict = PredicateVerdict(
                address, False, code, f"{outcome.status.value}: {outcome.error}",
                RejectReason.SANDBOX_FAULT.value, outcome.steps_used
            )

        logger.debug(
            "Predicate %s of %s -> %s %s",
            code, short(address, 10), "accept" if verdict.accepted else "reject", verdict.reason
        )
        return verdict
