"""
Sandbox interface for predicate and transaction code.

The ledger treats executable code as opaque: it hands a code name, an
inputs object and a quota to a Sandbox and gets back an outcome. The
LocalSandbox runs registered Python programs, metering every host call
against a step quota and a wall-clock deadline.
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..exceptions import RejectionError

logger = logging.getLogger(__name__)


class SandboxStatus(str, Enum):
    OK = "OK"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    TRAPPED = "TRAPPED"
    ABORTED = "ABORTED"


@dataclass(frozen=True)
class Quota:
    steps: int
    time_ms: int


@dataclass
class SandboxOutcome:
    """
    Result of one sandbox run.

    ``abort`` is set when the program stopped itself with a typed
    rejection (for example a stale intent); ``error`` describes traps and
    quota violations.
    """
    status: SandboxStatus
    result: Any = None
    steps_used: int = 0
    error: str = ""
    abort: Optional[RejectionError] = None

    @property
    def ok(self) -> bool:
        return self.status == SandboxStatus.OK


class QuotaExhausted(BaseException):
    """
    Raised inside a run when the step or time budget is spent.

    Derives from BaseException so program code catching Exception cannot
    swallow it.
    """


class GasMeter:
    """Counts steps for one run and enforces the step and time budget."""

    def __init__(self, quota: Quota, clock: Callable[[], float] = time.monotonic):
        self.quota = quota
        self.steps_used = 0
        self._clock = clock
        self._deadline = clock() + quota.time_ms / 1000.0

    def charge(self, steps: int = 1) -> None:
        self.steps_used += steps
        if self.steps_used > self.quota.steps:
            raise QuotaExhausted(f"step quota of {self.quota.steps} exceeded")
        if self._clock() > self._deadline:
            raise QuotaExhausted(f"time quota of {self.quota.time_ms} ms exceeded")


class MeteredContext:
    """Base for objects handed to sandboxed code; every host call charges the meter."""

    meter: Optional[GasMeter] = None

    def attach_meter(self, meter: GasMeter) -> None:
        self.meter = meter

    def _charge(self, steps: int = 1) -> None:
        if self.meter is not None:
            self.meter.charge(steps)


Program = Callable[[Any], Any]


class Sandbox(ABC):
    """
    Abstract base class for code executors.

    Implementations must be deterministic, have no I/O and share no mutable
    state between runs.
    """

    @abstractmethod
    def has_code(self, code: str) -> bool:
        pass

    @abstractmethod
    def run(self, code: str, inputs: Any, quota: Quota) -> SandboxOutcome:
        """
        Run ``code`` against ``inputs`` within ``quota``.

        Returns:
            SandboxOutcome; never raises for faults inside the code
        """
        pass


class LocalSandbox(Sandbox):
    """
    Runs Python callables registered under a code name.

    The registry is the tagged-dispatch table: accounts store the name of
    their predicate, and the sandbox resolves it here.
    """

    def __init__(self, programs: Optional[Dict[str, Program]] = None):
        self._programs: Dict[str, Program] = dict(programs or {})
        self._lock = threading.RLock()

    def register(self, code: str, program: Program) -> None:
        with self._lock:
            if code in self._programs:
                logger.debug("Replacing sandbox program %s", code)
            self._programs[code] = program

    def has_code(self, code: str) -> bool:
        with self._lock:
            return code in self._programs

    def codes(self):
        with self._lock:
            return sorted(self._programs)

    def run(self, code: str, inputs: Any, quota: Quota) -> SandboxOutcome:
        with self._lock:
            program = self._programs.get(code)
        if program is None:
            return SandboxOutcome(SandboxStatus.TRAPPED, error=f"unknown code {code!r}")

        meter = GasMeter(quota)
        if isinstance(inputs, MeteredContext):
            inputs.attach_meter(meter)
        try:
            meter.charge()
            result = program(inputs)
        except QuotaExhausted as e:
            logger.debug("Sandbox run of %s exceeded quota: %s", code, e)
            return SandboxOutcome(SandboxStatus.QUOTA_EXCEEDED, steps_used=meter.steps_used, error=str(e))
        except RejectionError as e:
            return SandboxOutcome(SandboxStatus.ABORTED, steps_used=meter.steps_used, error=str(e), abort=e)
        except Exception as e:
            logger.debug("Sandbox run of %s trapped: %r", code, e)
            return SandboxOutcome(
                SandboxStatus.TRAPPED, steps_used=meter.steps_used, error=f"{type(e).__name__}: {e}"
            )
        return SandboxOutcome(SandboxStatus.OK, result=result, steps_used=meter.steps_used)
