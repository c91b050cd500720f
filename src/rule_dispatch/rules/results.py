"""
Execution result model.

A job execution ends in exactly one of three states:

- ``IGNORED``: the job was skipped on purpose (missing configuration,
  unsupported event). No dump is recorded.
- ``SUCCESS``: the external call succeeded. A dump is always present.
- ``FAILED``: the external call failed. A dump and the causing error are
  always present.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ExecutionStatus(Enum):
    IGNORED = "Ignored"
    SUCCESS = "Success"
    FAILED = "Failed"


@dataclass(frozen=True)
class ExecutionResult:
    """
    Outcome of one job execution.

    Use the ``ignored``, ``success`` and ``failed`` constructors; direct
    construction is validated so an inconsistent result cannot exist.

    Attributes:
        status: Which of the three outcomes happened
        dump: Human-readable audit record of the attempt
        error: Causing exception for failed executions
    """

    status: ExecutionStatus
    dump: Optional[str] = None
    error: Optional[BaseException] = None

    def __post_init__(self) -> None:
        if self.status == ExecutionStatus.IGNORED:
            if self.dump is not None or self.error is not None:
                raise ValueError("Ignored results carry neither dump nor error")
        elif self.dump is None:
            raise ValueError(f"{self.status.value} results require a dump")

        if self.status == ExecutionStatus.SUCCESS and self.error is not None:
            raise ValueError("Successful results cannot carry an error")
        if self.status == ExecutionStatus.FAILED and self.error is None:
            raise ValueError("Failed results require an error")

    @classmethod
    def ignored(cls) -> "ExecutionResult":
        return cls(ExecutionStatus.IGNORED)

    @classmethod
    def success(cls, dump: str) -> "ExecutionResult":
        return cls(ExecutionStatus.SUCCESS, dump=dump)

    @classmethod
    def failed(cls, error: BaseException, dump: Optional[str] = None) -> "ExecutionResult":
        """Failed result; the dump defaults to the error text."""
        if dump is None:
            dump = f"{type(error).__name__}: {error}"
        return cls(ExecutionStatus.FAILED, dump=dump, error=error)

    @property
    def is_success(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS

    @property
    def is_failed(self) -> bool:
        return self.status == ExecutionStatus.FAILED

    @property
    def is_ignored(self) -> bool:
        return self.status == ExecutionStatus.IGNORED

    @property
    def is_timeout(self) -> bool:
        return isinstance(self.error, TimeoutError)
