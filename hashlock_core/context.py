"""
Execution context for escrow operations.

Every mutating operation receives the calling principal and the current
time explicitly.  Both are trusted: whoever constructs the context (the API
layer after verifying a signature, or a test) is responsible for them.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ExecutionContext:
    caller: str
    now: int

    def later(self, seconds: int) -> ExecutionContext:
        return ExecutionContext(caller=self.caller, now=self.now + seconds)

    def as_caller(self, caller: str) -> ExecutionContext:
        return ExecutionContext(caller=caller, now=self.now)
