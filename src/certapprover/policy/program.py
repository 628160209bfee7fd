"""
Policy sources and compiled programs.

Policy modules are read from disk once at startup, compiled by the
evaluator, and from then on only read. A reload builds a complete new
CompiledPolicy and swaps the reference held by PolicyHolder; a program is
never edited in place.
"""

import hashlib
import threading
from collections.abc import Iterable, Mapping
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from certapprover.errors import PolicyLoadError

POLICY_PACKAGE = "approval"
POLICY_QUERY = "allow"


class CompiledPolicy(BaseModel):
    """
    A policy program accepted by the evaluator.

    Attributes:
        sources: Module sources keyed by filename
        digest: SHA256 over the sorted (filename, source) pairs
        package: Policy package holding the decision rule
        query: Rule evaluated for the decision
        program_id: Identifier the evaluator stored the program under
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    sources: dict[str, str] = Field(..., min_length=1)
    digest: str = Field(..., min_length=64, max_length=64)
    package: str = Field(default=POLICY_PACKAGE)
    query: str = Field(default=POLICY_QUERY)
    program_id: str = Field(default="")

    @property
    def short_digest(self) -> str:
        return self.digest[:12]


def digest_sources(sources: Mapping[str, str]) -> str:
    """Compute a stable digest of a set of policy modules."""
    h = hashlib.sha256()
    for filename in sorted(sources):
        h.update(filename.encode("utf-8"))
        h.update(b"\0")
        h.update(sources[filename].encode("utf-8"))
        h.update(b"\0")
    return h.hexdigest()


def load_policy_sources(paths: Iterable[Path | str]) -> dict[str, str]:
    """
    Read policy modules from disk.

    Args:
        paths: Policy files to read

    Returns:
        Mapping of filename (as given) to module source

    Raises:
        PolicyLoadError: If any file cannot be read
    """
    sources: dict[str, str] = {}
    for path in paths:
        path = Path(path)
        try:
            sources[str(path)] = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise PolicyLoadError(filename=str(path), underlying_error=str(e)) from e
    return sources


class PolicyHolder:
    """
    Shared reference to the active policy.

    Workers read ``current`` once per evaluation; ``swap`` replaces the
    whole program atomically.
    """

    def __init__(self, policy: CompiledPolicy) -> None:
        self._policy = policy
        self._lock = threading.Lock()

    @property
    def current(self) -> CompiledPolicy:
        return self._policy

    def swap(self, policy: CompiledPolicy) -> CompiledPolicy:
        """Install a new policy and return the previous one."""
        with self._lock:
            previous, self._policy = self._policy, policy
        return previous
