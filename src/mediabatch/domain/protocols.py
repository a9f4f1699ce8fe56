"""Protocol definitions for dependency inversion."""

from typing import ContextManager, List, Protocol


class IMetricsCollector(Protocol):
    """Interface for collecting run metrics."""

    def increment_counter(self, name: str, amount: int = 1) -> None:
        """Increment a named counter."""
        ...

    def get_counter(self, name: str) -> int:
        ...

    def timed(self, name: str) -> ContextManager[None]:
        """Time a block under the given name."""
        ...

    def format_summary(self) -> List[str]:
        ...
