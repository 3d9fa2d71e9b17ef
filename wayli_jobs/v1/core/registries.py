from typing import Any, Generic, Protocol, TypeVar

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations[name] = implementation

    def unregister(self, name: str) -> None:
        """Remove an implementation; missing names are ignored."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot unregister '{name}' from {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations.pop(name, None)

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def has(self, name: str) -> bool:
        return name in self._implementations

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Job Registry - task processors run by workers
class JobHandler(Protocol):
    """Protocol for the processors that execute background jobs.

    ``checkpoint_interval_s`` is the longest stretch of work the processor
    does between two ``ctx.checkpoint()`` calls. Cancellation and ownership
    loss are only observed at checkpoints.
    """

    checkpoint_interval_s: float

    async def handle(
        self,
        ctx: Any,  # JobContext
        payload: dict[str, Any],
    ) -> dict[str, Any] | None:
        """
        Process one job.

        Args:
            ctx: Job context with the job snapshot, owner principal,
                progress reporting and cancellation checkpoints
            payload: Job-specific parameters

        Returns:
            Optional result dictionary stored on the completed job
        """
        ...


class JobRegistry(Registry[JobHandler]):
    """Registry for job processors, keyed by job type."""

    def __init__(self):
        super().__init__("Job")


# Global registry instance (singleton)
job_registry = JobRegistry()
