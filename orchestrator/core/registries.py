from typing import TYPE_CHECKING, Generic, Protocol, TypeVar

if TYPE_CHECKING:
    from orchestrator.jobs.context import JobContext
    from orchestrator.jobs.models import ClaimedJob

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

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def has(self, name: str) -> bool:
        """Check whether an implementation is registered under name."""
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


# Job Registry - background processing handlers
class JobHandler(Protocol):
    """Protocol for job handlers invoked by the dispatcher."""

    async def handle(self, job: "ClaimedJob", ctx: "JobContext") -> None:
        """
        Run one claimed job.

        Args:
            job: The claimed job (id, type, owner, project, payload, meta)
            ctx: Callbacks for completing or failing the job

        The handler must call ``ctx.complete`` or ``ctx.fail`` before
        returning. Raising is treated as ``ctx.fail`` with the raised error.
        """
        ...


class JobRegistry(Registry[JobHandler]):
    """Registry for background job handlers."""

    def __init__(self):
        super().__init__("Job")


# Global registry instance (singleton)
job_registry = JobRegistry()
