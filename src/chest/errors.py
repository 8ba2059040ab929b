from typing import Optional, Sequence


class ChestError(Exception):
    def __init__(self, msg: Optional[str] = None):
        super().__init__(msg)


class PreconditionError(ChestError):
    """Raised before any container is touched."""


class NoRepositoryError(PreconditionError):
    def __init__(self, container_name: Optional[str] = None):
        target = f" for container '{container_name}'" if container_name else ""
        super().__init__(f"No repository found{target}, please provide one.")


class NoMatchingContainersError(PreconditionError):
    def __init__(self, name: str):
        super().__init__(f"No container matches '{name}'.")
        self.name = name


class ContainerRunningError(PreconditionError):
    def __init__(self, container_name: str):
        super().__init__(
            f"Container '{container_name}' is running. Shut down the container and its whole stack before restoring"
            " to avoid inconsistencies."
        )
        self.container_name = container_name


class OperationAbortedError(ChestError):
    """Raised when the user declines a safety confirmation."""


class CyclicDependencyError(ChestError):
    def __init__(self, members: Sequence[str]):
        super().__init__(f"Cyclic dependency between containers: {' -> '.join(members)}.")
        self.members = list(members)
