from typing import List, Optional, Protocol, Tuple


class Navigator(Protocol):
    """Whatever owns the current location (router, CLI shell, test double)."""

    @property
    def current_path(self) -> str: ...

    def navigate(self, path: str, *, replace: bool = False) -> None: ...


class InMemoryNavigator:
    """History-keeping navigator used by the orchestrator in headless runs and by tests."""

    def __init__(self, start: str = "/"):
        self._path = start
        self.history: List[Tuple[str, bool]] = []

    @property
    def current_path(self) -> str:
        return self._path

    def navigate(self, path: str, *, replace: bool = False) -> None:
        self.history.append((path, replace))
        self._path = path

    @property
    def last(self) -> Optional[Tuple[str, bool]]:
        return self.history[-1] if self.history else None


def is_public_path(path: str, prefixes) -> bool:
    path = path or "/"
    return any(path == p or path.startswith(p.rstrip("/") + "/") for p in prefixes)
