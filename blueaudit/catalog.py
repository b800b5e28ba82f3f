from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Protocol, Sequence

from blueaudit.errors import EmptyRoster, SourceUnavailable


DEFAULT_REQUIRED_ROLES = ("Reader", "Microsoft Sentinel Responder", "Security Reader")


@dataclass(frozen=True)
class Analyst:
    """
    An analyst identity as it appears in the roster (usually a sign-in name).

    Equality and hashing are exact string equality: no trimming, no case folding.
    """

    identity: str

    def __str__(self) -> str:
        return self.identity


class RoleCatalog:
    """Ordered, immutable set of role names every analyst must hold."""

    def __init__(self, roles: Iterable[str]) -> None:
        ordered: list[str] = []
        seen: set[str] = set()
        for role in roles:
            if not isinstance(role, str):
                raise ValueError(f"Role names must be strings, got {role!r}")
            if role in seen:
                continue
            seen.add(role)
            ordered.append(role)
        if not ordered:
            raise ValueError("At least one required role must be configured")
        self._roles = tuple(ordered)
        self._role_set = frozenset(ordered)

    @classmethod
    def from_arg(cls, s: str) -> "RoleCatalog":
        return cls(x.strip() for x in (s or "").split(",") if x.strip())

    @property
    def required_roles(self) -> tuple[str, ...]:
        return self._roles

    def __contains__(self, role: object) -> bool:
        return role in self._role_set

    def __iter__(self):
        return iter(self._roles)

    def __len__(self) -> int:
        return len(self._roles)

    def __repr__(self) -> str:
        return f"RoleCatalog({list(self._roles)!r})"


class RosterSource(Protocol):
    name: str

    def read(self) -> Sequence[str]:
        ...


class FileRosterSource:
    """One analyst identity per line of a UTF-8 text file."""

    def __init__(self, path: str) -> None:
        self.path = path
        self.name = path

    def read(self) -> list[str]:
        try:
            # utf-8-sig drops a leading BOM written by Windows editors.
            with open(self.path, "r", encoding="utf-8-sig") as f:
                return f.read().splitlines()
        except (OSError, UnicodeDecodeError) as e:
            raise SourceUnavailable(self.path, e) from e


class StaticRosterSource:
    def __init__(self, lines: Sequence[str], name: str = "<static>") -> None:
        self._lines = list(lines)
        self.name = name

    def read(self) -> list[str]:
        return list(self._lines)


def load_roster(source: RosterSource) -> list[Analyst]:
    """
    Load the ordered analyst roster.

    Lines are taken exactly as given: duplicates and blank lines are kept and each
    occurrence is audited.
    """
    name = getattr(source, "name", repr(source))
    try:
        lines = source.read()
    except SourceUnavailable:
        raise
    except Exception as e:
        raise SourceUnavailable(name, e) from e

    analysts = [Analyst(line) for line in lines]
    if not analysts:
        raise EmptyRoster(name)
    return analysts
