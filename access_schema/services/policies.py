"""Pluggable policies injected into the assignment store and the evaluator."""

from abc import ABC, abstractmethod
from fnmatch import fnmatchcase
from typing import Dict, List, Optional, Sequence


class ConflictPolicy(ABC):
    """Decides whether a new role conflicts with roles the principal already holds."""

    @abstractmethod
    def conflicts(self, new_role: str, existing_roles: Sequence[str]) -> bool:
        ...


class NoConflicts(ConflictPolicy):
    def conflicts(self, new_role: str, existing_roles: Sequence[str]) -> bool:
        return False


class PatternConflictPolicy(ConflictPolicy):
    """Conflict rules keyed by fnmatch pattern.

    ``{"org/*/treasurer": ["org/*/auditor"]}`` blocks granting any treasurer
    role to a principal that already holds an auditor role.
    """

    def __init__(self, rules: Dict[str, List[str]]):
        self.rules = rules

    def conflicting_patterns(self, new_role: str) -> List[str]:
        patterns: List[str] = []
        for role_pattern, conflicts in self.rules.items():
            if fnmatchcase(new_role, role_pattern):
                patterns.extend(conflicts)
        return patterns

    def conflicts(self, new_role: str, existing_roles: Sequence[str]) -> bool:
        for conflict_pattern in self.conflicting_patterns(new_role):
            for role in existing_roles:
                if fnmatchcase(role, conflict_pattern):
                    return True
        return False


class AssignmentValidator(ABC):
    """Last-step custom check run after conflicts and the role limit."""

    @abstractmethod
    def validate(self, user_id: int, new_role: str, existing_roles: Sequence[str]) -> bool:
        ...


class AllowAll(AssignmentValidator):
    def validate(self, user_id: int, new_role: str, existing_roles: Sequence[str]) -> bool:
        return True


class ParentAccessPolicy(ABC):
    """Whether holding an ancestor role grants access to a deeper target."""

    @abstractmethod
    def grants(self, parent_path: str, target_path: str) -> bool:
        ...


class DenyParentAccess(ParentAccessPolicy):
    def grants(self, parent_path: str, target_path: str) -> bool:
        return False


class AllowParentAccess(ParentAccessPolicy):
    def grants(self, parent_path: str, target_path: str) -> bool:
        return True


def parent_policy_from_settings(enabled: bool) -> ParentAccessPolicy:
    return AllowParentAccess() if enabled else DenyParentAccess()


class CapabilityMap(ABC):
    """Maps a role path to the capability strings it confers."""

    @abstractmethod
    def capabilities(self, role_path: str) -> List[str]:
        ...

    def restrictions(self, user_id: int, roles: Sequence[str]) -> List[str]:
        """Restrictions that limit the principal despite its roles. None by default."""
        return []


class StaticCapabilityMap(CapabilityMap):
    """Capabilities keyed by fnmatch pattern, e.g. ``{"org/*/admin": ["edit_posts"]}``."""

    def __init__(self, mapping: Optional[Dict[str, List[str]]] = None):
        self.mapping = mapping or {}

    def capabilities(self, role_path: str) -> List[str]:
        caps: List[str] = []
        for pattern, granted in self.mapping.items():
            if fnmatchcase(role_path, pattern):
                caps.extend(granted)
        return caps
