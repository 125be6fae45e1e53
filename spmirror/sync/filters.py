"""Name filter deciding which containers are in scope."""

from typing import Optional

from ..utils import DEFAULT_FILTER_TOKEN


class NameFilter:
    """Substring-presence predicate over container names.

    A container (document library or folder) is in scope when its name
    contains the configured token. The filter is applied independently at
    every level; a folder that fails it is pruned together with its whole
    subtree. Files are never filtered by name.

    Examples:
        >>> name_filter = NameFilter("_")
        >>> name_filter.matches("Proj_A")
        True
        >>> name_filter.matches("Temp")
        False
    """

    def __init__(self, token: str = DEFAULT_FILTER_TOKEN):
        """Initialize the filter.

        Args:
            token: Substring a name must contain. An empty token matches
                every name.
        """
        self.token = token

    def matches(self, name: str) -> bool:
        return self.token in name

    def first_mismatch(self, names: list[str]) -> Optional[str]:
        """Return the first name that fails the filter, or None."""
        for name in names:
            if not self.matches(name):
                return name
        return None

    def __repr__(self) -> str:
        return f"NameFilter(token={self.token!r})"
