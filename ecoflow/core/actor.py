"""Acting user passed into every workflow operation."""

from dataclasses import dataclass


@dataclass(frozen=True)
class Actor:
    """Pre-authorized caller identity.

    ``id`` is stored on rows (requested_by_id, author_id, …); ``name`` is the
    display snapshot kept next to it so the trail stays readable after the
    user record is gone.
    """
    id: str
    name: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.id
