"""Validator roster: which validators currently participate in consensus."""

from abc import ABC, abstractmethod

from peerwatch.models import NodeObservation

ACTIVE_IN_COMMITTEE = "ActiveInCommittee"


class ValidatorRoster(ABC):
    """Source of active consensus participant (baker) ids."""

    @abstractmethod
    async def active_participants(self) -> set[int]:
        """Return the ids of validators currently in the consensus committee."""


class StaticRoster(ValidatorRoster):
    """Roster with a fixed set of ids, e.g. loaded from a chain export."""

    def __init__(self, baker_ids: set[int] | list[int]):
        self.baker_ids = set(baker_ids)

    async def active_participants(self) -> set[int]:
        return set(self.baker_ids)


class CommitteeRoster(ValidatorRoster):
    """Roster derived from status records that report committee membership.

    A baker counts as active when a node running it reports
    ``ActiveInCommittee``.
    """

    def __init__(self, observations: list[NodeObservation]):
        self.observations = observations

    async def active_participants(self) -> set[int]:
        return {
            obs.consensus_baker_id
            for obs in self.observations
            if obs.consensus_baker_id is not None
            and obs.baking_committee_member == ACTIVE_IN_COMMITTEE
        }
