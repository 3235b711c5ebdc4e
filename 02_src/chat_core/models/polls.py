"""Poll data models."""

from dataclasses import dataclass, field


@dataclass
class PollOption:
    """One choice of a poll with its running tally."""

    text: str
    votes: int = 0


@dataclass
class Poll:
    """A poll hosted by a message.

    `voters` maps each voter to the option index they chose; one entry per
    voter.
    """

    id: str
    message_id: str
    conversation_id: str
    options: list[PollOption]
    question: str = ""
    voters: dict[str, int] = field(default_factory=dict)
    closed: bool = False

    @property
    def voter_ids(self) -> frozenset[str]:
        return frozenset(self.voters)

    @property
    def tallies(self) -> list[int]:
        return [option.votes for option in self.options]

    @property
    def total_votes(self) -> int:
        return sum(self.tallies)


@dataclass
class PollVote:
    """A single vote as reported by the backend."""

    poll_id: str
    voter_id: str
    option_index: int
