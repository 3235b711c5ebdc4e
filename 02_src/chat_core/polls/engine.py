"""PollEngine: poll construction, vote rules and tally bookkeeping."""

from ..errors import (
    AlreadyVotedError,
    InvalidInputError,
    InvalidOptionError,
    InvariantViolation,
    PollClosedError,
)
from ..logging_config import get_logger
from ..models import Poll, PollOption

logger = get_logger(__name__)

MIN_POLL_OPTIONS = 2
DEFAULT_MAX_POLL_OPTIONS = 10


class PollEngine:
    """Pure poll logic used by ConversationStore.

    Tallies are maintained incrementally; `recount` rebuilds them from the
    voter registry and `verify` checks that both always agree.
    """

    def __init__(self, max_options: int = DEFAULT_MAX_POLL_OPTIONS):
        self._max_options = max_options

    def validate_options(self, options: list[str]) -> list[str]:
        """Return stripped option texts or raise InvalidInputError."""
        if len(options) < MIN_POLL_OPTIONS:
            raise InvalidInputError(
                f"A poll needs at least {MIN_POLL_OPTIONS} options, got {len(options)}"
            )
        if len(options) > self._max_options:
            raise InvalidInputError(
                f"A poll accepts at most {self._max_options} options, got {len(options)}"
            )

        cleaned = [option.strip() for option in options]
        for position, text in enumerate(cleaned):
            if not text:
                raise InvalidInputError(f"Poll option {position} is empty")
        return cleaned

    def build(
        self,
        poll_id: str,
        message_id: str,
        conversation_id: str,
        options: list[str],
        question: str = "",
    ) -> Poll:
        """Create a poll with zero tallies."""
        return Poll(
            id=poll_id,
            message_id=message_id,
            conversation_id=conversation_id,
            question=question.strip(),
            options=[PollOption(text=text) for text in self.validate_options(options)],
        )

    def check_vote(self, poll: Poll, voter_id: str, option_index: int) -> None:
        """Raise the error a vote would produce, without touching the poll."""
        if poll.closed:
            raise PollClosedError(f"Poll {poll.id} is closed")
        if voter_id in poll.voters:
            raise AlreadyVotedError(f"{voter_id} already voted on poll {poll.id}")
        if not 0 <= option_index < len(poll.options):
            raise InvalidOptionError(
                f"Option {option_index} out of range for poll {poll.id} "
                f"({len(poll.options)} options)"
            )

    def apply_vote(self, poll: Poll, voter_id: str, option_index: int) -> bool:
        """Apply a vote once per voter; returns False when it was already applied.

        Used for backend echoes, so a vote seen twice is counted once.
        """
        if voter_id in poll.voters:
            return False
        if poll.closed or not 0 <= option_index < len(poll.options):
            logger.warning(
                "Ignoring vote on poll %s: closed=%s option=%s",
                poll.id,
                poll.closed,
                option_index,
                extra={"poll_id": poll.id},
            )
            return False

        # Both halves of the pairing change together, with no await in between
        poll.options[option_index].votes += 1
        poll.voters[voter_id] = option_index
        return True

    def merge(self, poll: Poll, snapshot: Poll) -> bool:
        """Fold a backend snapshot into a local poll; returns True if anything changed."""
        changed = False
        closing = snapshot.closed and not poll.closed
        for voter_id, option_index in snapshot.voters.items():
            changed = self.apply_vote(poll, voter_id, option_index) or changed
        if closing:
            self.close(poll)
            changed = True
        return changed

    def close(self, poll: Poll) -> None:
        poll.closed = True

    @staticmethod
    def recount(poll: Poll) -> list[int]:
        """Tallies rebuilt from the voter registry."""
        counts = [0] * len(poll.options)
        for option_index in poll.voters.values():
            counts[option_index] += 1
        return counts

    def verify(self, poll: Poll) -> None:
        """Raise InvariantViolation if tallies and voters disagree."""
        if poll.tallies != self.recount(poll):
            raise InvariantViolation(
                f"Poll {poll.id} tallies {poll.tallies} do not match "
                f"voters {self.recount(poll)}"
            )
