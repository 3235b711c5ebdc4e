"""SIM implementation - scripted remote participants for development."""

import asyncio
import random
import uuid
from typing import Protocol

from chat_core.backend import IChatBackend
from chat_core.errors import ChatError
from chat_core.logging_config import get_logger
from chat_core.models import (
    Conversation,
    OutgoingMessage,
    PollPayload,
    TextPayload,
)

logger = get_logger(__name__)

VIRTUAL_USERS = [
    {"user_id": "teacher_anna", "name": "Anna Petrova (piano)"},
    {"user_id": "teacher_mark", "name": "Mark Lewis (violin)"},
    {"user_id": "student_lena", "name": "Lena Ortiz"},
]

GROUP_NAME = "Spring recital"

MESSAGES_PER_USER = [
    ["Good morning! Lena's lesson moves to 4pm", "Could we book the big hall?", "Thanks, see you there"],
    ["Hello everyone", "The violin ensemble needs one more rehearsal", "Sheet music is in the office"],
    ["Hi! I forgot my music book", "Is the recital still on Friday?", "Great, thank you"],
]

RECITAL_POLL = {
    "question": "Which date works for the recital?",
    "options": ["Friday 18:00", "Saturday 12:00", "Sunday 15:00"],
}


class ISim(Protocol):
    """Generate remote activity. Hardcoded scenario."""

    async def start(self) -> None:
        """Start hardcoded scenario."""
        ...

    async def stop(self) -> None:
        """Stop scenario."""
        ...


class Sim:
    """SIM writing as remote participants straight into the backend."""

    def __init__(
        self,
        backend: IChatBackend | None = None,
        session_user_id: str = "director",
        delay_range: tuple[float, float] = (1.0, 3.0),
        rng: random.Random | None = None,
    ):
        self._backend = backend
        self._session_user_id = session_user_id
        self._delay_range = delay_range
        self._rng = rng or random.Random()
        self._running = False
        self._task: asyncio.Task | None = None

    def set_backend(self, backend: IChatBackend, session_user_id: str) -> None:
        """Inject the backend once the application has started."""
        self._backend = backend
        self._session_user_id = session_user_id

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start hardcoded scenario."""
        if self._running:
            return
        if self._backend is None:
            raise RuntimeError("Sim has no backend")

        self._running = True

        # Start background task
        self._task = asyncio.create_task(self._run_scenario())

    async def stop(self) -> None:
        """Stop scenario."""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def wait(self) -> None:
        """Wait for the scenario to finish on its own."""
        if self._task:
            await asyncio.wait({self._task})

    async def _run_scenario(self) -> None:
        """Run hardcoded scenario."""
        try:
            direct, group = await self._ensure_conversations()
            logger.info(
                "SIM started",
                extra={"context": {"user_count": len(VIRTUAL_USERS)}},
            )

            poll_id = await self._post_poll(group.id, VIRTUAL_USERS[1]["user_id"])

            # Send messages with delays
            for i in range(3):  # 3 rounds of messages
                if not self._running:
                    break

                for user_idx, user in enumerate(VIRTUAL_USERS):
                    if not self._running:
                        break

                    conversation = direct[user["user_id"]] if i % 2 == 0 else group
                    await self._send_message(
                        conversation.id, user["user_id"], MESSAGES_PER_USER[user_idx][i]
                    )

                    if i == 1 and user_idx != 1:
                        await self._vote(poll_id, user["user_id"])

                    # Random delay between messages
                    await asyncio.sleep(self._rng.uniform(*self._delay_range))

        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("SIM scenario error: %s", e, exc_info=True)
        finally:
            self._running = False
            logger.info("SIM completed")

    async def _ensure_conversations(self) -> tuple[dict[str, Conversation], Conversation]:
        """Direct chats with every virtual user plus one group, reused if present."""
        existing = {
            c.display_name: c
            for c in await self._backend.fetch_conversations(self._session_user_id)
        }

        direct = {}
        for user in VIRTUAL_USERS:
            conversation = existing.get(user["name"])
            if conversation is None:
                conversation = await self._backend.create_conversation(
                    [self._session_user_id, user["user_id"]], user["name"]
                )
            direct[user["user_id"]] = conversation

        group = existing.get(GROUP_NAME)
        if group is None:
            group = await self._backend.create_conversation(
                [self._session_user_id, *(u["user_id"] for u in VIRTUAL_USERS)],
                GROUP_NAME,
                is_group=True,
            )
        return direct, group

    async def _send_message(self, conversation_id: str, user_id: str, text: str) -> None:
        """Post a text message as a remote participant."""
        try:
            await self._backend.post_message(
                OutgoingMessage(
                    id=str(uuid.uuid4()),
                    conversation_id=conversation_id,
                    author_id=user_id,
                    payload=TextPayload(text=text),
                )
            )
            logger.info("SIM: %s -> %s", user_id, text)
        except ChatError as e:
            logger.error("SIM: Failed to send message: %s", e)

    async def _post_poll(self, conversation_id: str, user_id: str) -> str:
        poll_id = str(uuid.uuid4())
        await self._backend.post_message(
            OutgoingMessage(
                id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                author_id=user_id,
                payload=PollPayload(poll_id=poll_id, question=RECITAL_POLL["question"]),
                poll_options=list(RECITAL_POLL["options"]),
            )
        )
        logger.info("SIM: %s opened poll %s", user_id, poll_id)
        return poll_id

    async def _vote(self, poll_id: str, user_id: str) -> None:
        option_index = self._rng.randrange(len(RECITAL_POLL["options"]))
        try:
            await self._backend.post_vote(poll_id, user_id, option_index)
            logger.info("SIM: %s voted %s on %s", user_id, option_index, poll_id)
        except ChatError as e:
            logger.error("SIM: Failed to vote: %s", e)
