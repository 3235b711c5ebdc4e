"""ViewCoordinator: selection and responsive layout state."""

from dataclasses import replace
from typing import Protocol

from ..event_bus import IEventBus
from ..logging_config import get_logger
from ..models import LayoutMode, Topic, ViewState

logger = get_logger(__name__)

DEFAULT_BREAKPOINT = 768
SOURCE = "view_coordinator"


class IViewCoordinator(Protocol):
    """Selected conversation and pane visibility."""

    @property
    def state(self) -> ViewState:
        ...

    def is_showing(self, conversation_id: str) -> bool:
        """True when the chat pane displays the conversation."""
        ...

    async def set_viewport_width(self, width: int) -> ViewState:
        ...

    async def select_conversation(self, conversation_id: str) -> ViewState:
        ...

    async def go_back(self) -> ViewState:
        ...


class ViewCoordinator:
    """Small state machine over layout mode and selection.

    Below the breakpoint only one pane is shown at a time (mobile-list or
    mobile-chat); at or above it both panes are shown (desktop).
    """

    def __init__(
        self,
        event_bus: IEventBus,
        viewport_width: int,
        breakpoint: int = DEFAULT_BREAKPOINT,
    ):
        self._bus = event_bus
        self._breakpoint = breakpoint
        mode = LayoutMode.MOBILE_LIST if viewport_width < breakpoint else LayoutMode.DESKTOP
        self._state = ViewState(layout_mode=mode)

    @property
    def state(self) -> ViewState:
        return self._state

    @property
    def breakpoint(self) -> int:
        return self._breakpoint

    def is_showing(self, conversation_id: str) -> bool:
        return self._state.is_showing(conversation_id)

    async def set_viewport_width(self, width: int) -> ViewState:
        """React to a viewport resize; only crossing the breakpoint changes the mode."""
        mobile = width < self._breakpoint
        mode = self._state.layout_mode

        if not mobile and mode != LayoutMode.DESKTOP:
            new_state = replace(self._state, layout_mode=LayoutMode.DESKTOP)
        elif mobile and mode == LayoutMode.DESKTOP:
            # Selection is kept but the chat pane stays hidden until re-selected
            new_state = replace(self._state, layout_mode=LayoutMode.MOBILE_LIST)
        else:
            return self._state

        return await self._transition(new_state, reason="viewport", width=width)

    async def select_conversation(self, conversation_id: str) -> ViewState:
        mode = self._state.layout_mode
        if mode == LayoutMode.MOBILE_LIST:
            mode = LayoutMode.MOBILE_CHAT

        new_state = ViewState(layout_mode=mode, selected_conversation_id=conversation_id)
        if new_state == self._state:
            return self._state
        return await self._transition(new_state, reason="select")

    async def go_back(self) -> ViewState:
        """Return from the chat to the list on mobile; no-op elsewhere."""
        if self._state.layout_mode != LayoutMode.MOBILE_CHAT:
            return self._state
        return await self._transition(
            ViewState(layout_mode=LayoutMode.MOBILE_LIST), reason="back"
        )

    async def reset(self, viewport_width: int | None = None) -> ViewState:
        """Clear the selection; optionally re-derive the mode from a width."""
        mode = self._state.layout_mode
        if viewport_width is not None:
            mode = (
                LayoutMode.MOBILE_LIST
                if viewport_width < self._breakpoint
                else LayoutMode.DESKTOP
            )
        elif mode == LayoutMode.MOBILE_CHAT:
            mode = LayoutMode.MOBILE_LIST
        return await self._transition(ViewState(layout_mode=mode), reason="reset")

    async def _transition(self, new_state: ViewState, reason: str, **context) -> ViewState:
        previous = self._state
        self._state = new_state
        logger.debug(
            "View %s -> %s",
            previous.layout_mode.value,
            new_state.layout_mode.value,
            extra={
                "conversation_id": new_state.selected_conversation_id,
                "context": {"reason": reason, **context},
            },
        )
        await self._bus.publish(
            Topic.VIEW_CHANGED,
            {
                "layout_mode": new_state.layout_mode.value,
                "selected_conversation_id": new_state.selected_conversation_id,
                "previous_layout_mode": previous.layout_mode.value,
                "reason": reason,
            },
            source=SOURCE,
        )
        return new_state
