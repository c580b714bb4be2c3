from typing import Annotated

from state_event import EventType, StateEvent, ui_state


@ui_state
class SampleUiState:
    is_loading: bool = False
    items: tuple[str, ...] = ()
    error_message: Annotated[str | None, StateEvent()] = None
    navigate_to_detail: Annotated[
        str | None,
        StateEvent(
            consume_operation_name="consumeNavigation",
            ordering_policy=EventType.NAVIGATION,
            handler_name="openDetail",
        ),
    ] = None
