from typing import Annotated, NamedTuple

from state_event import StateEvent


class DetailUiState(NamedTuple):
    item_id: str = ""
    saved_message: Annotated[str | None, StateEvent()] = None
