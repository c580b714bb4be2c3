from state_event import StateStore

from sample_app.sample_ui_state import SampleUiState
from sample_app.sample_ui_state_events import SampleUiStateEvents


class SampleViewModel(StateStore[SampleUiState], SampleUiStateEvents):
    """Holds the sample screen state; consume operations come from the mixin."""

    def __init__(self) -> None:
        super().__init__(SampleUiState())

    def load(self, items: list[str]) -> None:
        self.update(lambda state: SampleUiState(items=tuple(items)))

    def fail(self, message: str) -> None:
        self.update(
            lambda state: SampleUiState(
                items=state.items,
                error_message=message,
                navigate_to_detail=state.navigate_to_detail,
            )
        )

    def select(self, item_id: str) -> None:
        self.update(
            lambda state: SampleUiState(
                items=state.items,
                error_message=state.error_message,
                navigate_to_detail=item_id,
            )
        )
