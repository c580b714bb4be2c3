import asyncio

from state_event import EffectScope

from sample_app.sample_ui_state import SampleUiState
from sample_app.sample_ui_state_events import handleSampleUiStateEvents
from sample_app.sample_view_model import SampleViewModel


async def run_demo() -> list[str]:
    """Drive the sample screen through one error and one navigation."""
    log: list[str] = []
    model = SampleViewModel()

    async with EffectScope() as effects:

        def render(state: SampleUiState) -> None:
            handleSampleUiStateEvents(
                state,
                model,
                effects,
                onErrorMessage=lambda message: log.append(f"snackbar: {message}"),
                openDetail=lambda item_id: log.append(f"navigate: {item_id}"),
            )

        unsubscribe = model.subscribe(render)
        model.load(["a", "b"])
        model.fail("Network unavailable")
        model.select("b")
        await effects.join()
        unsubscribe()

    log.append(f"final: {model.value}")
    return log


if __name__ == "__main__":
    for line in asyncio.run(run_demo()):
        print(line)
