import asyncio
import importlib
from collections.abc import Callable
from pathlib import Path

import pytest

import stategen
from conftest import SCREEN_STATE_SOURCE

ROUTE_STATE_SOURCE = """\
from typing import Annotated

from state_event import StateEvent, ui_state


@ui_state
class RouteState:
    pending: Annotated[str | None, StateEvent()] = None
"""

DEPENDENT_STATE_SOURCE = """\
from typing import Annotated

from app.route_state_events import RouteStateEvents
from state_event import StateEvent, ui_state


@ui_state
class LinkState:
    link: Annotated[RouteStateEvents | None, StateEvent()] = None
    title: Annotated[str | None, StateEvent()] = None
"""

MUTABLE_STATE_SOURCE = """\
from typing import Annotated

from state_event import StateEvent


class Mutable:
    message: Annotated[str | None, StateEvent()] = None
"""


def _codes(result: stategen.GenerationResult) -> list[str | None]:
    return [d.code for d in result.diagnostics if d.code is not None]


def _statuses(result: stategen.GenerationResult) -> dict[str, str]:
    return {f.relative_path: f.status for f in result.files}


def test_t_01_process_round_isolates_invalid_groups(
    make_source: Callable[..., stategen.SourceFile], tmp_path: Path
) -> None:
    bad = make_source(MUTABLE_STATE_SOURCE, "app/bad.py")
    good = make_source(SCREEN_STATE_SOURCE, "app/screen_state.py")
    snapshot = stategen.SourceSnapshot([bad, good])
    sink = stategen.DiagnosticSink(echo=False)
    writer = stategen.ArtifactWriter(tmp_path / "out")

    result = stategen.process_round(
        stategen.SymbolResolver(snapshot, snapshot.files), writer, sink
    )

    assert [a.relative_path for a in result.artifacts] == ["app/screen_state_events.py"]
    assert result.failed_owners == ("app.bad.Mutable",)
    assert result.group_count == 2
    assert result.deferred == ()
    assert [d.code for d in sink.diagnostics if d.code] == ["INVALID_OWNER"]


def test_t_02_process_round_reports_synthesis_exception_and_continues(
    make_source: Callable[..., stategen.SourceFile],
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    first = make_source(ROUTE_STATE_SOURCE, "app/route_state.py")
    second = make_source(SCREEN_STATE_SOURCE, "app/screen_state.py")
    snapshot = stategen.SourceSnapshot([first, second])
    sink = stategen.DiagnosticSink(echo=False)
    real_build = stategen.build_artifact

    def _build(group, configs, naming):
        if group.owner.name == "RouteState":
            raise KeyError("boom")
        return real_build(group, configs, naming)

    monkeypatch.setattr(stategen, "build_artifact", _build)

    result = stategen.process_round(
        stategen.SymbolResolver(snapshot, snapshot.files),
        stategen.ArtifactWriter(tmp_path),
        sink,
    )

    assert [a.owner for a in result.artifacts] == ["app.screen_state.ScreenState"]
    (failure,) = sink.with_code("SYNTHESIS_FAILED")
    assert failure.severity is stategen.Severity.EXCEPTION
    assert "KeyError" in failure.detail
    assert failure.location.path == "app/route_state.py"


def test_t_03_process_round_reports_write_failure_and_continues(
    make_source: Callable[..., stategen.SourceFile], tmp_path: Path
) -> None:
    blocked = tmp_path / "app" / "route_state_events.py"
    blocked.parent.mkdir(parents=True)
    blocked.write_text("# hand-written\n", encoding="utf-8")
    snapshot = stategen.SourceSnapshot(
        [
            make_source(ROUTE_STATE_SOURCE, "app/route_state.py"),
            make_source(SCREEN_STATE_SOURCE, "app/screen_state.py"),
        ]
    )
    sink = stategen.DiagnosticSink(echo=False)

    result = stategen.process_round(
        stategen.SymbolResolver(snapshot, snapshot.files),
        stategen.ArtifactWriter(tmp_path),
        sink,
    )

    assert [a.owner for a in result.artifacts] == ["app.screen_state.ScreenState"]
    assert [d.code for d in sink.diagnostics if d.code] == ["WRITE_FAILED"]
    assert blocked.read_text(encoding="utf-8") == "# hand-written\n"


def test_t_04_process_round_defers_whole_owner_when_one_field_is_unresolved(
    make_source: Callable[..., stategen.SourceFile], tmp_path: Path
) -> None:
    source = make_source(DEPENDENT_STATE_SOURCE, "app/link_state.py")
    snapshot = stategen.SourceSnapshot([source])
    sink = stategen.DiagnosticSink(echo=False)

    result = stategen.process_round(
        stategen.SymbolResolver(snapshot, snapshot.files),
        stategen.ArtifactWriter(tmp_path),
        sink,
    )

    assert result.artifacts == ()
    assert result.group_count == 0
    assert sorted(f.name for f in result.deferred) == ["link", "title"]


def test_t_05_run_generate_resolves_deferred_fields_in_a_later_round(
    write_tree: Callable[[dict[str, str]], Path],
    make_config: Callable[..., stategen.GenerateConfig],
) -> None:
    root = write_tree(
        {
            "app/__init__.py": "",
            "app/route_state.py": ROUTE_STATE_SOURCE,
            "app/link_state.py": DEPENDENT_STATE_SOURCE,
        }
    )

    result = stategen.run_generate(make_config(root))

    assert result.round_count == 2
    assert result.group_count == 2
    assert _statuses(result) == {
        "app/route_state_events.py": "written",
        "app/link_state_events.py": "written",
    }
    assert not result.has_errors
    assert (root / "app" / "link_state_events.py").is_file()


def test_t_06_run_generate_reports_unresolved_symbols(
    write_tree: Callable[[dict[str, str]], Path],
    make_config: Callable[..., stategen.GenerateConfig],
) -> None:
    root = write_tree(
        {
            "app/__init__.py": "",
            "app/link_state.py": DEPENDENT_STATE_SOURCE,
        }
    )

    result = stategen.run_generate(make_config(root))

    assert result.round_count == 1
    assert result.files == ()
    assert _codes(result) == ["UNRESOLVED_SYMBOL"]
    (diagnostic,) = [d for d in result.diagnostics if d.code == "UNRESOLVED_SYMBOL"]
    assert "RouteStateEvents" in diagnostic.message
    assert "link" in diagnostic.message
    assert result.has_errors


def test_t_07_run_generate_enforces_round_limit(
    write_tree: Callable[[dict[str, str]], Path],
    make_config: Callable[..., stategen.GenerateConfig],
) -> None:
    root = write_tree(
        {
            "app/__init__.py": "",
            "app/route_state.py": ROUTE_STATE_SOURCE,
            "app/link_state.py": DEPENDENT_STATE_SOURCE,
        }
    )

    with pytest.raises(RuntimeError, match="limit of 1 rounds"):
        stategen.run_generate(make_config(root, max_rounds=1))


def test_t_08_run_generate_is_idempotent(
    write_tree: Callable[[dict[str, str]], Path],
    make_config: Callable[..., stategen.GenerateConfig],
) -> None:
    root = write_tree(
        {"app/__init__.py": "", "app/screen_state.py": SCREEN_STATE_SOURCE}
    )
    artifact_path = root / "app" / "screen_state_events.py"
    manifest_path = root / stategen.MANIFEST_FILENAME

    stategen.run_generate(make_config(root))
    first_artifact = artifact_path.read_bytes()
    first_manifest = manifest_path.read_bytes()
    second = stategen.run_generate(make_config(root))

    assert _statuses(second) == {"app/screen_state_events.py": "unchanged"}
    assert artifact_path.read_bytes() == first_artifact
    assert manifest_path.read_bytes() == first_manifest
    assert second.removed == ()


def test_t_09_run_generate_prunes_artifacts_of_removed_owners(
    write_tree: Callable[[dict[str, str]], Path],
    make_config: Callable[..., stategen.GenerateConfig],
) -> None:
    root = write_tree(
        {"app/__init__.py": "", "app/screen_state.py": SCREEN_STATE_SOURCE}
    )
    stategen.run_generate(make_config(root))

    (root / "app" / "screen_state.py").write_text("X = 1\n", encoding="utf-8")
    result = stategen.run_generate(make_config(root))

    assert result.removed == ("app/screen_state_events.py",)
    assert not (root / "app" / "screen_state_events.py").exists()


def test_t_10_run_generate_removes_artifact_of_group_that_now_fails(
    write_tree: Callable[[dict[str, str]], Path],
    make_config: Callable[..., stategen.GenerateConfig],
) -> None:
    root = write_tree(
        {"app/__init__.py": "", "app/screen_state.py": SCREEN_STATE_SOURCE}
    )
    stategen.run_generate(make_config(root))

    mutable = SCREEN_STATE_SOURCE.replace("@ui_state\n", "")
    (root / "app" / "screen_state.py").write_text(mutable, encoding="utf-8")
    result = stategen.run_generate(make_config(root))

    assert "INVALID_OWNER" in _codes(result)
    assert result.removed == ("app/screen_state_events.py",)


def test_t_11_run_generate_writes_importable_modules_to_separate_output_dir(
    write_tree: Callable[[dict[str, str]], Path],
    make_config: Callable[..., stategen.GenerateConfig],
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    root = write_tree({"split_app/screen_state.py": SCREEN_STATE_SOURCE})
    out = tmp_path / "generated"

    result = stategen.run_generate(make_config(root, output_dir=out))

    assert not result.has_errors
    assert (out / "split_app" / "screen_state_events.py").is_file()
    assert (out / stategen.MANIFEST_FILENAME).is_file()
    assert not (root / "split_app" / "screen_state_events.py").exists()
    assert result.output_dir == out

    monkeypatch.syspath_prepend(str(out))
    monkeypatch.syspath_prepend(str(root))

    from state_event import StateStore

    state_module = importlib.import_module("split_app.screen_state")
    events = importlib.import_module("split_app.screen_state_events")
    store = StateStore(state_module.ScreenState(message="hi"))
    events.consumeMessage(store)

    assert store.value == state_module.ScreenState()


def test_t_12_run_generate_executes_stages_in_order(
    tmp_path: Path,
    make_config: Callable[..., stategen.GenerateConfig],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    calls: list[str] = []
    stats = stategen.RoundStats(round_count=1, group_count=0, artifacts=(), unresolved=())

    monkeypatch.setattr(
        stategen,
        "load_snapshot",
        lambda config: calls.append("load_snapshot") or stategen.SourceSnapshot(),
    )
    monkeypatch.setattr(
        stategen, "read_manifest", lambda output_dir, sink: calls.append("read_manifest") or {}
    )
    monkeypatch.setattr(
        stategen,
        "run_rounds",
        lambda snapshot, writer, sink, naming, max_rounds: calls.append("run_rounds") or stats,
    )
    monkeypatch.setattr(
        stategen,
        "prune_stale_artifacts",
        lambda output_dir, previous, current, check, sink: calls.append("prune") or (),
    )
    monkeypatch.setattr(
        stategen,
        "write_manifest",
        lambda output_dir, artifacts: calls.append("write_manifest") or output_dir,
    )

    stategen.run_generate(make_config(tmp_path))
    assert calls == ["load_snapshot", "read_manifest", "run_rounds", "prune", "write_manifest"]

    calls.clear()
    stategen.run_generate(make_config(tmp_path, check=True))
    assert calls == ["load_snapshot", "read_manifest", "run_rounds", "prune"]


def test_t_13_load_snapshot_honors_excludes(
    write_tree: Callable[[dict[str, str]], Path],
    make_config: Callable[..., stategen.GenerateConfig],
) -> None:
    root = write_tree(
        {
            "app/__init__.py": "",
            "app/screen_state.py": SCREEN_STATE_SOURCE,
            "app/__pycache__/junk.py": "x = 1\n",
            "legacy/old.py": "x = 1\n",
            "my-scripts/tool.py": "x = 1\n",
        }
    )

    snapshot = stategen.load_snapshot(
        make_config(root, excludes=stategen.DEFAULT_EXCLUDES + ("legacy",))
    )

    assert [s.module for s in snapshot.files] == ["app", "app.screen_state"]


def test_t_14_generated_dispatcher_runs_events_once_in_policy_order(
    write_tree: Callable[[dict[str, str]], Path],
    make_config: Callable[..., stategen.GenerateConfig],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    root = write_tree(
        {
            "dispatch_app/__init__.py": "",
            "dispatch_app/screen_state.py": SCREEN_STATE_SOURCE,
        }
    )
    result = stategen.run_generate(make_config(root))
    assert not result.has_errors
    monkeypatch.syspath_prepend(str(root))

    from state_event import EffectScope, StateStore

    state_module = importlib.import_module("dispatch_app.screen_state")
    events = importlib.import_module("dispatch_app.screen_state_events")
    store = StateStore(state_module.ScreenState(message="Saved", navigate_to="details"))
    log: list[tuple[str, str, object]] = []

    def on_message(value: str) -> None:
        log.append(("message", value, store.value.message))

    async def on_navigate(value: str) -> None:
        log.append(("navigate", value, store.value.navigate_to))

    def dispatch(effects: EffectScope) -> None:
        events.handleScreenStateEvents(
            store.value,
            store,
            effects,
            onMessage=on_message,
            onNavigateTo=on_navigate,
        )

    async def scenario() -> None:
        async with EffectScope() as effects:
            dispatch(effects)
            dispatch(effects)
            await effects.join()
            dispatch(effects)
            await effects.join()

            store.update(lambda s: state_module.ScreenState(message="Saved"))
            dispatch(effects)
            await effects.join()

    asyncio.run(scenario())

    assert log == [
        ("message", "Saved", "Saved"),
        ("navigate", "details", None),
        ("message", "Saved", "Saved"),
    ]
    assert store.value == state_module.ScreenState()


def test_t_15_generated_mixin_exposes_consume_methods(
    write_tree: Callable[[dict[str, str]], Path],
    make_config: Callable[..., stategen.GenerateConfig],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    root = write_tree(
        {
            "mixin_app/__init__.py": "",
            "mixin_app/screen_state.py": SCREEN_STATE_SOURCE,
        }
    )
    stategen.run_generate(make_config(root))
    monkeypatch.syspath_prepend(str(root))

    from state_event import StateStore

    state_module = importlib.import_module("mixin_app.screen_state")
    events = importlib.import_module("mixin_app.screen_state_events")

    class ViewModel(StateStore, events.ScreenStateEvents):
        pass

    model = ViewModel(state_module.ScreenState(loading=True, message="hi", navigate_to="x"))
    model.consumeMessage()
    model.consumeNavigation()

    assert model.value == state_module.ScreenState(loading=True)


def test_t_16_generated_code_supports_namedtuple_and_constructor_owners(
    write_tree: Callable[[dict[str, str]], Path],
    make_config: Callable[..., stategen.GenerateConfig],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    root = write_tree(
        {
            "records_app/__init__.py": "",
            "records_app/toast.py": """\
                from typing import Annotated, NamedTuple

                from state_event import StateEvent


                class Toast(NamedTuple):
                    text: Annotated[str | None, StateEvent()] = None
                    count: int = 0
            """,
            "records_app/dialog.py": """\
                from dataclasses import dataclass
                from typing import Annotated

                from state_event import StateEvent


                @dataclass(frozen=True)
                class Dialog:
                    title: str | None = None

                    def __init__(self, title: Annotated[str | None, StateEvent()] = None):
                        object.__setattr__(self, "title", title)
            """,
        }
    )
    result = stategen.run_generate(make_config(root, naming="snake"))
    assert not result.has_errors
    monkeypatch.syspath_prepend(str(root))

    from state_event import StateStore

    toast = importlib.import_module("records_app.toast")
    toast_events = importlib.import_module("records_app.toast_events")
    dialog = importlib.import_module("records_app.dialog")
    dialog_events = importlib.import_module("records_app.dialog_events")

    toast_store = StateStore(toast.Toast(text="hi", count=2))
    toast_events.consume_text(toast_store)
    dialog_store = StateStore(dialog.Dialog(title="Delete?"))
    dialog_events.consume_title(dialog_store)

    assert toast_store.value == toast.Toast(text=None, count=2)
    assert dialog_store.value.title is None


def test_t_17_run_generate_keeps_same_named_owners_of_one_package_apart(
    write_tree: Callable[[dict[str, str]], Path],
    make_config: Callable[..., stategen.GenerateConfig],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    root = write_tree(
        {
            "twin_app/__init__.py": "",
            "twin_app/home.py": SCREEN_STATE_SOURCE,
            "twin_app/detail.py": SCREEN_STATE_SOURCE,
        }
    )

    result = stategen.run_generate(make_config(root))

    assert _codes(result) == []
    assert _statuses(result) == {
        "twin_app/detail_screen_state_events.py": "written",
        "twin_app/home_screen_state_events.py": "written",
    }
    monkeypatch.syspath_prepend(str(root))

    from state_event import StateStore

    home = importlib.import_module("twin_app.home")
    home_events = importlib.import_module("twin_app.home_screen_state_events")
    detail = importlib.import_module("twin_app.detail")
    detail_events = importlib.import_module("twin_app.detail_screen_state_events")
    home_store = StateStore(home.ScreenState(message="home"))
    detail_store = StateStore(detail.ScreenState(message="detail"))

    home_events.consumeMessage(home_store)
    detail_events.consumeMessage(detail_store)

    assert home_store.value == home.ScreenState()
    assert detail_store.value == detail.ScreenState()
