import sys
import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest

GENERATOR_DIR = Path(__file__).resolve().parent.parent
if str(GENERATOR_DIR) not in sys.path:
    sys.path.insert(0, str(GENERATOR_DIR))

import stategen  # noqa: E402

SCREEN_STATE_SOURCE = '''\
from typing import Annotated

from state_event import EventType, StateEvent, ui_state


@ui_state
class ScreenState:
    loading: bool = False
    message: Annotated[str | None, StateEvent()] = None
    navigate_to: Annotated[
        str | None,
        StateEvent(
            consume_operation_name="consumeNavigation",
            ordering_policy=EventType.CONSUME_THEN_ACTION,
        ),
    ] = None
'''


@pytest.fixture
def write_tree(tmp_path: Path) -> Callable[[dict[str, str]], Path]:
    """Write ``{relative path: source}`` under ``tmp_path / "src"``."""

    def _write_tree(files: dict[str, str]) -> Path:
        root = tmp_path / "src"
        root.mkdir(exist_ok=True)
        for relative, text in files.items():
            path = root / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(textwrap.dedent(text), encoding="utf-8")
        return root

    return _write_tree


@pytest.fixture
def make_source(tmp_path: Path) -> Callable[..., stategen.SourceFile]:
    """Parse one in-memory module without touching the filesystem."""

    def _make_source(text: str, relative: str = "app/screen_state.py") -> stategen.SourceFile:
        root = tmp_path / "memory"
        content = textwrap.dedent(text).encode("utf-8")
        source = stategen.load_source(root / relative, root, content=content)
        assert source is not None
        return source

    return _make_source


@pytest.fixture
def make_group(make_source: Callable[..., stategen.SourceFile]) -> Callable[..., stategen.OwnerGroup]:
    def _make_group(text: str = SCREEN_STATE_SOURCE, relative: str = "app/screen_state.py") -> stategen.OwnerGroup:
        source = make_source(text, relative)
        groups = stategen.group_by_owner(stategen.collect_marked_fields(source))
        assert len(groups) == 1
        return groups[0]

    return _make_group


@pytest.fixture
def quiet_sink() -> stategen.DiagnosticSink:
    return stategen.DiagnosticSink(echo=False)


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., stategen.GenerateConfig]:
    def _make_config(source_root: Path, **overrides: object) -> stategen.GenerateConfig:
        base: dict[str, object] = {
            "source_root": source_root,
            "output_dir": source_root,
            "naming": "camel",
            "excludes": stategen.DEFAULT_EXCLUDES,
            "max_rounds": stategen.DEFAULT_MAX_ROUNDS,
            "check": False,
            "quiet": True,
        }
        base.update(overrides)
        return stategen.GenerateConfig(**base)

    return _make_config
