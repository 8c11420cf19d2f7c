"""Terminal display sink built on Rich Live.

Each display unit is rendered as a panel (or bare text in plain mode):
yellow while it is still streaming, blue once complete.
"""

from __future__ import annotations

from collections import OrderedDict

from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.text import Text

_STREAMING_STYLE = "yellow"
_COMPLETE_STYLE = "blue"


class ConsoleSink:
    """DisplaySink that renders units into a Rich Live region.

    Use as a context manager around one turn; units created while the
    region is live are redrawn in place on every edit.
    """

    def __init__(
        self,
        console: Console,
        *,
        plain: bool = False,
        title: str = "",
        refresh_per_second: int = 12,
    ) -> None:
        self._console = console
        self._plain = plain
        self._title = title
        self._refresh_per_second = refresh_per_second
        self._units: OrderedDict[str, tuple[str, bool]] = OrderedDict()
        self._counter = 0
        self._live: Live | None = None

    def __enter__(self) -> ConsoleSink:
        self._live = Live(
            self.render(),
            console=self._console,
            refresh_per_second=self._refresh_per_second,
        )
        self._live.__enter__()
        return self

    def __exit__(self, *exc_info: object) -> None:
        if self._live is not None:
            self._live.update(self.render(), refresh=True)
            self._live.__exit__(*exc_info)
            self._live = None

    @property
    def unit_ids(self) -> list[str]:
        return list(self._units)

    def text_of(self, unit_id: str) -> str:
        return self._units[unit_id][0]

    async def create(self, text: str, *, streaming: bool) -> str:
        self._counter += 1
        unit_id = f"unit-{self._counter}"
        self._units[unit_id] = (text, streaming)
        self._refresh()
        return unit_id

    async def replace(self, unit_id: str, text: str, *, streaming: bool) -> None:
        if unit_id not in self._units:
            raise KeyError(f"Unknown display unit: {unit_id}")
        self._units[unit_id] = (text, streaming)
        self._refresh()

    async def delete(self, unit_id: str) -> None:
        self._units.pop(unit_id, None)
        self._refresh()

    def render(self) -> RenderableType:
        """All units, in creation order."""
        renderables: list[RenderableType] = []
        total = len(self._units)
        for i, (text, streaming) in enumerate(self._units.values(), start=1):
            if self._plain:
                renderables.append(Text(text))
                continue
            subtitle = f"{i}/{total}" if total > 1 else None
            renderables.append(
                Panel(
                    Markdown(text),
                    title=self._title or None,
                    subtitle=subtitle,
                    border_style=_STREAMING_STYLE if streaming else _COMPLETE_STYLE,
                )
            )
        return Group(*renderables)

    def _refresh(self) -> None:
        if self._live is not None:
            self._live.update(self.render())
