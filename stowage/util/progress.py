"""Progress reporting contract and terminal rendering."""

import typing as t
from dataclasses import dataclass, field

from tqdm import tqdm


@dataclass
class ProgressStats:
    """One progress dimension (overall or current item)."""

    current: t.Optional[float] = None
    total: t.Optional[float] = None
    percent: t.Optional[float] = None
    description: t.Optional[str] = None
    payload: t.Optional[str] = None

    def __post_init__(self) -> None:
        if self.percent is None and self.current is not None and self.total:
            self.percent = round(min(self.current / self.total, 1.0) * 100, 2)


@dataclass
class Progress:
    """Progress update sent by long running operations."""

    absolute: t.Optional[ProgressStats] = None
    relative: t.Optional[ProgressStats] = None


ProgressCallback = t.Callable[[Progress], None]


def noop_progress(progress: Progress) -> None:
    """Progress callback that ignores every update."""


class ProgressCounter:
    """Counts processed items and emits ``absolute`` progress updates."""

    def __init__(
        self,
        callback: ProgressCallback,
        total: t.Optional[int] = None,
        description: str = "Processing",
    ) -> None:
        self.callback = callback
        self.total = total
        self.current = 0
        self.description = description

    def advance(self, payload: t.Optional[str] = None, step: int = 1) -> None:
        self.current += step
        self.callback(Progress(absolute=ProgressStats(
            current=self.current,
            total=self.total,
            description=self.description,
            payload=payload,
        )))


@dataclass
class TqdmProgressRenderer:
    """Render progress updates of many tasks as tqdm bars."""

    leave: bool = False
    disable: t.Optional[bool] = None
    bars: t.Dict[str, tqdm] = field(default_factory=dict)

    def update(self, title: str, progress: Progress) -> None:
        stats = progress.absolute or progress.relative
        if stats is None:
            return
        bar = self.bars.get(title)
        if bar is None:
            bar = tqdm(desc=title, total=stats.total, leave=self.leave, disable=self.disable, unit="it")
            self.bars[title] = bar
        if stats.total is not None and bar.total != stats.total:
            bar.total = stats.total
        if stats.current is not None:
            bar.n = stats.current
        if stats.payload:
            bar.set_postfix_str(stats.payload[-40:], refresh=False)
        bar.refresh()

    def finish(self, title: str) -> None:
        bar = self.bars.pop(title, None)
        if bar is not None:
            bar.close()

    def close(self) -> None:
        for title in list(self.bars):
            self.finish(title)
