# cdasim/events.py
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Callable, Iterator, List, Optional, Tuple, Union

import pandas as pd

from .models import ClearingResult, Trade

SCHEMA = "cdasim/1"

TRADE_COLUMNS = ["period", "step", "ts", "buy_id", "sell_id", "buyer", "seller", "price", "qty"]
CLEARING_COLUMNS = ["period", "ts", "clearing_price", "volume", "n_fills"]


@dataclass(frozen=True, slots=True)
class TradeEvent:
    period: int
    step: int
    trade: Trade


@dataclass(frozen=True, slots=True)
class ClearingEvent:
    period: int
    result: ClearingResult


Event = Union[TradeEvent, ClearingEvent]


class EventLog:
    """
    Append-only record of executions in the order they happened.
    Readers get immutable snapshots; subscribers see each event as it is
    appended, on the writer's thread.
    """

    def __init__(self) -> None:
        self._events: List[Event] = []
        self._subscribers: List[Callable[[Event], None]] = []

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[Event]:
        return iter(self.snapshot())

    def subscribe(self, fn: Callable[[Event], None]) -> None:
        self._subscribers.append(fn)

    def _append(self, event: Event) -> None:
        self._events.append(event)
        for fn in self._subscribers:
            fn(event)

    def record_trades(self, period: int, step: int, trades: List[Trade]) -> None:
        for t in trades:
            self._append(TradeEvent(period=period, step=step, trade=t))

    def record_clearing(self, period: int, result: ClearingResult) -> None:
        self._append(ClearingEvent(period=period, result=result))

    def snapshot(self) -> Tuple[Event, ...]:
        return tuple(self._events)

    def trades(self, period: Optional[int] = None) -> List[Trade]:
        return [
            e.trade for e in self._events
            if isinstance(e, TradeEvent) and (period is None or e.period == period)
        ]

    def trades_frame(self) -> pd.DataFrame:
        rows = []
        for e in self._events:
            if isinstance(e, TradeEvent):
                row = asdict(e.trade)
                row.update(period=e.period, step=e.step)
                rows.append(row)
        return pd.DataFrame(rows, columns=TRADE_COLUMNS)

    def clearings_frame(self) -> pd.DataFrame:
        rows = [
            (e.period, e.result.ts, e.result.clearing_price, e.result.volume, len(e.result.fills))
            for e in self._events if isinstance(e, ClearingEvent)
        ]
        return pd.DataFrame(rows, columns=CLEARING_COLUMNS)
