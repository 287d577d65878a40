from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

import pandas as pd

from .config import POST_EVENT_COL, PRECIP_EVENT_COL, PREDICTION_COL, RESPONSE_COL, TIMESTAMP_COL

FIRST_EVENT_ID = 1
BASELINE_POST_ID = 0


@dataclass(frozen=True)
class SegmentDefinition:
    """Row of the segment table: ``column == value``, optionally bounded in time.

    ``bound`` is ``"before_first_event"`` (timestamp strictly before the first
    precipitation event 1 record), ``"from_first_event"`` (at or after it) or
    ``None``.
    """

    label: str
    column: str
    value: int
    bound: Optional[str] = None


@dataclass(frozen=True, eq=False)
class Segment:
    definition: SegmentDefinition
    frame: pd.DataFrame
    bound_applied: bool = False

    @property
    def label(self) -> str:
        return self.definition.label

    @property
    def empty(self) -> bool:
        return self.frame.empty

    def triples(self) -> Iterator[Tuple[pd.Timestamp, float, float]]:
        for row in self.frame.itertuples(index=False):
            yield row[0], float(row[1]), float(row[2])


def first_event_time(data: pd.DataFrame, event_id: int = FIRST_EVENT_ID) -> Optional[pd.Timestamp]:
    stamps = data.loc[data[PRECIP_EVENT_COL].astype(object) == event_id, TIMESTAMP_COL]
    if stamps.empty:
        return None
    return stamps.min()


def _observed_ids(values: pd.Series) -> List[int]:
    return sorted(int(v) for v in pd.Series(values).astype(object).unique())


def segment_definitions(data: pd.DataFrame) -> List[SegmentDefinition]:
    table: List[SegmentDefinition] = []
    for event in _observed_ids(data[PRECIP_EVENT_COL]):
        bound = "from_first_event" if event == FIRST_EVENT_ID else None
        table.append(SegmentDefinition(f"precip_{event}", PRECIP_EVENT_COL, event, bound))
    for phase in _observed_ids(data[POST_EVENT_COL]):
        bound = "before_first_event" if phase == BASELINE_POST_ID else None
        table.append(SegmentDefinition(f"post_{phase}", POST_EVENT_COL, phase, bound))
    return table


def evaluate_segment(data: pd.DataFrame, definition: SegmentDefinition, cutoff: Optional[pd.Timestamp]) -> Segment:
    mask = data[definition.column].astype(object) == definition.value
    bound_applied = False
    if definition.bound is not None and cutoff is not None:
        if definition.bound == "before_first_event":
            mask &= data[TIMESTAMP_COL] < cutoff
        elif definition.bound == "from_first_event":
            mask &= data[TIMESTAMP_COL] >= cutoff
        else:
            raise ValueError(f"Unknown segment bound {definition.bound!r}")
        bound_applied = True
    frame = (
        data.loc[mask, [TIMESTAMP_COL, RESPONSE_COL, PREDICTION_COL]]
        .rename(columns={RESPONSE_COL: "observed", PREDICTION_COL: "predicted"})
        .sort_values(TIMESTAMP_COL, kind="mergesort")
        .reset_index(drop=True)
    )
    return Segment(definition=definition, frame=frame, bound_applied=bound_applied)


def build_segments(
    data: pd.DataFrame,
    definitions: Optional[List[SegmentDefinition]] = None,
) -> Dict[str, Segment]:
    """Evaluate the segment table over a predicted dataset.

    Without any ``precipitation_event == 1`` record the time bounds are not
    applied, so the baseline ``post_0`` segment keeps every
    ``post_event_phase == 0`` record.
    """
    missing = [c for c in (TIMESTAMP_COL, PRECIP_EVENT_COL, POST_EVENT_COL, RESPONSE_COL, PREDICTION_COL) if c not in data.columns]
    if missing:
        raise KeyError(f"Missing required columns: {missing}")
    cutoff = first_event_time(data)
    table = definitions if definitions is not None else segment_definitions(data)
    return {d.label: evaluate_segment(data, d, cutoff) for d in table}


def segment_summary(segments: Dict[str, Segment]) -> pd.DataFrame:
    rows = []
    for label, seg in segments.items():
        frame = seg.frame
        rows.append(
            {
                "segment": label,
                "column": seg.definition.column,
                "value": seg.definition.value,
                "bound": seg.definition.bound or "",
                "bound_applied": seg.bound_applied,
                "n": int(frame.shape[0]),
                "start": frame[TIMESTAMP_COL].min() if not frame.empty else pd.NaT,
                "end": frame[TIMESTAMP_COL].max() if not frame.empty else pd.NaT,
                "observed_mean": float(frame["observed"].mean()) if not frame.empty else float("nan"),
                "predicted_mean": float(frame["predicted"].mean()) if not frame.empty else float("nan"),
            }
        )
    return pd.DataFrame(rows)
