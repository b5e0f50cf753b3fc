"""
sdfit Data Table

Immutable long-format observations grouped by subject.

Each row is (subject_id, predictor, response) where the predictor is the
social distance and the response the indifference point. Missing responses
are kept as NaN; they are skipped when fitting but never remove the subject.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Sequence, Tuple, Union

import numpy as np
import pandas as pd


@dataclass(frozen=True)
class Observation:
    """A single (subject, predictor, response) row."""
    subject_id: int
    predictor: float
    response: float


def _to_response(value: Any) -> float:
    if value is None:
        return float("nan")
    return float(value)


class SubjectData:
    """
    Observations of one subject in insertion order.

    Attributes:
        subject_id: Subject identifier
        predictors: Read-only array of predictor values
        responses: Read-only array of responses (NaN when missing)
    """

    __slots__ = ("subject_id", "predictors", "responses")

    def __init__(self, subject_id: int, predictors: Sequence[float], responses: Sequence[float]):
        x = np.array(predictors, dtype=float)
        y = np.array(responses, dtype=float)
        if x.shape != y.shape or x.ndim != 1:
            raise ValueError(f"Subject {subject_id}: predictors and responses must be 1-D and equal length")
        x.setflags(write=False)
        y.setflags(write=False)
        object.__setattr__(self, "subject_id", subject_id)
        object.__setattr__(self, "predictors", x)
        object.__setattr__(self, "responses", y)

    def __setattr__(self, name, value):
        raise AttributeError("SubjectData is immutable")

    def __repr__(self) -> str:
        return f"SubjectData(subject_id={self.subject_id!r}, n={len(self)}, n_observed={self.n_observed})"

    def __len__(self) -> int:
        return int(self.predictors.size)

    def __eq__(self, other) -> bool:
        if not isinstance(other, SubjectData):
            return NotImplemented
        return (
            self.subject_id == other.subject_id
            and np.array_equal(self.predictors, other.predictors)
            and np.array_equal(self.responses, other.responses, equal_nan=True)
        )

    __hash__ = None

    @property
    def observed_mask(self) -> np.ndarray:
        return ~np.isnan(self.responses)

    @property
    def n_observed(self) -> int:
        return int(self.observed_mask.sum())

    def observed(self) -> Tuple[np.ndarray, np.ndarray]:
        """Predictors and responses of the non-missing observations."""
        mask = self.observed_mask
        return self.predictors[mask], self.responses[mask]


class DataTable:
    """
    Immutable grouped observations.

    Subjects keep their first-appearance order and rows keep insertion order
    within a subject. Each (subject_id, predictor) pair must be unique and
    predictors must be finite and positive.

    Example:
        >>> table = DataTable.from_records([
        ...     (1, 1, 87.5), (1, 5, 87.5), (1, 20, 52.5),
        ...     (2, 1, 60.0), (2, 5, None), (2, 20, 30.0),
        ... ])
        >>> table.subject_ids
        (1, 2)
        >>> table[2].n_observed
        2
    """

    def __init__(self, subjects: Iterable[SubjectData]):
        groups: Dict[int, SubjectData] = {}
        for subj in subjects:
            if subj.subject_id in groups:
                raise ValueError(f"Duplicate subject: {subj.subject_id}")
            _validate_subject(subj)
            groups[subj.subject_id] = subj
        self._subjects = groups

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_records(cls, records: Iterable[Union[Observation, Tuple[Any, Any, Any]]]) -> "DataTable":
        """
        Build a table from long-format rows.

        Args:
            records: Observations or (subject_id, predictor, response) triples;
                a response of None or NaN marks a missing value

        Returns:
            DataTable grouped by subject
        """
        predictors: Dict[int, List[float]] = {}
        responses: Dict[int, List[float]] = {}
        for rec in records:
            if isinstance(rec, Observation):
                sid, x, y = rec.subject_id, rec.predictor, rec.response
            else:
                sid, x, y = rec
            sid = int(sid)
            predictors.setdefault(sid, []).append(float(x))
            responses.setdefault(sid, []).append(_to_response(y))
        return cls(SubjectData(sid, predictors[sid], responses[sid]) for sid in predictors)

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        subject_col: str = "subject_id",
        predictor_col: str = "predictor",
        response_col: str = "response",
    ) -> "DataTable":
        """
        Build a table from a long pandas DataFrame.

        Args:
            df: One row per observation
            subject_col: Column with integer subject ids
            predictor_col: Column with predictor values
            response_col: Column with responses (NaN for missing)
        """
        missing = [c for c in (subject_col, predictor_col, response_col) if c not in df.columns]
        if missing:
            raise ValueError(f"DataFrame is missing columns: {missing}")
        rows = zip(df[subject_col].tolist(), df[predictor_col].tolist(), df[response_col].tolist())
        return cls.from_records(rows)

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    @property
    def subject_ids(self) -> Tuple[int, ...]:
        return tuple(self._subjects)

    @property
    def n_observations(self) -> int:
        return sum(s.n_observed for s in self._subjects.values())

    def __len__(self) -> int:
        return len(self._subjects)

    def __iter__(self) -> Iterator[SubjectData]:
        return iter(self._subjects.values())

    def __contains__(self, subject_id) -> bool:
        return subject_id in self._subjects

    def __getitem__(self, subject_id: int) -> SubjectData:
        try:
            return self._subjects[subject_id]
        except KeyError:
            raise KeyError(f"Unknown subject: {subject_id}") from None

    def __repr__(self) -> str:
        return f"DataTable(n_subjects={len(self)}, n_observations={self.n_observations})"

    def subset(self, subject_ids: Iterable[int]) -> "DataTable":
        """Table restricted to the given subjects, keeping this table's order."""
        wanted = set(subject_ids)
        unknown = wanted - set(self._subjects)
        if unknown:
            raise KeyError(f"Unknown subjects: {sorted(unknown)}")
        return DataTable(s for sid, s in self._subjects.items() if sid in wanted)

    def to_frame(self) -> pd.DataFrame:
        """Long-format DataFrame with subject_id, predictor, response."""
        rows = [
            (s.subject_id, float(x), float(y))
            for s in self._subjects.values()
            for x, y in zip(s.predictors, s.responses)
        ]
        return pd.DataFrame(rows, columns=["subject_id", "predictor", "response"])

    def predictor_levels(self) -> List[float]:
        """Sorted distinct predictor values across all subjects."""
        levels = set()
        for s in self._subjects.values():
            levels.update(float(x) for x in s.predictors)
        return sorted(levels)


def _validate_subject(subj: SubjectData) -> None:
    x = subj.predictors
    if not np.all(np.isfinite(x)):
        raise ValueError(f"Subject {subj.subject_id}: predictors must be finite")
    if np.any(x <= 0):
        raise ValueError(f"Subject {subj.subject_id}: predictors must be positive")
    if len(set(x.tolist())) != x.size:
        raise ValueError(f"Subject {subj.subject_id}: duplicate predictor values")
    y = subj.responses
    if np.any(np.isinf(y)):
        raise ValueError(f"Subject {subj.subject_id}: responses must be finite or missing")
