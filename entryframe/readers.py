"""
Column readers backed by numpy arrays and polars frames.

Both readers are immutable once built: column conversions are done lazily,
once, under a lock, so several workers can read entries concurrently.
"""

from __future__ import annotations
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
import polars as pl

from .core import SchemaError, UNKNOWN_TYPE


def _as_column_array(values: Any) -> np.ndarray:
    """Convert a column to a 1D array; ragged or nested values become objects."""
    if isinstance(values, np.ndarray) and values.ndim == 1:
        return values
    if isinstance(values, np.ndarray):
        # Multi-dimensional input: keep one sub-array per entry
        column = np.empty(len(values), dtype=object)
        for i, row in enumerate(values):
            column[i] = row
        return column
    values = list(values)
    if any(isinstance(v, (list, tuple, np.ndarray)) for v in values):
        column = np.empty(len(values), dtype=object)
        for i, row in enumerate(values):
            column[i] = row
        return column
    return np.asarray(values)


class ArrayColumnReader:
    """Reader over a mapping of column name to equally sized sequences."""

    def __init__(self, columns: Mapping[str, Any]):
        self._columns: Dict[str, np.ndarray] = {
            name: _as_column_array(values) for name, values in columns.items()
        }
        lengths = {name: len(col) for name, col in self._columns.items()}
        if len(set(lengths.values())) > 1:
            raise SchemaError(f"Columns have different lengths: {lengths}")
        self._entries = next(iter(lengths.values()), 0)

    def __repr__(self) -> str:
        return f"ArrayColumnReader(entries={self._entries}, columns={list(self._columns)})"

    def entry_count(self) -> int:
        return self._entries

    def column_names(self) -> List[str]:
        return list(self._columns)

    def has_column(self, name: str) -> bool:
        return name in self._columns

    def column_type(self, name: str) -> np.dtype:
        if name not in self._columns:
            raise SchemaError(f"Unknown column '{name}'", column=name)
        return self._columns[name].dtype

    def read_value(self, entry: int, name: str) -> Any:
        try:
            column = self._columns[name]
        except KeyError:
            raise SchemaError(f"Unknown column '{name}'", column=name) from None
        return column[entry]


# polars dtype -> numpy tag; anything not listed is reported as unknown
_POLARS_TYPE_TAGS = [
    (pl.Boolean, np.dtype(np.bool_)),
    (pl.Int8, np.dtype(np.int8)),
    (pl.Int16, np.dtype(np.int16)),
    (pl.Int32, np.dtype(np.int32)),
    (pl.Int64, np.dtype(np.int64)),
    (pl.UInt8, np.dtype(np.uint8)),
    (pl.UInt16, np.dtype(np.uint16)),
    (pl.UInt32, np.dtype(np.uint32)),
    (pl.UInt64, np.dtype(np.uint64)),
    (pl.Float32, np.dtype(np.float32)),
    (pl.Float64, np.dtype(np.float64)),
    (pl.String, np.dtype(np.str_)),
]


def polars_type_tag(dtype: Any) -> np.dtype:
    for polars_dtype, tag in _POLARS_TYPE_TAGS:
        if dtype == polars_dtype:
            return tag
    return UNKNOWN_TYPE


class PolarsColumnReader:
    """Reader over an in-memory polars DataFrame.

    Numeric columns are exposed as numpy arrays, everything else (strings,
    list columns) as Python lists. Conversion happens on first access.
    """

    _FILE_LOADERS = {
        '.parquet': lambda p: pl.scan_parquet(p).collect(),
        '.ipc': lambda p: pl.read_ipc(p),
        '.feather': lambda p: pl.read_ipc(p),
        '.csv': lambda p: pl.read_csv(p),
    }

    def __init__(self, frame: Union[pl.DataFrame, pl.LazyFrame],
                 columns: Optional[Sequence[str]] = None):
        if isinstance(frame, pl.LazyFrame):
            frame = frame.collect()
        if columns is not None:
            frame = frame.select(list(columns))
        self._frame = frame
        self._schema = dict(frame.schema)
        self._converted: Dict[str, Any] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_file(cls, path: Union[str, Path],
                  columns: Optional[Sequence[str]] = None) -> 'PolarsColumnReader':
        """Load a parquet, ipc/feather or csv file with polars."""
        path = Path(path)
        loader = cls._FILE_LOADERS.get(path.suffix.lower())
        if loader is None:
            raise ValueError(f"Unsupported file format: {path.suffix}")
        return cls(loader(path), columns=columns)

    @classmethod
    def from_parquet(cls, path: Union[str, Path],
                     columns: Optional[Sequence[str]] = None) -> 'PolarsColumnReader':
        return cls(pl.scan_parquet(path).collect(), columns=columns)

    def __repr__(self) -> str:
        return f"PolarsColumnReader(entries={self._frame.height}, columns={self._frame.columns})"

    def entry_count(self) -> int:
        return self._frame.height

    def column_names(self) -> List[str]:
        return list(self._frame.columns)

    def has_column(self, name: str) -> bool:
        return name in self._schema

    def column_type(self, name: str) -> np.dtype:
        if name not in self._schema:
            raise SchemaError(f"Unknown column '{name}'", column=name)
        return polars_type_tag(self._schema[name])

    def read_value(self, entry: int, name: str) -> Any:
        values = self._converted.get(name)
        if values is None:
            values = self._convert(name)
        return values[entry]

    def _convert(self, name: str) -> Any:
        with self._lock:
            if name in self._converted:
                return self._converted[name]
            if name not in self._schema:
                raise SchemaError(f"Unknown column '{name}'", column=name)
            series = self._frame.get_column(name)
            if polars_type_tag(series.dtype).kind in 'biuf' and series.null_count() == 0:
                values = series.to_numpy()
            else:
                values = series.to_list()
            self._converted[name] = values
            return values
