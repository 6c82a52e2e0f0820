from __future__ import annotations

import asyncio
import csv
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

import pandas as pd

from .api import CANDLE_COLUMNS, Candle, candles_to_dataframe, dataframe_to_candles, format_utc_ms


MS_TIMESTAMP_COLUMNS = ("open_time", "close_time")


@dataclass(frozen=True)
class PersistConfig:
    root_dir: Path
    dataset_slug: str

    def dataset_dir(self) -> Path:
        d = self.root_dir / self.dataset_slug
        d.mkdir(parents=True, exist_ok=True)
        return d

    @property
    def raw_snapshot(self) -> Path:
        return self.dataset_dir() / f"{self.dataset_slug}_raw.parquet"

    @property
    def raw_log(self) -> Path:
        return self.dataset_dir() / f"{self.dataset_slug}_raw.csv"

    @property
    def features_snapshot(self) -> Path:
        return self.dataset_dir() / f"{self.dataset_slug}_features.parquet"

    @property
    def features_log(self) -> Path:
        return self.dataset_dir() / f"{self.dataset_slug}_features_stream.csv"


def render_timestamps(df: pd.DataFrame) -> pd.DataFrame:
    """Copy of `df` with timestamp columns as "YYYY-MM-DD HH:MM:SS.mmm UTC" text."""
    out = df.copy()
    for col in MS_TIMESTAMP_COLUMNS:
        if col in out.columns:
            out[col] = [format_utc_ms(v) for v in out[col].astype("int64")]
    if "datetime" in out.columns:
        ts = pd.to_datetime(out["datetime"])
        out["datetime"] = ts.dt.strftime("%Y-%m-%d %H:%M:%S.") + (ts.dt.microsecond // 1000).map("{:03d}".format) + " UTC"
    return out


def _replace_atomically(path: Path, write: Callable[[Path], None]) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".part")
    try:
        write(tmp)
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()
    return path


def snapshot_overwrite(df: pd.DataFrame, path: Path) -> Path:
    """Replace `path` with the full table.

    .parquet keeps timestamps as integer ms; .csv renders them as UTC text.
    """
    path = Path(path)
    if path.suffix == ".parquet":
        return _replace_atomically(path, lambda p: df.to_parquet(p, index=False))
    if path.suffix == ".csv":
        text = render_timestamps(df)
        return _replace_atomically(path, lambda p: text.to_csv(p, index=False))
    raise ValueError(f"Unsupported snapshot format: {path.suffix!r}")


def _read_header(path: Path) -> List[str]:
    with open(path, newline="") as f:
        return next(csv.reader(f), [])


def _last_line(path: Path, chunk: int = 4096) -> Optional[str]:
    """Last non-empty line of a text file, read backwards from the end."""
    with open(path, "rb") as f:
        f.seek(0, os.SEEK_END)
        pos = f.tell()
        buf = b""
        while pos > 0:
            step = min(chunk, pos)
            pos -= step
            f.seek(pos)
            buf = f.read(step) + buf
            lines = buf.rstrip(b"\r\n").splitlines()
            if len(lines) > 1 or (pos == 0 and lines):
                return lines[-1].decode("utf-8")
    return None


def parse_utc_text(text: str) -> int:
    """Inverse of format_utc_ms: "YYYY-MM-DD HH:MM:SS.mmm UTC" -> epoch ms."""
    ts = pd.Timestamp(text.strip().replace(" UTC", ""), tz="UTC")
    return int(ts.value // 1_000_000)


def append_row(row: pd.DataFrame, path: Path) -> Path:
    """Append rows (normally one) to a CSV log; the header is written only when the file is new.

    When the existing header does not match the row's columns (feature set
    changed between runs) the old log is moved aside and a new one started.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        header = _read_header(path)
        if header and header != list(row.columns):
            stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%SZ")
            moved = path.with_name(f"{path.stem}_{stamp}{path.suffix}")
            os.replace(path, moved)
            print(f"[WARN] {path.name}: columns changed, previous log moved to {moved.name}", file=sys.stderr)
    write_header = not path.exists()
    render_timestamps(row).to_csv(path, mode="a", header=write_header, index=False)
    return path


def append_candle(candle: Candle, path: Path) -> Path:
    return append_row(candles_to_dataframe([candle]), path)


def last_logged_open_time(path: Path) -> Optional[int]:
    """open_time of the last row of a raw CSV log, or None when it has no rows."""
    line = _last_line(path)
    if line is None:
        return None
    first = line.split(",", 1)[0]
    if first == "open_time":
        return None
    return parse_utc_text(first)


def extend_candles_csv(candles: Iterable[Candle], path: Path) -> int:
    """Bring the raw CSV log up to date with `candles`.

    A missing log is written in full; otherwise only candles newer than its
    last row are appended. Returns the number of rows written.
    """
    path = Path(path)
    candles = list(candles)
    if not path.exists():
        snapshot_overwrite(candles_to_dataframe(candles), path)
        return len(candles)
    last = last_logged_open_time(path)
    newer = [c for c in candles if last is None or c.open_time > last]
    if newer:
        append_row(candles_to_dataframe(newer), path)
    return len(newer)


def load_candles_snapshot(path: Path) -> List[Candle]:
    df = pd.read_parquet(path, columns=CANDLE_COLUMNS)
    df = df.sort_values("open_time", kind="mergesort").reset_index(drop=True)
    return dataframe_to_candles(df)


class WriteFanout:
    """Runs file writes in worker threads, one task per write.

    Writes to the same path are serialized in submission order; a failed write
    prints a warning and is otherwise dropped.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._pending: set = set()
        self.failures = 0

    @property
    def pending(self) -> int:
        return len(self._pending)

    def submit(self, label: str, path: Path, fn: Callable, *args) -> asyncio.Task:
        lock = self._locks.setdefault(str(path), asyncio.Lock())
        task = asyncio.get_running_loop().create_task(self._run(label, lock, fn, *args))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _run(self, label: str, lock: asyncio.Lock, fn: Callable, *args) -> bool:
        async with lock:
            try:
                await asyncio.to_thread(fn, *args)
                return True
            except Exception as e:
                self.failures += 1
                print(f"[WARN] {label} failed: {e}", file=sys.stderr)
                return False

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending))
