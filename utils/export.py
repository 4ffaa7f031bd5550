"""Download helpers for dispatch and marginal-emissions tables."""

from __future__ import annotations

from io import BytesIO
from typing import Optional

import pandas as pd

from services.dispatch_core import DispatchResult
from services.errors import EmptySelectionError

# Excel caps sheet names at 31 characters.
_MAX_SHEET_NAME = 31


def _excel_safe(df: pd.DataFrame) -> pd.DataFrame:
    """openpyxl rejects timezone-aware datetimes; drop the zone."""
    out = df.copy()
    for col in out.columns:
        if isinstance(out[col].dtype, pd.DatetimeTZDtype):
            out[col] = out[col].dt.tz_localize(None)
    return out


def build_dispatch_csv(result: DispatchResult) -> bytes:
    """Return the long dispatch export table as UTF-8 CSV bytes."""
    if not len(result):
        raise EmptySelectionError("No dispatch runs to export.")
    return result.to_frame().to_csv(index=False).encode("utf-8")


def build_dispatch_workbook(
    result: DispatchResult,
    mef_df: Optional[pd.DataFrame] = None,
    band_df: Optional[pd.DataFrame] = None,
) -> bytes:
    """Write one sheet per dispatch run plus optional MEF sheets to an xlsx payload.

    Sheets are named ``Run 1``, ``Run 2``... followed by ``MEF band`` and
    ``MEF runs`` when those tables are supplied.
    """

    if not len(result):
        raise EmptySelectionError("No dispatch runs to export.")

    buffer = BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        for run in result:
            sheet = f"Run {run.run_id}"[:_MAX_SHEET_NAME]
            run.curve.to_excel(writer, sheet_name=sheet, index=False)
        if band_df is not None:
            _excel_safe(band_df).to_excel(writer, sheet_name="MEF band", index=False)
        if mef_df is not None:
            _excel_safe(mef_df).to_excel(writer, sheet_name="MEF runs", index=False)
    return buffer.getvalue()
