# ================================================================
# File     : exports.py
# Purpose  : Write role listings to disk (CSV, JSON)
# Notes    : Called by PimPoodle.py after `list --export`
# ================================================================

import pathlib
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from core.utils import fncPrintMessage, fncEnsureFolder, fncExportCSV, fncWriteJSON

SUPPORTED_FORMATS = {"json", "csv"}


# ================================================================
# Function: fncExportList
# Purpose  : Flatten --export list-of-lists from argparse
# Notes    : Accepts "json,csv" and "json csv" alike
# ================================================================
def fncExportList(args_export) -> set:
    if not args_export:
        return set()
    out = set()
    chunks = args_export if isinstance(args_export, (list, tuple)) else [args_export]
    for chunk in chunks:
        for part in str(chunk).replace(",", " ").split():
            fmt = part.strip().lower()
            if fmt in SUPPORTED_FORMATS:
                out.add(fmt)
            else:
                fncPrintMessage(f"Ignoring unknown export format: {fmt}", "warn")
    return out


# ================================================================
# Function: fncGetExportPath
# Purpose  : Build timestamped output path under ~/.pimpoodle/reports/
# ================================================================
def fncGetExportPath(root: Optional[pathlib.Path] = None, now: Optional[datetime] = None) -> pathlib.Path:
    if root is None:
        root = pathlib.Path.home() / ".pimpoodle" / "reports"
    ts = (now or datetime.now(timezone.utc)).strftime("%Y%m%d-%H%M%S")
    return fncEnsureFolder(str(pathlib.Path(root) / ts))


# ================================================================
# Function: fncExportRoles
# Purpose  : Export eligible/active role rows in each requested format
# Notes    : JSON carries the full records; CSV the flattened rows
# ================================================================
def fncExportRoles(result, rows_for, formats: Iterable[str], root: Optional[pathlib.Path] = None) -> pathlib.Path:
    formats = set(formats)
    out_dir = fncGetExportPath(root)
    sections = {"eligible": result.eligible_roles, "active": result.active_roles}

    if "json" in formats:
        payload = {name: [asdict(r) for r in roles] for name, roles in sections.items()}
        payload["warnings"] = list(result.warnings)
        payload["fetched_at"] = result.fetched_at
        fncWriteJSON(str(out_dir / "roles.json"), payload)

    if "csv" in formats:
        for name, roles in sections.items():
            rows: List[dict] = rows_for(roles)
            if rows:
                fncExportCSV(str(out_dir / f"roles_{name}.csv"), rows)

    fncPrintMessage(f"Exports written → {out_dir}", "success")
    return out_dir
