# ================================================================
# File     : utils.py
# Purpose  : Common helpers for PimPoodle (console, files, time, data)
# Notes    : British English; witty output; one place for colour
# ================================================================

import os
import re
import csv
import json
import time
import uuid
import random
import pathlib
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from colorama import Fore, Style, init as _colorama_init
from tabulate import tabulate

_colorama_init(autoreset=True)

DEBUG_ENABLED = False

# ================================================================
# Function: fncSetDebug
# Purpose : Globally enable/disable debug output
# Notes   : Called from main after parsing --debug
# ================================================================
def fncSetDebug(enabled: bool) -> None:
    global DEBUG_ENABLED
    DEBUG_ENABLED = bool(enabled)


# ================================================================
# Function: fncPrintMessage
# Purpose : Standardised console output with levels and colours
# Notes   : Levels: info, warn, error, success, debug
# ================================================================
def fncPrintMessage(message: str, level: str = "info") -> None:
    if level == "debug" and not DEBUG_ENABLED:
        return
    colours = {
        "info": Fore.CYAN,
        "warn": Fore.YELLOW,
        "error": Fore.RED,
        "success": Fore.GREEN,
        "debug": Fore.MAGENTA
    }
    prefix = {
        "info": "[•]",
        "warn": "[!]",
        "error": "[✗]",
        "success": "[✓]",
        "debug": "[∆]"
    }
    colour = colours.get(level, "")
    mark = prefix.get(level, "[ ]")
    print(f"{colour}{mark} {message}{Style.RESET_ALL}")


# ================================================================
# Function: fncDisplayBanner
# Purpose : Display the PimPoodle banner with the poodle on a lead
# Notes   : Cycles through colour palette per character
# ================================================================
def fncDisplayBanner(version: str = "v1.0"):
    banner_lines = [
        " ___ _       ___                 _ _     ",
        "| _ (_)_ __ | _ \\___  ___  __| | |___ ",
        "|  _/ | '  \\|  _/ _ \\/ _ \\/ _` | / -_)",
        "|_| |_|_|_|_|_| \\___/\\___/\\__,_|_\\___|",
    ]
    poodle_lines = [
        "   /)---(\\   ",
        "  (/ . . \\)  ",
        "  _\\(*)/--o  ",
        " (___/-(__)  ",
    ]

    colours = [Fore.RED, Fore.YELLOW, Fore.GREEN, Fore.BLUE]

    def rainbow(text: str) -> str:
        out = ""
        for i, ch in enumerate(text):
            out += colours[i % len(colours)] + ch
        return out + Style.RESET_ALL

    print("\n")
    width = max(len(line) for line in banner_lines) + 5
    for i in range(max(len(banner_lines), len(poodle_lines))):
        left = banner_lines[i] if i < len(banner_lines) else ""
        right = poodle_lines[i] if i < len(poodle_lines) else ""
        print(rainbow(left.ljust(width) + right))

    print(f"{Fore.CYAN}\nPimPoodle {version} — 'Because every privilege deserves a short leash.'{Style.RESET_ALL}\n")


# ================================================================
# Function: fncBlurb
# Purpose : Display a witty blurb describing current action
# ================================================================
def fncBlurb(action: str, flavour: Optional[str] = None):
    blurbs = {
        "list": [
            "Sniffing out which roles you could be wearing…",
            "Counting collars in the PIM kennel…",
        ],
        "activate": [
            "Clipping on the admin lead…",
            "Fetching your just-in-time biscuit…",
        ],
        "deactivate": [
            "Unclipping the lead. Good dog.",
            "Handing the privileges back to the kennel…",
        ],
        "generic": [
            "Preparing the harness…",
            "Warming up the Graph engines…",
        ],
    }
    flavour_text = flavour or random.choice(blurbs.get(action, blurbs["generic"]))
    fncPrintMessage(flavour_text, "info")


# ================================================================
# Function: fncEnsureFolder
# Purpose : Create a folder if it does not exist
# Notes   : Returns pathlib.Path object
# ================================================================
def fncEnsureFolder(path: str) -> pathlib.Path:
    p = pathlib.Path(path).expanduser().resolve()
    p.mkdir(parents=True, exist_ok=True)
    return p


# ================================================================
# Function: fncLoadEnv
# Purpose : Read environment variable with default
# Notes   : Strips quotes; returns default if empty
# ================================================================
def fncLoadEnv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.getenv(name) or default
    if isinstance(val, str):
        return val.strip().strip('"').strip("'")
    return val


# ================================================================
# Function: fncReadJSON
# Purpose : Load JSON from file safely
# Notes   : Returns {} on failure when safe=True
# ================================================================
def fncReadJSON(path: str, safe: bool = True) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as ex:
        if safe:
            fncPrintMessage(f"Could not read JSON '{path}': {ex}", "warn")
            return {}
        raise


# ================================================================
# Function: fncWriteJSON
# Purpose : Write data to JSON with nice formatting
# Notes   : Ensures parent folder exists; UTF-8; 2-space indent
# ================================================================
def fncWriteJSON(path: str, data: Any) -> None:
    p = pathlib.Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with open(p, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False, default=str)
    fncPrintMessage(f"Saved JSON → {p}", "success")


# ================================================================
# Function: fncExportCSV
# Purpose : Save list[dict] to CSV
# Notes   : Headers are the union of keys (sorted)
# ================================================================
def fncExportCSV(path: str, rows: Iterable[Dict[str, Any]]) -> None:
    rows = list(rows)
    p = pathlib.Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)

    if not rows:
        p.write_text("", encoding="utf-8")
        fncPrintMessage(f"Created empty CSV → {p}", "warn")
        return

    headers = sorted({k for r in rows for k in r.keys()})
    with open(p, "w", newline="", encoding="utf-8") as f:
        w = csv.DictWriter(f, fieldnames=headers)
        w.writeheader()
        for r in rows:
            w.writerow({k: r.get(k, "") for k in headers})

    fncPrintMessage(f"Saved CSV → {p}", "success")


# ================================================================
# Function: fncUtcNowIso
# Purpose : UTC timestamp with millisecond precision and 'Z' suffix
# Notes   : Format Graph expects for scheduleInfo.startDateTime
# ================================================================
def fncUtcNowIso(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


# ================================================================
# Function: fncParseDateTime
# Purpose : Parse a Graph ISO-8601 timestamp into an aware datetime
# Notes   : Returns None for empty/unparseable input; Graph sends up
#           to 7 fractional digits which fromisoformat dislikes
# ================================================================
def fncParseDateTime(val: Any) -> Optional[datetime]:
    if isinstance(val, datetime):
        return val if val.tzinfo else val.replace(tzinfo=timezone.utc)
    if not val or not isinstance(val, str):
        return None
    s = val.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    s = re.sub(r"\.(\d{6})\d+", r".\1", s)
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


# ================================================================
# Function: fncChunkList
# Purpose : Yield items in fixed-size chunks
# Notes   : Used for OR'd $filter clauses against Graph
# ================================================================
def fncChunkList(items: List[Any], size: int) -> Iterable[List[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


# ================================================================
# Function: fncRetry
# Purpose : Simple retry wrapper with backoff
# Notes   : backoff in seconds; returns fn result or raises.
#           sleep is injectable so tests never wait.
# ================================================================
def fncRetry(fn: Callable[[], Any], attempts: int = 3, backoff: float = 1.5,
             exceptions: Tuple = (Exception,), sleep: Callable[[float], None] = time.sleep):
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except exceptions as ex:
            if attempt >= attempts:
                fncPrintMessage(f"All {attempts} attempts failed: {ex}", "error")
                raise
            sleep_for = backoff ** (attempt - 1)
            fncPrintMessage(f"Attempt {attempt}/{attempts} failed: {ex}. Retrying in {sleep_for:.1f}s…", "warn")
            sleep(sleep_for)


# ================================================================
# Function: fncSafeGet
# Purpose : Safe nested dictionary access
# Notes   : path like 'a.b.c'; returns default when missing
# ================================================================
def fncSafeGet(data: Dict[str, Any], path: str, default: Any = None) -> Any:
    cur = data
    for part in path.split("."):
        if isinstance(cur, dict) and part in cur:
            cur = cur[part]
        else:
            return default
    return cur


# ================================================================
# Function: fncToTable
# Purpose : Render rows as a table string
# Notes   : Supports list[dict] (keys become headers) or list[list]
# ================================================================
def fncToTable(rows: Iterable[Any], headers: Optional[List[str]] = None, max_rows: Optional[int] = None) -> str:
    rows = list(rows)
    if not rows:
        return "(no data)"
    if max_rows and len(rows) > max_rows:
        rows = rows[:max_rows]

    if isinstance(rows[0], dict):
        hdrs = headers or sorted({k for r in rows for k in r.keys()})
        table_rows = [[r.get(h, "") for h in hdrs] for r in rows]
        return tabulate(table_rows, headers=hdrs, tablefmt="github")
    return tabulate(rows, headers=(headers or "firstrow"), tablefmt="github")


# ================================================================
# Function: fncMask
# Purpose : Mask sensitive strings (tokens)
# Notes   : Keeps start/end visible; handles short strings
# ================================================================
def fncMask(value: Optional[str], show: int = 4) -> str:
    if not value:
        return ""
    if len(value) <= show * 2:
        return "*" * len(value)
    return f"{value[:show]}{'*' * (len(value) - (show*2))}{value[-show:]}"


# ================================================================
# Function: fncNewRunId
# Purpose : Generate a short unique run identifier
# Notes   : Correlates log lines of one activation batch
# ================================================================
def fncNewRunId(prefix: str = "run") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


# ================================================================
# Function: fncPromptYesNo
# Purpose : Simple Y/N prompt for interactive flows
# Notes   : Defaults to 'n' if empty input
# ================================================================
def fncPromptYesNo(question: str, default_no: bool = True) -> bool:
    suffix = "[y/N]" if default_no else "[Y/n]"
    ans = input(f"{question} {suffix} ").strip().lower()
    if not ans:
        return not default_no
    return ans in ("y", "yes")
