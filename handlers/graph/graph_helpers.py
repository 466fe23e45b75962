# ================================================================
# File     : handlers/graph/graph_helpers.py
# Purpose  : Safer Graph helpers (OR'd filters, tolerant list reads)
# Notes    : "Not found / access denied" on a list read is an empty
#            result for PIM, not an error. Everything else bubbles.
# ================================================================

from typing import Any, Dict, Iterable, List

from core.errors import GraphApiError
from core.utils import fncChunkList, fncPrintMessage

OR_LIMIT = 15  # Graph limit for OR'd child clauses


def fncQuote(value: str) -> str:
    """OData string literal; single quotes are doubled."""
    return "'" + str(value).replace("'", "''") + "'"


# ================================================================
# Function: fncOrFilters
# Purpose : Build "(field eq 'a' or field eq 'b' ...)" clauses
# Notes   : One clause per chunk of OR_LIMIT distinct values
# ================================================================
def fncOrFilters(field: str, values: Iterable[str], limit: int = OR_LIMIT) -> List[str]:
    distinct = [v for v in dict.fromkeys(values) if v]
    clauses = []
    for chunk in fncChunkList(distinct, limit):
        clauses.append("(" + " or ".join(f"{field} eq {fncQuote(v)}" for v in chunk) + ")")
    return clauses


# ================================================================
# Function: fncGetAllTolerant
# Purpose : get_all that maps 403/404 to an empty list
# Notes   : A user with zero eligible groups is normal, not fatal
# ================================================================
def fncGetAllTolerant(client, endpoint: str, what: str) -> List[Dict[str, Any]]:
    try:
        return client.get_all(endpoint) or []
    except GraphApiError as ex:
        if ex.is_not_found_or_denied:
            fncPrintMessage(f"No {what} visible ({ex.status} {ex.code}); treating as empty.", "debug")
            return []
        raise
