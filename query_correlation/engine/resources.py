"""Resource (table) extraction from query text.

This is a bounded-vocabulary text search, not a SQL parser: identifiers that
follow FROM / JOIN are matched against a known-table vocabulary, and known
names appearing anywhere as whole words also count.  Text with no match falls
into a single synthetic bucket so contention analysis can still group it.
"""

import re

DEFAULT_KNOWN_TABLES: frozenset[str] = frozenset(
    {"CUSTTABLE", "INVENTTABLE", "SALESTABLE", "PURCHLINE", "VENDTABLE"}
)
DEFAULT_FALLBACK_RESOURCE = "SHARED_TABLE"

RESOURCE_TYPE_TABLE = "Table"
RESOURCE_TYPE_SHARED = "Shared"

# FROM / JOIN followed by an optionally bracketed / quoted / schema-qualified name
_CLAUSE_TARGET_RE = re.compile(r"\b(?:FROM|JOIN)\s+((?:[\[\"`]?[\w#$@]+[\]\"`]?\.)*[\[\"`]?[\w#$@]+[\]\"`]?)")
_IDENTIFIER_QUOTES = "[]\"`"


def parse_table_vocabulary(raw: str) -> frozenset[str]:
    """Parse a comma-separated table list (from settings) into a vocabulary."""
    return frozenset(name.strip().upper() for name in raw.split(",") if name.strip())


def resource_type(resource_name: str, fallback: str = DEFAULT_FALLBACK_RESOURCE) -> str:
    """Label a resource as a real table or the synthetic shared bucket."""
    return RESOURCE_TYPE_SHARED if resource_name == fallback else RESOURCE_TYPE_TABLE


def _clause_targets(upper_text: str) -> list[str]:
    targets: list[str] = []
    for match in _CLAUSE_TARGET_RE.finditer(upper_text):
        # Keep the last dotted part: dbo.CUSTTABLE -> CUSTTABLE
        name = match.group(1).split(".")[-1].strip(_IDENTIFIER_QUOTES)
        if name:
            targets.append(name)
    return targets


def extract_resources(
    query_text: str,
    known_tables: frozenset[str] = DEFAULT_KNOWN_TABLES,
    fallback: str = DEFAULT_FALLBACK_RESOURCE,
) -> set[str]:
    """Return the resource identifiers referenced by a query.

    Args:
        query_text: Raw query text. Matching is case-insensitive.
        known_tables: Upper-case table vocabulary. When empty, every FROM/JOIN
            target is accepted as-is.
        fallback: Synthetic bucket returned when nothing matches.

    Returns:
        A non-empty set of upper-case resource names.
    """
    upper_text = query_text.upper()
    targets = _clause_targets(upper_text)

    if known_tables:
        resources = {name for name in targets if name in known_tables}
        for table in known_tables:
            if table not in resources and re.search(rf"\b{re.escape(table)}\b", upper_text):
                resources.add(table)
    else:
        resources = set(targets)

    return resources or {fallback}
