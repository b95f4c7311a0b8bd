# querygate/core/governance/validator.py
"""
VALIDATOR MODULE - Decide whether a query is allowed under a RuleSet

Purpose:
    1. Scan the query loosely (no SQL parser): statement verbs, row limit, clauses
    2. Evaluate every rule independently and collect every violation
    3. Return a Verdict; violations are data, never exceptions

Data Flow:
    query → scan_query() → QueryScan ─┐
                                      ├→ CHECKS[rule.kind](rule, scan) → Verdict
    RuleSet.rules ────────────────────┘

Natural-language questions ("show me last month's payroll") have no statement
verb, so only the table/column restrictions apply to them.
"""

import re
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from querygate.core.governance.rules import STATEMENT_VERBS, WRITE_VERBS
from querygate.core.schemas import Rule, RuleKind, RuleSet, Verdict, Violation

BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)
LINE_COMMENT_RE = re.compile(r"--[^\n]*")
STRING_LITERAL_RE = re.compile(r"'(?:[^']|'')*'")
QUOTE_CHARS_RE = re.compile(r"[`\"\[\]]")
FIRST_WORD_RE = re.compile(r"^[\s(]*([A-Za-z]+)(?![\w$])")

# Words that follow FROM/INTO/TABLE... only in SQL, not in prose
SQL_SHAPE_RE = re.compile(
    r"[*;=]|\b(?:from|into|join|where|values|set|table)\s+[\w.$]+\s*"
    r"(?:$|[,;()=]|\b(?:where|join|on|group|order|limit|values|select|set|as|add|drop|rename)\b)",
    re.IGNORECASE,
)
STATEMENT_START_RE = re.compile(r"(?:^|;|\(|\))\s*([A-Za-z]+)(?![\w$])")

LIMIT_RES = [
    re.compile(r"\bLIMIT\s+(\d+)", re.IGNORECASE),
    re.compile(r"\bTOP\s*\(?\s*(\d+)", re.IGNORECASE),
    re.compile(r"\bFETCH\s+(?:FIRST|NEXT)\s+(\d+)\s+ROWS?\b", re.IGNORECASE),
]
CLAUSE_RES = {
    "WHERE": re.compile(r"\bWHERE\b", re.IGNORECASE),
    "ORDER BY": re.compile(r"\bORDER\s+BY\b", re.IGNORECASE),
    "GROUP BY": re.compile(r"\bGROUP\s+BY\b", re.IGNORECASE),
}


class QueryScan(BaseModel):
    """What the lexical scan could recognise in a query."""

    model_config = ConfigDict(frozen=True)

    text: str
    is_sql: bool = False
    verb: Optional[str] = None
    statement_verbs: Tuple[str, ...] = ()
    row_limit: Optional[int] = None


# ============================================================================
# STEP 1: SCAN THE QUERY
# ============================================================================


def scrub_sql(query: str) -> str:
    """
    Remove comments and string literals, and unwrap quoted identifiers.

    Examples:
        "SELECT * FROM [dbo].[users] -- DROP" → "SELECT * FROM dbo.users "
        "WHERE note = 'DELETE me'"            → "WHERE note =  "
    """
    text = BLOCK_COMMENT_RE.sub(" ", query)
    text = LINE_COMMENT_RE.sub(" ", text)
    text = STRING_LITERAL_RE.sub(" ", text)
    return QUOTE_CHARS_RE.sub("", text)


def looks_like_sql(text: str) -> Optional[str]:
    """
    Return the leading statement verb if scrubbed text reads like SQL.

    A write verb counts in any case ("drop table users cascade"). A read verb
    written in lowercase also needs SQL punctuation or an SQL-shaped
    FROM/INTO/TABLE phrase, so "show me sales by region" stays prose.
    """
    match = FIRST_WORD_RE.match(text)
    if not match:
        return None

    verb = match.group(1).upper()
    if verb not in STATEMENT_VERBS:
        return None
    if verb in WRITE_VERBS or match.group(1).isupper() or SQL_SHAPE_RE.search(text):
        return verb
    return None


def scan_query(query: str) -> QueryScan:
    # Leading comments must not hide the statement verb
    text = scrub_sql(query)
    verb = looks_like_sql(text)
    if verb is None:
        return QueryScan(text=QUOTE_CHARS_RE.sub("", query))

    statement_verbs = []
    for match in STATEMENT_START_RE.finditer(text):
        word = match.group(1).upper()
        if word in STATEMENT_VERBS and word not in statement_verbs:
            statement_verbs.append(word)

    limits = [int(m.group(1)) for pattern in LIMIT_RES for m in pattern.finditer(text)]

    return QueryScan(
        text=text,
        is_sql=True,
        verb=verb,
        statement_verbs=tuple(statement_verbs),
        row_limit=max(limits) if limits else None,
    )


def mentions_identifier(text: str, name: str) -> bool:
    """Whole-identifier, case-insensitive match; "dbo.payroll" mentions "payroll"."""
    pattern = rf"(?<![\w$]){re.escape(name)}(?![\w$])"
    return re.search(pattern, text, re.IGNORECASE) is not None


# ============================================================================
# STEP 2: RULE CHECKS (each returns a violation message or None)
# ============================================================================


def check_forbidden_keyword(rule: Rule, scan: QueryScan) -> Optional[str]:
    if not scan.is_sql:
        return None
    keyword = rule.pattern.upper()
    if keyword in STATEMENT_VERBS:
        hit = keyword in scan.statement_verbs
    else:
        hit = mentions_identifier(scan.text, keyword)
    return rule.message if hit else None


def check_required_clause(rule: Rule, scan: QueryScan) -> Optional[str]:
    if not scan.is_sql:
        return None
    if rule.pattern == "LIMIT":
        present = scan.row_limit is not None
    else:
        clause_re = CLAUSE_RES.get(rule.pattern)
        present = clause_re is not None and clause_re.search(scan.text) is not None
    return None if present else rule.message


def check_row_limit(rule: Rule, scan: QueryScan) -> Optional[str]:
    if not scan.is_sql or scan.row_limit is None:
        return None
    ceiling = int(rule.pattern)
    if scan.row_limit > ceiling:
        return f"{rule.message} (query asks for {scan.row_limit})"
    return None


def check_restricted_name(rule: Rule, scan: QueryScan) -> Optional[str]:
    return rule.message if mentions_identifier(scan.text, rule.pattern) else None


CHECKS: Dict[RuleKind, Callable[[Rule, QueryScan], Optional[str]]] = {
    RuleKind.FORBIDDEN_KEYWORD: check_forbidden_keyword,
    RuleKind.REQUIRED_CLAUSE: check_required_clause,
    RuleKind.ROW_LIMIT_MAX: check_row_limit,
    RuleKind.TABLE_RESTRICTION: check_restricted_name,
    RuleKind.COLUMN_RESTRICTION: check_restricted_name,
}
STATEMENT_RULES = (
    RuleKind.FORBIDDEN_KEYWORD,
    RuleKind.REQUIRED_CLAUSE,
    RuleKind.ROW_LIMIT_MAX,
)


# ============================================================================
# STEP 3: VERDICT
# ============================================================================


def validate(query: str, rule_set: Optional[RuleSet]) -> Verdict:
    """
    Evaluate a query against every rule of a RuleSet.

    All rules are checked; one violation never hides another, so the caller
    can show every broken rule at once.

    Args:
        query: SQL text or a natural-language question
        rule_set: Parsed rules; None or empty means no restrictions

    Returns:
        Verdict with valid=True exactly when there are no violations

    Example:
        validate("DROP TABLE users", parse("Never DROP tables"))
        → Verdict(valid=False, violations=(Violation(rule_id="R1.1", ...),))
    """
    if rule_set is None or rule_set.is_empty:
        version = rule_set.version if rule_set is not None else None
        return Verdict(valid=True, rule_set_version=version)

    scan = scan_query(query)
    violations: List[Violation] = []
    for rule in rule_set.rules:
        message = CHECKS[rule.kind](rule, scan)
        if message is not None:
            violations.append(Violation(rule_id=rule.id, message=message))

    warnings = []
    if not scan.is_sql and rule_set.rules_of(*STATEMENT_RULES):
        warnings.append(
            "Query is not SQL; statement, clause and row-limit rules were not applied"
        )

    return Verdict(
        valid=not violations,
        violations=tuple(violations),
        warnings=tuple(warnings),
        rule_set_version=rule_set.version,
    )
