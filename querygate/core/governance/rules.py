# querygate/core/governance/rules.py
"""
RULES MODULE - Turn a business-rules document into a RuleSet

Purpose:
    1. Read the rules text line by line (markdown bullets are fine)
    2. Recognise directive shapes with light keyword/pattern matching
    3. Emit immutable Rule objects, keep every other line as an annotation
    4. Keep the latest good RuleSet per user (RuleBook)

Data Flow:
    raw text → clean_line() → parse_labelled_line() / parse_prose_line() → Rule(s)
                                                                              ↓
                                                  RuleSet(version = digest of the text)

Why this matters:
    - Admins write rules as prose: "No DELETE statements allowed"
    - Or as short lists: "Restricted tables: payroll, salaries"
    - A typo in one rule must not silently disable the whole document,
      so a recognised directive with a broken parameter raises ParseError
"""

import hashlib
import logging
import re
from typing import Dict, List, Optional, Tuple

from querygate.core.config import settings
from querygate.core.exceptions import ParseError
from querygate.core.schemas import Rule, RuleKind, RuleSet

logger = logging.getLogger(__name__)


WRITE_VERBS = (
    "DELETE",
    "DROP",
    "ALTER",
    "TRUNCATE",
    "UPDATE",
    "INSERT",
    "CREATE",
    "GRANT",
    "REVOKE",
    "MERGE",
    "EXEC",
    "EXECUTE",
    "REPLACE",
)
READ_VERBS = ("SELECT", "WITH", "SHOW", "DESCRIBE", "EXPLAIN")
STATEMENT_VERBS = WRITE_VERBS + READ_VERBS

# Spelling in rule text → canonical clause name
CLAUSE_ALIASES = {
    "limit": "LIMIT",
    "row limit": "LIMIT",
    "top": "LIMIT",
    "where": "WHERE",
    "order by": "ORDER BY",
    "group by": "GROUP BY",
}

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][\w$]*(?:\.[A-Za-z_][\w$]*)*$")

# Words that can sit next to "table"/"column" without being a name
NAME_STOPWORDS = {
    "a", "an", "the", "this", "that", "these", "those", "any", "all", "every",
    "each", "some", "other", "such", "which", "following", "certain", "its",
    "their", "must", "should", "is", "are", "be", "been", "may", "can",
    "cannot", "never", "not", "no", "from", "of", "in", "on", "to", "with",
    "and", "or", "by", "as", "sensitive", "restricted", "confidential",
    "hidden", "forbidden", "prohibited", "private", "system", "internal",
    "database", "sql", "data", "named", "called", "access", "accessed",
    "query", "queried", "expose", "exposed", "show", "shown", "select",
    "selected", "read", "join", "joined", "use", "used", "reference",
    "referenced", "include", "return", "returned",
}


# ============================================================================
# STEP 1: CLEAN LINES
# ============================================================================

LIST_MARKER_RE = re.compile(r"^(?:[-*+•]|\d+[.)])\s+")


def clean_line(line: str) -> str:
    """
    Strip list markers and bold/italic asterisks from one line of rule text.

    Examples:
        "- **No DELETE** statements" → "No DELETE statements"
        "2) Max rows: 500"           → "Max rows: 500"
    """
    line = LIST_MARKER_RE.sub("", line.strip())
    return line.replace("*", "").strip()


def _split_values(value: str) -> List[str]:
    parts = re.split(r"\s*(?:,|;|&|\band\b|\bor\b)\s*", value, flags=re.IGNORECASE)
    return [strip_quotes(part) for part in parts if strip_quotes(part)]


def strip_quotes(name: str) -> str:
    """Remove quoting/bracketing characters around an identifier."""
    name = re.sub(r"[`\"'\[\]]", "", name.strip())
    return name.strip(" .()")


def parse_row_limit(token: str, line_no: int) -> int:
    """
    Parse a row-limit parameter.

    Handles "1000", "1,000", "1_000" and a trailing full stop.
    Anything else is a structurally invalid directive.

    Raises:
        ParseError: the value is not a positive whole number
    """
    cleaned = token.strip().rstrip(".;:,)").replace(",", "").replace("_", "")
    if not cleaned.isdigit():
        raise ParseError(line_no, f"row limit '{token}' is not a whole number")

    value = int(cleaned)
    if value < 1:
        raise ParseError(line_no, f"row limit must be positive, got {value}")
    return value


# ============================================================================
# STEP 2: LABELLED DIRECTIVES ("Restricted tables: a, b")
# ============================================================================

LABEL_RE = re.compile(r"^(?P<label>[A-Za-z][A-Za-z \-]*?)\s*[:=]\s*(?P<value>.*)$")

LABEL_KINDS = [
    (
        re.compile(
            r"^(?:forbidden|blocked|disallowed|prohibited|banned)\s+(?:sql\s+)?"
            r"(?:keywords?|statements?|commands?|verbs?|operations?)$"
        ),
        RuleKind.FORBIDDEN_KEYWORD,
    ),
    (
        re.compile(
            r"^(?:restricted|forbidden|blocked|hidden|sensitive|confidential)\s+tables?$"
        ),
        RuleKind.TABLE_RESTRICTION,
    ),
    (
        re.compile(
            r"^(?:restricted|forbidden|blocked|hidden|sensitive|confidential)\s+"
            r"(?:columns?|fields?)$"
        ),
        RuleKind.COLUMN_RESTRICTION,
    ),
    (
        re.compile(
            r"^(?:max(?:imum)?\s+(?:result\s+)?rows?|max(?:imum)?\s+row\s+limit|row\s+limit)$"
        ),
        RuleKind.ROW_LIMIT_MAX,
    ),
    (re.compile(r"^required\s+clauses?$"), RuleKind.REQUIRED_CLAUSE),
]


def parse_labelled_line(
    line: str, line_no: int
) -> Optional[List[Tuple[RuleKind, str]]]:
    """
    Parse a "<label>: <values>" directive.

    Returns:
        List of (kind, pattern) pairs, or None when the label is not a known directive

    Raises:
        ParseError: the label is known but its values are empty or malformed

    Examples:
        "Restricted tables: payroll and salaries"
            → [(TABLE_RESTRICTION, "payroll"), (TABLE_RESTRICTION, "salaries")]
        "Max rows: 1,000" → [(ROW_LIMIT_MAX, "1000")]
    """
    match = LABEL_RE.match(line)
    if not match:
        return None

    label = re.sub(r"[\s\-]+", " ", match.group("label").strip().lower())
    kind = next((k for pattern, k in LABEL_KINDS if pattern.match(label)), None)
    if kind is None:
        return None

    value = match.group("value").strip()
    if not value:
        raise ParseError(line_no, f"'{label}' directive has no value")

    if kind == RuleKind.ROW_LIMIT_MAX:
        return [(kind, str(parse_row_limit(value.split()[0], line_no)))]

    names = _split_values(value)
    if not names:
        raise ParseError(line_no, f"'{label}' directive has no value")

    found = []
    for name in names:
        if kind == RuleKind.REQUIRED_CLAUSE:
            clause = CLAUSE_ALIASES.get(re.sub(r"\s+", " ", name.lower()))
            if clause is None:
                raise ParseError(line_no, f"unknown clause '{name}'")
            found.append((kind, clause))
            continue

        if not IDENTIFIER_RE.match(name):
            raise ParseError(line_no, f"'{name}' is not a valid name")
        if kind == RuleKind.FORBIDDEN_KEYWORD:
            name = name.upper()
        found.append((kind, name))

    return found


# ============================================================================
# STEP 3: PROSE DIRECTIVES ("No DELETE statements allowed")
# ============================================================================

NEGATION_RE = re.compile(
    r"\b(?:no|never|not|don't|cannot|can't|forbid(?:den)?|prohibit(?:ed)?|"
    r"disallow(?:ed)?|banned|block(?:ed)?)\b",
    re.IGNORECASE,
)
# Uppercase verbs count on their own; lowercase ones only next to "statements"
UPPER_VERB_RE = re.compile(r"\b(" + "|".join(WRITE_VERBS) + r")\b")
NOUN_VERB_RE = re.compile(
    r"\b(" + "|".join(WRITE_VERBS) + r")\s+(?:statements?|quer(?:y|ies)|commands?|operations?)\b",
    re.IGNORECASE,
)
READ_ONLY_RE = re.compile(r"\bread[- ]only\b|\bonly\s+select\b", re.IGNORECASE)

REQUIREMENT_RE = re.compile(
    r"\b(?:must|should|always|requires?|required|needs? to|has to|have to|mandatory)\b",
    re.IGNORECASE,
)
NEGATED_REQUIREMENT_RE = re.compile(
    r"\b(?:must|should|need|needs|has|have|do|does)\s+not\b|\bnot\s+required\b|"
    r"\bnever\b|\bdon't\b|\bdoesn't\b",
    re.IGNORECASE,
)
CLAUSE_PATTERNS = [
    (re.compile(r"\brow[- ]limits?\b|\blimit\s+clause\b", re.IGNORECASE), "LIMIT"),
    (re.compile(r"\b(?:LIMIT|TOP)\b"), "LIMIT"),
    (re.compile(r"\bWHERE\b|\bwhere\s+clause\b", re.IGNORECASE), "WHERE"),
    (re.compile(r"\border\s+by\b", re.IGNORECASE), "ORDER BY"),
    (re.compile(r"\bgroup\s+by\b", re.IGNORECASE), "GROUP BY"),
]

ROW_CONTEXT_RE = re.compile(r"\brows?\b|\blimit\b", re.IGNORECASE)
CEILING_RE = re.compile(
    r"\b(?:max(?:imum)?|at\s+most|no\s+more\s+than|more\s+than|exceed(?:s|ing)?|"
    r"limit\s+of|limited\s+to|up\s+to|capped\s+at|cap\s+of)\s+"
    r"(?:(?:of|at\s+most|up\s+to|row|rows|result|results|count|number|is|to|be|set|at|"
    r"allowed|returned|per|query|queries|must|should)\s+){0,6}"
    r"(?P<value>\d[\d,_]*(?:\.\d+)?)(?!\w)",
    re.IGNORECASE,
)

RESTRICTION_CUE_RE = re.compile(
    r"\b(?:restricted|forbidden|prohibited|off[- ]limits|hidden|confidential|sensitive|private)\b|"
    r"\b(?:never|not|don't|cannot|can't)\s+(?:be\s+)?(?:access(?:ed)?|quer(?:y|ied)|"
    r"referenc(?:e|ed)|expos(?:e|ed)|shown?|select(?:ed)?|read|join(?:ed)?|used?)\b",
    re.IGNORECASE,
)
NAME = r"[`\"'\[]?[A-Za-z_][\w$.]*[`\"'\]]?"


def _entity_names(line: str, noun: str) -> List[str]:
    """
    Find names attached to a noun such as "table" or "column".

    Examples:
        "Do not query the payroll table"          → ["payroll"]
        "Never expose columns ssn and salary"     → ["ssn", "salary"]
    """
    nouns = rf"(?:{noun}s?)"
    names = []
    for match in re.finditer(rf"({NAME})\s+{nouns}\b", line, re.IGNORECASE):
        names.append(match.group(1))
    name_list = rf"({NAME}(?:\s*(?:,|&|\band\b|\bor\b)\s*{NAME})*)"
    for match in re.finditer(rf"\b{nouns}\s+{name_list}", line, re.IGNORECASE):
        names.extend(_split_values(match.group(1)))

    cleaned = []
    for name in names:
        name = strip_quotes(name)
        if (
            name
            and name.lower() not in NAME_STOPWORDS
            and IDENTIFIER_RE.match(name)
            and name not in cleaned
        ):
            cleaned.append(name)
    return cleaned


def parse_prose_line(line: str, line_no: int) -> List[Tuple[RuleKind, str]]:
    """
    Recognise the prose directive shapes in one line.

    A single line may carry several directives, e.g.
    "Queries must include a row limit of at most 500" yields a required LIMIT
    clause and a 500 row ceiling.

    A ceiling phrase counts only when a number follows it, so prose such as
    "results should be up to date" stays an annotation.

    Raises:
        ParseError: the number after a ceiling phrase is not a positive whole number
    """
    found: List[Tuple[RuleKind, str]] = []

    # Forbidden statements
    if NEGATION_RE.search(line):
        verbs = [m.group(1).upper() for m in UPPER_VERB_RE.finditer(line)]
        verbs += [m.group(1).upper() for m in NOUN_VERB_RE.finditer(line)]
        found.extend((RuleKind.FORBIDDEN_KEYWORD, verb) for verb in verbs)
    if READ_ONLY_RE.search(line):
        found.extend((RuleKind.FORBIDDEN_KEYWORD, verb) for verb in WRITE_VERBS)

    # Required clauses
    if REQUIREMENT_RE.search(line) and not NEGATED_REQUIREMENT_RE.search(line):
        for pattern, clause in CLAUSE_PATTERNS:
            if pattern.search(line):
                found.append((RuleKind.REQUIRED_CLAUSE, clause))

    # Row ceilings
    if ROW_CONTEXT_RE.search(line):
        ceiling = CEILING_RE.search(line)
        if ceiling:
            limit = parse_row_limit(ceiling.group("value"), line_no)
            found.append((RuleKind.ROW_LIMIT_MAX, str(limit)))

    # Restricted tables / columns; a column line names its table only as context
    if RESTRICTION_CUE_RE.search(line):
        columns = _entity_names(line, r"(?:column|field)")
        found.extend((RuleKind.COLUMN_RESTRICTION, name) for name in columns)
        if not columns:
            tables = _entity_names(line, "table")
            found.extend((RuleKind.TABLE_RESTRICTION, name) for name in tables)

    return found


# ============================================================================
# STEP 4: BUILD THE RULESET
# ============================================================================


def rule_message(kind: RuleKind, pattern: str) -> str:
    if kind == RuleKind.FORBIDDEN_KEYWORD:
        return f"{pattern} statements are not allowed"
    if kind == RuleKind.REQUIRED_CLAUSE:
        return f"Queries must include a {pattern} clause"
    if kind == RuleKind.ROW_LIMIT_MAX:
        return f"Queries may return at most {pattern} rows"
    if kind == RuleKind.TABLE_RESTRICTION:
        return f"Table '{pattern}' is restricted"
    return f"Column '{pattern}' is restricted"


def rules_version(raw_text: str) -> str:
    return hashlib.sha256(raw_text.encode("utf-8")).hexdigest()[:12]


def parse(raw_text: Optional[str], max_bytes: Optional[int] = None) -> RuleSet:
    """
    Parse a business-rules document into a RuleSet.

    Pure and deterministic: the same text always yields an equal RuleSet
    (same version, same rule ids). Empty text means "no restrictions".

    Args:
        raw_text: Rules document as written by the admin
        max_bytes: Optional size ceiling for the document

    Returns:
        RuleSet with enforceable rules and the leftover annotation lines

    Raises:
        ParseError: a recognised directive has an invalid parameter,
            or the document is larger than max_bytes

    Example:
        parse("no DELETE statements allowed").rules
        → (Rule(id="R1.1", kind=FORBIDDEN_KEYWORD, pattern="DELETE", ...),)
    """
    raw_text = raw_text or ""
    if max_bytes is not None and len(raw_text.encode("utf-8")) > max_bytes:
        raise ParseError(0, f"business rules are too large (max {max_bytes} bytes)")

    rules: List[Rule] = []
    annotations: List[str] = []
    seen = set()

    for line_no, raw_line in enumerate(raw_text.splitlines(), start=1):
        line = clean_line(raw_line)
        if not line:
            continue

        directives = parse_labelled_line(line, line_no)
        if directives is None:
            directives = parse_prose_line(line, line_no)

        if not directives:
            annotations.append(line)
            continue

        counter = 0
        for kind, pattern in directives:
            key = (kind, pattern.lower())
            if key in seen:
                continue
            seen.add(key)
            counter += 1
            rules.append(
                Rule(
                    id=f"R{line_no}.{counter}",
                    kind=kind,
                    pattern=pattern,
                    message=rule_message(kind, pattern),
                    line=line_no,
                )
            )

    return RuleSet(
        version=rules_version(raw_text),
        source_text=raw_text,
        rules=tuple(rules),
        annotations=tuple(annotations),
    )


class RuleBook:
    """
    Latest good RuleSet per user.

    A RuleSet is rebuilt only when the rules text changes. When new text fails
    to parse, the previous RuleSet stays in force.
    """

    def __init__(self, max_bytes: Optional[int] = None):
        self.max_bytes = settings.RULES_MAX_BYTES if max_bytes is None else max_bytes
        self._current: Dict[str, RuleSet] = {}

    def current(self, user_id: str) -> Optional[RuleSet]:
        return self._current.get(user_id)

    def refresh(self, user_id: str, raw_text: Optional[str]) -> RuleSet:
        raw_text = raw_text or ""
        cached = self._current.get(user_id)
        if cached is not None and cached.source_text == raw_text:
            return cached

        try:
            rule_set = parse(raw_text, max_bytes=self.max_bytes)
        except ParseError as error:
            if cached is None:
                raise
            logger.warning(
                f"Rules for user {user_id} failed to parse ({error}); "
                f"keeping version {cached.version}"
            )
            return cached

        self._current[user_id] = rule_set
        logger.info(
            f"Loaded rules version {rule_set.version} for user {user_id}: "
            f"{len(rule_set.rules)} rules, {len(rule_set.annotations)} annotations"
        )
        return rule_set

    def forget(self, user_id: str) -> None:
        self._current.pop(user_id, None)
