"""
Company Matcher

Decides whether a company name reported in a check-in reply refers to the
introduced employer.

Both names are reduced to their core tokens: lower-cased, punctuation
stripped, legal suffixes and stop words dropped. They match when the core
token sets are equal, or when the joined core strings are at least
FUZZY_MATCH_THRESHOLD similar (catches typos like "Acmee" for "Acme").
Substring containment alone is never enough: "Bank" does not match
"Bank of America".
"""
import re
from difflib import SequenceMatcher
from typing import List, Optional

FUZZY_MATCH_THRESHOLD = 0.85

LEGAL_SUFFIXES = {
    "inc", "incorporated", "corp", "corporation", "co", "company", "llc", "llp",
    "lp", "ltd", "limited", "plc", "gmbh", "ag", "sa", "bv", "pty", "group",
    "holdings", "international", "intl",
}

STOP_WORDS = {"the", "and", "of", "a", "an"}

_NON_WORD = re.compile(r"[^a-z0-9\s]")


def core_tokens(name: Optional[str]) -> List[str]:
    """Normalized significant tokens of a company name, in order."""
    if not name:
        return []
    cleaned = _NON_WORD.sub(" ", name.lower().replace("&", " and "))
    return [
        token for token in cleaned.split()
        if token not in LEGAL_SUFFIXES and token not in STOP_WORDS
    ]


def similarity(left: Optional[str], right: Optional[str]) -> float:
    """Similarity of two names' core strings in [0, 1]."""
    left_core = " ".join(core_tokens(left))
    right_core = " ".join(core_tokens(right))
    if not left_core or not right_core:
        return 0.0
    return SequenceMatcher(None, left_core, right_core).ratio()


def companies_match(mentioned: Optional[str], employer_name: Optional[str]) -> bool:
    """True when a reported company name refers to the employer."""
    mentioned_tokens = core_tokens(mentioned)
    employer_tokens = core_tokens(employer_name)

    if not mentioned_tokens or not employer_tokens:
        return False

    if set(mentioned_tokens) == set(employer_tokens):
        return True

    return similarity(mentioned, employer_name) >= FUZZY_MATCH_THRESHOLD
