"""Tokenization shared by the summarizer and the similarity index."""

import re
from typing import List

STOP_WORDS = frozenset("""
    a an the and or but in on at to for of with by from is was are were be been
    being have has had do does did will would could should may might shall can
    this that these those i you he she it we they me him her us them my your his
    its our their what which who whom how when where why not no so if then than
    too very just about up out as into also more some such there
""".split())

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")


def tokenize(text: str) -> List[str]:
    """Lowercase, drop punctuation, stop-words and tokens of two characters or fewer."""
    cleaned = _NON_ALNUM.sub("", text.lower())
    return [word for word in cleaned.split() if len(word) > 2 and word not in STOP_WORDS]
