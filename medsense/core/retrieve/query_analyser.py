import os
import re
from functools import lru_cache
from typing import Iterable, List, Optional, Pattern
from medsense.core.chunk.date_extractor import extract_dates_from_text
from medsense.models.query import DocumentScopedIntent, GeneralIntent, LabValueIntent, QueryAnalysis

# Checked in order, so specific panel members win over their umbrella terms
LAB_KEYWORDS = [
    "hdl", "ldl", "vldl", "triglyceride", "cholesterol",
    "hba1c", "glucose", "insulin",
    "hemoglobin", "haemoglobin", "hematocrit", "platelet", "wbc", "rbc", "ferritin",
    "creatinine", "urea", "uric acid", "egfr",
    "sodium", "potassium", "calcium",
    "albumin", "bilirubin", "alt", "ast",
    "tsh", "t3", "t4",
    "vitamin d", "vitamin b12",
    "psa", "crp", "esr",
]

_FILE_TOKEN = re.compile(r"[\w\-.]+\.(?:pdf|docx|txt)\b", re.IGNORECASE)
_WORD = re.compile(r"[a-z0-9]+")


@lru_cache(maxsize=None)
def keyword_pattern(keyword: str) -> Pattern:
    """Whole-word, case-insensitive match allowing a plural 's'."""
    escaped = r"\s+".join(re.escape(part) for part in keyword.split())
    return re.compile(rf"\b{escaped}s?\b", re.IGNORECASE)


def contains_keyword(text: str, keyword: str) -> bool:
    return bool(keyword_pattern(keyword).search(text or ""))


def significant_words(text: str) -> List[str]:
    """Lowercase words longer than 3 characters, in first-seen order."""
    return list(dict.fromkeys(w for w in _WORD.findall((text or "").lower()) if len(w) > 3))


def names_match(a: str, b: str) -> bool:
    """Case-insensitive substring match in either direction."""
    a, b = (a or "").lower().strip(), (b or "").lower().strip()
    if not a or not b:
        return False
    return a in b or b in a


class QueryAnalyser:
    """
    Classifies a chat question into a tagged intent.
    Priority: a lab/test keyword wins, then a named document, then general.
    """

    def __init__(self, keywords: Optional[List[str]] = None):
        self.keywords = keywords or LAB_KEYWORDS

    def find_keyword(self, question: str) -> Optional[str]:
        for keyword in self.keywords:
            if contains_keyword(question, keyword):
                return keyword
        return None

    def find_document(self, question: str, document_names: Iterable[str]) -> Optional[str]:
        q_lower = question.lower()
        file_tokens = [t.lower() for t in _FILE_TOKEN.findall(question)]

        # Longest names first so "lipids_2024.pdf" beats "lipids.pdf"
        for name in sorted(set(document_names), key=lambda n: (-len(n), n)):
            stem = os.path.splitext(name)[0].lower()
            if len(stem) >= 3 and stem in q_lower:
                return name
            if any(names_match(token, name) for token in file_tokens):
                return name
        return None

    def analyse(self, question: str, document_names: Iterable[str] = ()) -> QueryAnalysis:
        keyword = self.find_keyword(question)
        document_name = self.find_document(question, document_names)

        if keyword:
            intent = LabValueIntent(keyword=keyword)
        elif document_name:
            intent = DocumentScopedIntent(name=document_name)
        else:
            intent = GeneralIntent()

        return QueryAnalysis(
            question=question,
            intent=intent,
            dates=extract_dates_from_text(question),
            terms=significant_words(question),
            lab_keyword=keyword,
            document_name=document_name
        )
