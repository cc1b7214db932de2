"""
Date extraction for report chunks.

Lab-report filenames reliably encode the draw date (240304_lipids.pdf), while
OCR'd table headers are noisy and can carry earlier comparison years. The
filename date is therefore authoritative for the whole document, and text
dates from other years are dropped when it is present.

Canonical forms: "04 Mar 2024" (day known), "Mar 2024" (month only), "2024".
"""
import os
import re
from datetime import date
from typing import Iterable, List, Optional, Tuple
from pydantic import BaseModel

MONTH_ABBR = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]
_MONTH_LOOKUP = {m.lower(): i + 1 for i, m in enumerate(MONTH_ABBR)}

_MONTH_NAMES = (
    r"jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?"
    r"|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?"
)
# "15 Jan 2023", "15th January, 2023" and "January 2023"
_NAMED_DATE = re.compile(
    rf"\b(?:(\d{{1,2}})(?:st|nd|rd|th)?\s+)?({_MONTH_NAMES})\.?,?\s+(\d{{4}})\b",
    re.IGNORECASE
)
# "15/01/2023" and "15/01/23"
_NUMERIC_DATE = re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4}|\d{2})\b")
_BARE_YEAR = re.compile(r"\b(19\d{2}|20\d{2})\b")
# Filenames use "_" and digits freely, so word boundaries are not usable there
_FILENAME_YEAR = re.compile(r"(?<!\d)(19\d{2}|20\d{2})(?!\d)")
_FILENAME_PREFIX = re.compile(r"^(\d{8}|\d{6})(?!\d)")
_TRAILING_YEAR = re.compile(r"(\d{4})$")


class FilenameDates(BaseModel):
    primary_date: Optional[str] = None
    primary_year: Optional[str] = None


def pivot_year(two_digit: int) -> int:
    return 2000 + two_digit if two_digit <= 50 else 1900 + two_digit


def _canonical(day: int, month: int, year: int) -> Optional[str]:
    if not 1900 <= year <= 2099:
        return None
    try:
        date(year, month, day)
    except ValueError:
        return None
    return f"{day:02d} {MONTH_ABBR[month - 1]} {year}"


def date_year(value: str) -> Optional[str]:
    match = _TRAILING_YEAR.search(value.strip())
    return match.group(1) if match else None


def date_sort_key(value: str) -> Tuple[int, int, int, str]:
    parts = value.split()
    year = int(date_year(value) or 9999)
    month = day = 0
    if len(parts) == 3:
        day = int(parts[0]) if parts[0].isdigit() else 0
        month = _MONTH_LOOKUP.get(parts[1].lower(), 0)
    elif len(parts) == 2:
        month = _MONTH_LOOKUP.get(parts[0].lower(), 0)
    return (year, month, day, value)


def _unique(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(v for v in values if v))


def extract_dates_from_text(text: str) -> List[str]:
    """
    Finds dates in free text. Each recognised date contributes its canonical
    form and its bare year. Returns a deduplicated, year-sorted list.
    """
    if not text:
        return []

    found = []
    for match in _NAMED_DATE.finditer(text):
        day, month_name, year = match.groups()
        month = _MONTH_LOOKUP[month_name[:3].lower()]
        year_num = int(year)
        if not 1900 <= year_num <= 2099:
            continue
        # "HDL 54 Mar 2024": a number that is not a valid day is a value, not part of the date
        canonical = _canonical(int(day), month, year_num) if day else None
        found.append(canonical or f"{MONTH_ABBR[month - 1]} {year_num}")
        found.append(str(year_num))

    for match in _NUMERIC_DATE.finditer(text):
        day, month, year = match.groups()
        year_num = int(year) if len(year) == 4 else pivot_year(int(year))
        canonical = _canonical(int(day), int(month), year_num)
        if canonical:
            found.append(canonical)
            found.append(str(year_num))

    for match in _BARE_YEAR.finditer(text):
        found.append(match.group(1))

    return sorted(_unique(found), key=date_sort_key)


def extract_dates_from_filename(filename: str) -> FilenameDates:
    """
    A leading YYYYMMDD or YYMMDD prefix is the document's primary date.
    Otherwise the first 4-digit year anywhere in the name is used as its year.
    """
    base = os.path.basename(filename or "")

    prefix = _FILENAME_PREFIX.match(base)
    if prefix:
        digits = prefix.group(1)
        if len(digits) == 8:
            canonical = _canonical(int(digits[6:8]), int(digits[4:6]), int(digits[:4]))
        else:
            canonical = _canonical(int(digits[4:6]), int(digits[2:4]), pivot_year(int(digits[:2])))
        if canonical:
            return FilenameDates(primary_date=canonical, primary_year=date_year(canonical))

    year = _FILENAME_YEAR.search(base)
    if year:
        return FilenameDates(primary_year=year.group(1))
    return FilenameDates()


def merge_dates(text_dates: Iterable[str], filename_dates: FilenameDates) -> List[str]:
    """
    Combines text and filename dates. With a filename primary date, text dates
    survive only when they share its year (or carry no year at all), and the
    primary date is listed first. Without one, the result is the union.
    """
    text_dates = list(text_dates)

    if filename_dates.primary_date:
        primary_year = filename_dates.primary_year
        kept = [d for d in text_dates if date_year(d) in (None, primary_year)]
        rest = [d for d in _unique(kept + [primary_year]) if d != filename_dates.primary_date]
        return [filename_dates.primary_date] + sorted(rest, key=date_sort_key)

    combined = text_dates + ([filename_dates.primary_year] if filename_dates.primary_year else [])
    return sorted(_unique(combined), key=date_sort_key)
