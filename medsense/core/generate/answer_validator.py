import logging
import warnings
from typing import Iterable
from medsense.core.chunk.date_extractor import date_year, extract_dates_from_text
from medsense.core.errors import HallucinationWarning
from medsense.models.query import ValidationReport

logger = logging.getLogger(__name__)

class AnswerValidator:
    """
    Flags dates in a generated answer that the retrieved context never mentioned.
    Detective only: the answer is never changed or rejected here.
    """

    def validate(self, answer: str, available_dates: Iterable[str]) -> ValidationReport:
        available = set(available_dates)
        years = {date_year(d) for d in available}
        month_years = {" ".join(d.split()[-2:]) for d in available if len(d.split()) >= 2}

        suspect = []
        for mentioned in extract_dates_from_text(answer):
            parts = mentioned.split()
            if len(parts) == 1:
                supported = mentioned in years
            elif len(parts) == 2:
                supported = mentioned in month_years
            else:
                supported = mentioned in available
            if not supported:
                suspect.append(mentioned)

        report = ValidationReport(suspect_dates=suspect)
        if not report.passed:
            message = f"Answer mentions date(s) not found in the retrieved context: {', '.join(suspect)}"
            logger.warning(message)
            warnings.warn(message, HallucinationWarning, stacklevel=2)
        return report
