import re

# Known OCR misreads in lab reports. Replacements must not produce text that
# matches another pattern here, otherwise normalize_text stops being idempotent.
OCR_CORRECTIONS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"B1ood"), "Blood"),
    (re.compile(r"Pressu re"), "Pressure"),
    (re.compile(r"Cho1esterol"), "Cholesterol"),
    (re.compile(r"G1ucose"), "Glucose"),
    (re.compile(r"Hemog1obin"), "Hemoglobin"),
    (re.compile(r"A1bumin"), "Albumin"),
    (re.compile(r"mg/d1\b"), "mg/dL"),
    (re.compile(r"\b8O\b"), "80"),
]

_HORIZONTAL_WS = re.compile(r"[^\S\n]+")
_SPACE_AROUND_NEWLINE = re.compile(r" ?\n ?")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")


def normalize_text(text: str) -> str:
    """
    Standardises line endings and whitespace and repairs known OCR misreads.
    normalize_text(normalize_text(x)) == normalize_text(x).
    """
    if not text:
        return ""

    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _HORIZONTAL_WS.sub(" ", text)
    text = _SPACE_AROUND_NEWLINE.sub("\n", text)
    text = _EXCESS_NEWLINES.sub("\n\n", text)

    for pattern, replacement in OCR_CORRECTIONS:
        text = pattern.sub(replacement, text)

    return text.strip()
