import pytest

from medsense.config.settings import ChunkingConfig
from medsense.core.chunk.chunker import Chunker
from medsense.core.chunk.date_extractor import (
    FilenameDates,
    date_sort_key,
    extract_dates_from_filename,
    extract_dates_from_text,
    merge_dates,
)
from medsense.core.chunk.deduplicator import Deduplicator
from medsense.core.parse.normalizer import normalize_text
from medsense.models.chunk import TextChunk

REPORT_TEXT = normalize_text(
    "LIPID PROFILE\n"
    + "The cholesterol panel was measured after twelve hours of fasting. " * 6
    + "\nRemarks:\n"
    + "Values are within the reference range for healthy adults. " * 6
)


def small_chunker(**overrides) -> Chunker:
    values = dict(chunk_size=200, chunk_overlap=50, min_chunk_chars=0)
    values.update(overrides)
    return Chunker(ChunkingConfig(**values))


# Chunker

def test_empty_text_gives_no_chunks():
    chunker = small_chunker()
    assert chunker.chunk("").chunks == []
    assert chunker.chunk("   \n  ").chunks == []


def test_short_text_is_a_single_chunk():
    result = Chunker(ChunkingConfig(chunk_size=1000, chunk_overlap=200, min_chunk_chars=100)).chunk("HDL 54 mg/dL")
    assert [c.text for c in result.chunks] == ["HDL 54 mg/dL"]
    assert result.truncated is False


def test_chunks_cover_the_whole_text():
    chunks = small_chunker().chunk(REPORT_TEXT).chunks

    assert len(chunks) > 1
    assert chunks[0].start == 0
    assert chunks[-1].end == len(REPORT_TEXT)
    for previous, current in zip(chunks, chunks[1:]):
        # consecutive windows overlap or touch, and always move forward
        assert previous.start < current.start <= previous.end
    for chunk in chunks:
        assert REPORT_TEXT[chunk.start:chunk.end].strip() == chunk.text
        assert len(chunk.text) <= 200


def test_boundaries_prefer_sentence_ends():
    chunks = small_chunker().chunk(REPORT_TEXT).chunks
    assert chunks[0].text.endswith(".")


def test_chunks_are_tagged_with_the_current_header():
    chunks = small_chunker().chunk(REPORT_TEXT).chunks
    assert chunks[0].header == "LIPID PROFILE"
    assert chunks[-1].header == "Remarks"


def test_header_detection():
    chunker = small_chunker()
    assert chunker.is_header("LIPID PROFILE")
    assert chunker.is_header("Test Results:")
    assert not chunker.is_header("HDL")
    assert not chunker.is_header("HDL was within the normal range")
    assert not chunker.is_header("X" * 101)


def test_noise_threshold_drops_short_windows():
    text = "A" * 150 + " " + "b" * 30
    result = Chunker(ChunkingConfig(chunk_size=160, chunk_overlap=10, min_chunk_chars=100)).chunk(text)
    assert all(len(c.text) >= 100 for c in result.chunks)


def test_chunk_cap_truncates_and_flags():
    result = small_chunker(max_chunks_per_document=2).chunk(REPORT_TEXT)
    assert len(result.chunks) == 2
    assert result.truncated is True


@pytest.mark.parametrize("size,overlap", [(100, 100), (100, 150), (0, 0)])
def test_invalid_window_is_rejected_at_construction(size, overlap):
    with pytest.raises(ValueError):
        Chunker(ChunkingConfig(chunk_size=size, chunk_overlap=overlap))


def test_config_mutated_after_validation_is_still_rejected():
    config = ChunkingConfig(chunk_size=100, chunk_overlap=20)
    config.chunk_overlap = 500
    with pytest.raises(ValueError):
        Chunker(config)


# Deduplicator

def test_dedup_drops_normalized_duplicates_and_short_chunks():
    chunks = [
        TextChunk(text="HDL 54 mg/dL on 26 Feb 2024"),
        TextChunk(text="  hdl 54 MG/DL   on 26 feb 2024 "),
        TextChunk(text="tiny"),
        TextChunk(text="LDL 110 mg/dL on 26 Feb 2024"),
    ]
    result = Deduplicator(min_length=20).deduplicate(chunks)
    assert [c.text for c in result] == ["HDL 54 mg/dL on 26 Feb 2024", "LDL 110 mg/dL on 26 Feb 2024"]


def test_dedup_is_idempotent():
    chunks = [TextChunk(text=t) for t in [
        "Glucose fasting 92 mg/dL", "glucose  fasting 92 mg/dl", "HbA1c 5.4 percent", "short", "HbA1c 5.4 percent"
    ]]
    dedup = Deduplicator(min_length=10)
    once = dedup.deduplicate(chunks)
    assert dedup.deduplicate(once) == once


# Date extractor

def test_filename_date_is_authoritative():
    text_dates = extract_dates_from_text("Previous result 15 Jan 2023. Report year 2024.")
    filename_dates = extract_dates_from_filename("240304_report.pdf")

    assert filename_dates == FilenameDates(primary_date="04 Mar 2024", primary_year="2024")
    assert merge_dates(text_dates, filename_dates) == ["04 Mar 2024", "2024"]


def test_text_date_formats():
    dates = extract_dates_from_text(
        "Collected 5 March 2021, reviewed 07/08/2021, repeat 01/02/49, old 01/02/51, follow-up June 2022."
    )
    assert "05 Mar 2021" in dates
    assert "07 Aug 2021" in dates
    assert "01 Feb 2049" in dates
    assert "01 Feb 1951" in dates
    assert "Jun 2022" in dates
    assert {"2021", "2049", "1951", "2022"} <= set(dates)
    assert dates == sorted(dates, key=date_sort_key)


def test_lab_value_before_month_year_keeps_the_month():
    assert extract_dates_from_text("HDL 54 Mar 2024") == ["2024", "Mar 2024"]
    assert extract_dates_from_text("Glucose 31 Feb 2023") == ["2023", "Feb 2023"]


def test_invalid_dates_and_out_of_range_years_are_ignored():
    dates = extract_dates_from_text("Printed 31/02/2024, code 1850, batch 2150")
    assert dates == ["2024"]


def test_filename_formats():
    assert extract_dates_from_filename("20230415_cbc.pdf").primary_date == "15 Apr 2023"
    assert extract_dates_from_filename("uploads/240304.pdf").primary_date == "04 Mar 2024"

    fallback = extract_dates_from_filename("thyroid_panel_2022_final.pdf")
    assert fallback.primary_date is None
    assert fallback.primary_year == "2022"

    assert extract_dates_from_filename("bloodwork.pdf") == FilenameDates()


def test_merge_without_primary_date_is_a_sorted_union():
    text_dates = extract_dates_from_text("HDL 48 on 12 Jan 2022 and HDL 51 on 03 Mar 2023")
    merged = merge_dates(text_dates, extract_dates_from_filename("lipids_2024.pdf"))
    assert merged == ["2022", "12 Jan 2022", "2023", "03 Mar 2023", "2024"]
