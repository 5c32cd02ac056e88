from datetime import datetime, timezone

from document_processors import OOXMLPresentationParser, PowerPointProcessor
from error_handler import ErrorCode


def test_parser_reads_titles_and_bullets_in_slide_order(make_pptx):
    data = make_pptx("deck.pptx", [("Intro", ["Welcome", "Agenda"]), ("Results", ["Up 10%"])]).read_bytes()

    slides = OOXMLPresentationParser().parse(data).slides

    assert [slide.title for slide in slides] == ["Intro", "Results"]
    assert slides[0].bullets == ["Welcome", "Agenda"]
    assert [slide.number for slide in slides] == [1, 2]


def test_extract_text_marks_each_slide(make_pptx):
    data = make_pptx("deck.pptx", [("Intro", ["Welcome"]), ("Close", [])]).read_bytes()

    text = PowerPointProcessor().extract_text(data)

    assert text == "--- Slide 1 ---\nIntro\n• Welcome\n\n--- Slide 2 ---\nClose"


def test_analyze_reads_counts_core_properties_and_media(make_pptx):
    data = make_pptx(
        "deck.pptx",
        [("Intro", ["one two"]), ("Next", ["three"])],
        title="Quarterly",
        author="Dana",
        with_media=True,
    ).read_bytes()
    warnings = []

    metadata = PowerPointProcessor().analyze(data, warnings)

    assert metadata.slide_count == 2
    assert metadata.word_count == 5
    assert metadata.title == "Quarterly"
    assert metadata.author == "Dana"
    assert metadata.created_date == datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)
    assert [warning["code"] for warning in warnings] == [ErrorCode.PPTX_MEDIA_NOT_SUPPORTED.value]


def test_merge_degrades_to_marked_text(make_pptx):
    first = make_pptx("a.pptx", [("Alpha", ["a1"])]).read_bytes()
    second = make_pptx("b.pptx", [("Beta", []), ("Gamma", ["g1"])]).read_bytes()

    result = PowerPointProcessor().merge_same_format([first, second], names=["a.pptx", "b.pptx"])

    assert result.success
    assert result.media_type == "text/plain"
    assert result.metadata.slide_count == 3
    text = result.data.decode("utf-8")
    assert text.index("=== Document 1: a.pptx ===") < text.index("Alpha") < text.index("=== Document 2: b.pptx ===")
    assert "--- Slide 2 ---\nGamma\n• g1" in text


def test_merge_records_unreadable_presentation(make_pptx):
    good = make_pptx("a.pptx", [("Alpha", [])]).read_bytes()

    result = PowerPointProcessor().merge_same_format([b"junk", good], names=["bad.pptx", "a.pptx"])

    assert result.success
    assert "[Error: Could not process document 1 (bad.pptx)]" in result.data.decode()
    assert result.warnings[0]["code"] == "pptx_unreadable"


def test_without_parser_returns_stub_results(make_pptx):
    data = make_pptx("a.pptx", [("Alpha", [])]).read_bytes()
    processor = PowerPointProcessor(parser=None)

    assert processor.extract_text(data) == PowerPointProcessor.UNAVAILABLE_TEXT
    assert processor.analyze(data).title == "PowerPoint Presentation"
    result = processor.merge_same_format([data])
    assert not result.success
    assert "PDF" in result.error


def test_preview_summarizes_slides(make_pptx):
    data = make_pptx("deck.pptx", [("Intro", ["Welcome"])], title="Quarterly").read_bytes()

    preview = PowerPointProcessor().generate_preview(data)

    assert preview.startswith("PowerPoint Presentation\nSlides: 1\n")
    assert "Title: Quarterly" in preview
    assert "Intro" in preview
