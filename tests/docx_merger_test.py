import io
import zipfile

from docx import Document
from docx.opc.constants import RELATIONSHIP_TYPE as RT
from docx.oxml import OxmlElement
from docx.oxml.ns import qn
from PIL import Image

from document_processors import MergeOptions, WordProcessor
from error_handler import ErrorCode

W_NS = "{http://schemas.openxmlformats.org/wordprocessingml/2006/main}"


def _load(data: bytes):
    return Document(io.BytesIO(data))


def _texts(data: bytes):
    return [paragraph.text for paragraph in _load(data).paragraphs]


def _page_breaks(data: bytes) -> int:
    body = _load(data).element.body
    return sum(1 for br in body.iter(f"{W_NS}br") if br.get(f"{W_NS}type") == "page")


def test_merge_copies_bodies_in_order(make_docx):
    buffers = [make_docx("a.docx", "Hello A").read_bytes(), make_docx("b.docx", "Hello B").read_bytes()]

    result = WordProcessor().merge_same_format(buffers, names=["a.docx", "b.docx"])

    assert result.success
    texts = _texts(result.data)
    assert texts.index("Hello A") < texts.index("Hello B")


def test_headers_and_page_breaks(make_docx):
    buffers = [make_docx("a.docx", "Alpha").read_bytes(), make_docx("b.docx", "Beta").read_bytes()]
    options = MergeOptions(include_headers=True, page_breaks=True)

    result = WordProcessor().merge_same_format(buffers, options, names=["a.docx", "b.docx"])

    texts = _texts(result.data)
    assert "Document 1: a.docx" in texts
    assert "Document 2: b.docx" in texts
    assert texts.index("Document 1: a.docx") < texts.index("Alpha") < texts.index("Document 2: b.docx")
    assert _page_breaks(result.data) == 1


def test_plain_mode_emits_one_paragraph_per_line(make_docx):
    data = make_docx("a.docx", "first line\n\nsecond line").read_bytes()

    result = WordProcessor().merge_same_format([data], MergeOptions(preserve_formatting=False))

    assert [text for text in _texts(result.data) if text] == ["first line", "second line"]


def test_unreadable_document_becomes_error_paragraph(make_docx):
    good = make_docx("good.docx", "Still here").read_bytes()

    result = WordProcessor().merge_same_format([b"invalid docx bytes", good], names=["bad.docx", "good.docx"])

    assert result.success
    texts = _texts(result.data)
    assert "[Error: Could not process document 1 (bad.docx)]" in texts
    assert "Still here" in texts
    assert result.warnings[0]["code"] == "docx_unreadable"


def test_merge_fails_when_no_document_contributes():
    result = WordProcessor().merge_same_format([b"invalid", b"also invalid"])

    assert not result.success
    assert result.data is None
    assert len(result.warnings) == 2


def test_footer_and_metadata(make_docx):
    data = make_docx("a.docx", "Body").read_bytes()
    options = MergeOptions(include_footers=True, output_name="bundle")

    merged = _load(WordProcessor().merge_same_format([data, data], options).data)

    assert "bundle" in merged.sections[0].footer.paragraphs[0].text
    assert merged.core_properties.title == "Merged Document"
    assert merged.core_properties.author == "Document Merger"


def test_extract_text_includes_tables(make_docx):
    data = make_docx("a.docx", "Intro", table=[["Name", "Qty"], ["Apples", "3"]]).read_bytes()

    text = WordProcessor().extract_text(data)

    assert "Intro" in text
    assert "Apples\t3" in text


def test_raw_xml_fallback_when_python_docx_cannot_open(make_docx, tmp_path):
    source = make_docx("a.docx", "Recovered text")
    broken = tmp_path / "broken.docx"
    with zipfile.ZipFile(source) as original, zipfile.ZipFile(broken, "w") as copy:
        for item in original.namelist():
            # Dropping the package relationships keeps word/document.xml but breaks python-docx
            if item != "_rels/.rels":
                copy.writestr(item, original.read(item))

    assert "Recovered text" in WordProcessor().extract_text(broken.read_bytes())


def test_structured_text_marks_headings_and_tables(make_docx):
    data = make_docx("a.docx", "Plain paragraph", heading="Overview", table=[["A", "B"], ["1", "2"]]).read_bytes()

    structured = WordProcessor().extract_structured_text(data)

    assert "OVERVIEW" in structured
    assert "A | B" in structured
    assert "Plain paragraph" in structured


def test_analyze_counts_words_and_flags_tables(make_docx):
    data = make_docx("a.docx", "one two three four", table=[["x", "y"]]).read_bytes()
    warnings = []

    metadata = WordProcessor().analyze(data, warnings)

    assert metadata.word_count == 6
    assert metadata.page_count == 1
    assert [warning["code"] for warning in warnings] == [ErrorCode.DOCX_COMPLEX_FORMATTING.value]


def test_preview_and_analyze_never_raise():
    processor = WordProcessor()

    assert processor.generate_preview(b"junk") == "Word Document (Preview not available)"
    assert processor.analyze(b"junk").word_count is None


def _docx_bytes(document) -> bytes:
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


def _png() -> io.BytesIO:
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), "red").save(buffer, format="PNG")
    buffer.seek(0)
    return buffer


def _with_hyperlink(url_or_rid: str, external: bool = True) -> bytes:
    document = Document()
    paragraph = document.add_paragraph("See ")
    r_id = document.part.relate_to(url_or_rid, RT.HYPERLINK, is_external=True) if external else url_or_rid
    link = OxmlElement("w:hyperlink")
    link.set(qn("r:id"), r_id)
    run = OxmlElement("w:r")
    text = OxmlElement("w:t")
    text.text = "the site"
    run.append(text)
    link.append(run)
    paragraph._p.append(link)
    return _docx_bytes(document)


def test_pictures_keep_their_image_parts():
    document = Document()
    document.add_paragraph("Caption above")
    document.add_picture(_png())

    result = WordProcessor().merge_same_format([_docx_bytes(document), _docx_bytes(document)])

    merged = _load(result.data)
    embeds = [blip.get(qn("r:embed")) for blip in merged.element.body.iter(qn("a:blip"))]
    assert len(embeds) == 2
    for r_id in embeds:
        assert merged.part.rels[r_id].reltype == RT.IMAGE
        assert merged.part.rels[r_id].target_part.blob.startswith(b"\x89PNG")
    with zipfile.ZipFile(io.BytesIO(result.data)) as archive:
        assert [name for name in archive.namelist() if name.startswith("word/media/")]
    assert not [warning for warning in result.warnings if warning["code"] == ErrorCode.DOCX_COMPLEX_FORMATTING.value]


def test_external_hyperlinks_are_recreated():
    result = WordProcessor().merge_same_format([_with_hyperlink("https://example.com/doc")])

    merged = _load(result.data)
    links = list(merged.element.body.iter(qn("w:hyperlink")))
    assert len(links) == 1
    rel = merged.part.rels[links[0].get(qn("r:id"))]
    assert rel.is_external
    assert rel.target_ref == "https://example.com/doc"


def test_unresolvable_reference_falls_back_to_text():
    data = _with_hyperlink("rId999", external=False)

    result = WordProcessor().merge_same_format([data], names=["linked.docx"])

    assert result.success
    merged = _load(result.data)
    assert not list(merged.element.body.iter(qn("w:hyperlink")))
    assert any(text.startswith("See") for text in _texts(result.data))
    assert result.warnings[0]["code"] == ErrorCode.DOCX_COMPLEX_FORMATTING.value
    assert result.warnings[0]["file"] == "linked.docx"


def test_skipped_empty_document_leaves_no_heading_or_break(make_docx):
    buffers = [
        make_docx("a.docx", "Alpha").read_bytes(),
        _docx_bytes(Document()),
        make_docx("c.docx", "Gamma").read_bytes(),
    ]
    options = MergeOptions(include_headers=True, page_breaks=True)

    result = WordProcessor().merge_same_format(buffers, options, names=["a.docx", "empty.docx", "c.docx"])

    texts = _texts(result.data)
    assert "Document 1: a.docx" in texts
    assert "Document 3: c.docx" in texts
    assert not [text for text in texts if text.startswith("Document 2")]
    assert _page_breaks(result.data) == 1
    assert [warning["code"] for warning in result.warnings] == ["docx_empty_document"]
