import asyncio
import zipfile
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pytest
from docx import Document
from openpyxl import Workbook
from pypdf import PdfWriter
from reportlab.pdfgen.canvas import Canvas

from format_detection import InputFile
from merger_engine import MergeOrchestrator

PRESENTATION_NS = "http://schemas.openxmlformats.org/presentationml/2006/main"
DRAWING_NS = "http://schemas.openxmlformats.org/drawingml/2006/main"
REL_NS = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"
SLIDE_REL_TYPE = "http://schemas.openxmlformats.org/officeDocument/2006/relationships/slide"


@pytest.fixture
def make_pdf(tmp_path: Path):
    def _make(filename: str, pages: int = 1) -> Path:
        path = tmp_path / filename
        writer = PdfWriter()
        for _ in range(pages):
            writer.add_blank_page(width=72, height=72)
        with path.open("wb") as handle:
            writer.write(handle)
        return path

    return _make


@pytest.fixture
def make_text_pdf(tmp_path: Path):
    def _make(filename: str, lines: Sequence[str]) -> Path:
        path = tmp_path / filename
        canvas = Canvas(str(path))
        for index, line in enumerate(lines):
            canvas.drawString(72, 720 - index * 20, line)
        canvas.showPage()
        canvas.save()
        return path

    return _make


@pytest.fixture
def make_docx(tmp_path: Path):
    def _make(filename: str, text: str, heading: Optional[str] = None, table: Optional[List[List[str]]] = None) -> Path:
        path = tmp_path / filename
        document = Document()
        if heading:
            document.add_heading(heading, level=1)
        for line in text.split("\n"):
            document.add_paragraph(line)
        if table:
            grid = document.add_table(rows=len(table), cols=len(table[0]))
            for row_index, row in enumerate(table):
                for col_index, value in enumerate(row):
                    grid.cell(row_index, col_index).text = value
        document.save(path)
        return path

    return _make


@pytest.fixture
def make_xlsx(tmp_path: Path):
    def _make(filename: str, sheets: Dict[str, List[list]]) -> Path:
        path = tmp_path / filename
        workbook = Workbook()
        workbook.remove(workbook.active)
        for title, rows in sheets.items():
            sheet = workbook.create_sheet(title=title)
            for row in rows:
                sheet.append(row)
        workbook.save(path)
        return path

    return _make


def _slide_xml(title: str, bullets: Sequence[str]) -> str:
    paragraphs = "".join(f"<a:p><a:r><a:t>{bullet}</a:t></a:r></a:p>" for bullet in bullets)
    return (
        f'<p:sld xmlns:a="{DRAWING_NS}" xmlns:p="{PRESENTATION_NS}" xmlns:r="{REL_NS}">'
        "<p:cSld><p:spTree>"
        '<p:sp><p:nvSpPr><p:cNvPr id="2" name="Title"/><p:cNvSpPr/><p:nvPr><p:ph type="title"/></p:nvPr></p:nvSpPr>'
        f"<p:txBody><a:p><a:r><a:t>{title}</a:t></a:r></a:p></p:txBody></p:sp>"
        '<p:sp><p:nvSpPr><p:cNvPr id="3" name="Content"/><p:cNvSpPr/><p:nvPr><p:ph idx="1"/></p:nvPr></p:nvSpPr>'
        f"<p:txBody>{paragraphs}</p:txBody></p:sp>"
        "</p:spTree></p:cSld></p:sld>"
    )


@pytest.fixture
def make_pptx(tmp_path: Path):
    """Minimal OOXML presentation package: slides, relationships, core properties and optional media."""

    def _make(
        filename: str,
        slides: Sequence[Tuple[str, Sequence[str]]],
        title: Optional[str] = None,
        author: Optional[str] = None,
        with_media: bool = False,
    ) -> Path:
        path = tmp_path / filename
        slide_ids = "".join(
            f'<p:sldId id="{256 + index}" r:id="rId{index + 1}"/>' for index in range(len(slides))
        )
        relationships = "".join(
            f'<Relationship Id="rId{index + 1}" Type="{SLIDE_REL_TYPE}" Target="slides/slide{index + 1}.xml"/>'
            for index in range(len(slides))
        )
        with zipfile.ZipFile(path, "w") as archive:
            archive.writestr(
                "[Content_Types].xml",
                '<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types"/>',
            )
            archive.writestr(
                "ppt/presentation.xml",
                f'<p:presentation xmlns:p="{PRESENTATION_NS}" xmlns:r="{REL_NS}">'
                f"<p:sldIdLst>{slide_ids}</p:sldIdLst></p:presentation>",
            )
            archive.writestr(
                "ppt/_rels/presentation.xml.rels",
                '<Relationships xmlns="http://schemas.openxmlformats.org/package/2006/relationships">'
                f"{relationships}</Relationships>",
            )
            for index, (slide_title, bullets) in enumerate(slides):
                archive.writestr(f"ppt/slides/slide{index + 1}.xml", _slide_xml(slide_title, bullets))
            if title or author:
                archive.writestr(
                    "docProps/core.xml",
                    '<cp:coreProperties xmlns:cp="http://schemas.openxmlformats.org/package/2006/metadata/core-properties"'
                    ' xmlns:dc="http://purl.org/dc/elements/1.1/" xmlns:dcterms="http://purl.org/dc/terms/">'
                    f"<dc:title>{title or ''}</dc:title><dc:creator>{author or ''}</dc:creator>"
                    "<dcterms:created>2024-03-01T09:30:00Z</dcterms:created>"
                    "</cp:coreProperties>",
                )
            if with_media:
                archive.writestr("ppt/media/image1.png", b"\x89PNG\r\n\x1a\n")
        return path

    return _make


@pytest.fixture
def make_text(tmp_path: Path):
    def _make(filename: str, content: str) -> Path:
        path = tmp_path / filename
        path.write_text(content, encoding="utf-8")
        return path

    return _make


@pytest.fixture
def orchestrator():
    session = MergeOrchestrator(enable_detailed_logging=True)
    yield session
    session.close()


@pytest.fixture
def load_session(orchestrator):
    """Add files to the session and run their pipelines to completion."""

    def _load(*paths: Path):
        handles, rejected = orchestrator.add_documents(InputFile.from_path(path) for path in paths)
        asyncio.run(orchestrator.process_documents())
        return handles, rejected

    return _load
