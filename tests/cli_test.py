import json

from document_merger_cli import create_parser, main, options_from_args
from format_detection import LogicalFormat


def test_options_follow_flags():
    args = create_parser().parse_args(
        ["merge", "a.txt", "--headers", "--plain", "--no-metadata", "--sheet-naming", "original", "-f", "txt"]
    )

    options = options_from_args(args)

    assert options.include_headers
    assert not options.preserve_formatting
    assert not options.preserve_metadata
    assert options.sheet_naming == "original"
    assert options.output_format == LogicalFormat.TXT


def test_merge_writes_output_and_manifest(make_pdf, make_text, tmp_path, capsys):
    manifest = tmp_path / "manifest.json"

    code = main(
        [
            "merge",
            str(make_pdf("a.pdf", pages=2)),
            str(make_text("b.txt", "notes")),
            "-o", str(tmp_path),
            "--name", "bundle",
            "--manifest", str(manifest),
        ]
    )

    assert code == 0
    assert (tmp_path / "bundle.pdf").read_bytes().startswith(b"%PDF-")
    assert "Created:" in capsys.readouterr().out
    summary = json.loads(manifest.read_text(encoding="utf-8"))
    assert summary["status"] == "completed"
    assert summary["documents"] == ["a.pdf", "b.txt"]


def test_merge_reports_unsupported_output_format(make_text, tmp_path, capsys):
    code = main(["merge", str(make_text("a.txt", "x")), "-o", str(tmp_path), "-f", "xlsx"])

    assert code == 1
    assert "not supported" in capsys.readouterr().err


def test_missing_input_returns_usage_error(tmp_path, capsys):
    code = main(["info", str(tmp_path / "absent.pdf")])

    assert code == 2
    assert "file not found" in capsys.readouterr().err


def test_info_json(make_text, capsys):
    code = main(["info", str(make_text("a.txt", "one two three")), "--json"])

    assert code == 0
    reports = json.loads(capsys.readouterr().out)
    assert reports[0]["name"] == "a.txt"
    assert reports[0]["status"] == "processed"
    assert reports[0]["metadata"]["word_count"] == 3
